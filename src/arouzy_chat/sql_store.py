"""
Relational MessageStore backed by SQLAlchemy.

Works against PostgreSQL in production and SQLite for local runs and tests.
"""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timezone

from loguru import logger
from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    Text,
    case,
    create_engine,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import StorageError
from .models import Conversation, Message
from .store import MessageStore, sort_conversations, utcnow

Base = declarative_base()


class MessageRow(Base):
    __tablename__ = "messages"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    from_user_id = Column(Integer, nullable=False, index=True)
    to_user_id = Column(Integer, nullable=False, index=True)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    read_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_messages_unread", "to_user_id", "from_user_id", "read_at"),
    )


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_message(row: MessageRow) -> Message:
    return Message(
        id=row.id,
        sender_id=row.from_user_id,
        recipient_id=row.to_user_id,
        body=row.message,
        created_at=_aware(row.created_at),
        read_at=_aware(row.read_at),
    )


def create_store_engine(database_url: str) -> Engine:
    """Build an engine; SQLite connections are shared across worker threads."""
    kwargs: dict = {"pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


class SqlMessageStore(MessageStore):
    """MessageStore over a ``messages`` table."""

    def __init__(self, database_url: str, create_schema: bool = True) -> None:
        self.engine = create_store_engine(database_url)
        self._session_factory = sessionmaker(
            bind=self.engine, autocommit=False, autoflush=False, expire_on_commit=False
        )
        if create_schema:
            try:
                Base.metadata.create_all(self.engine)
            except SQLAlchemyError as exc:
                raise StorageError(f"Failed to initialize schema: {exc}") from exc
        logger.info(f"Message store ready ({self.engine.url.render_as_string()})")

    @contextmanager
    def _session(self, action: str) -> Generator[Session, None, None]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        # Driver-side encoding and range errors are not wrapped by SQLAlchemy.
        except (SQLAlchemyError, ValueError, OverflowError) as exc:
            session.rollback()
            logger.error(f"Message store {action} failed: {exc}")
            raise StorageError(f"Failed to {action}") from exc
        finally:
            session.close()

    def append(self, sender_id: int, recipient_id: int, body: str) -> Message:
        with self._session("save message") as session:
            row = MessageRow(
                from_user_id=sender_id,
                to_user_id=recipient_id,
                message=body,
                created_at=utcnow(),
            )
            session.add(row)
            session.flush()
            return _to_message(row)

    def history(self, user_a: int, user_b: int) -> list[Message]:
        stmt = (
            select(MessageRow)
            .where(
                or_(
                    (MessageRow.from_user_id == user_a)
                    & (MessageRow.to_user_id == user_b),
                    (MessageRow.from_user_id == user_b)
                    & (MessageRow.to_user_id == user_a),
                )
            )
            .order_by(MessageRow.created_at.asc(), MessageRow.id.asc())
        )
        with self._session("fetch message history") as session:
            return [_to_message(row) for row in session.scalars(stmt)]

    def mark_read(self, recipient_id: int, sender_id: int) -> int:
        stmt = (
            update(MessageRow)
            .where(
                MessageRow.to_user_id == recipient_id,
                MessageRow.from_user_id == sender_id,
                MessageRow.read_at.is_(None),
            )
            .values(read_at=utcnow())
        )
        with self._session("mark messages as read") as session:
            return session.execute(stmt).rowcount or 0

    def _unread_counts(self, session: Session, recipient_id: int) -> dict[int, int]:
        stmt = (
            select(MessageRow.from_user_id, func.count(MessageRow.id))
            .where(MessageRow.to_user_id == recipient_id, MessageRow.read_at.is_(None))
            .group_by(MessageRow.from_user_id)
        )
        return {sender: count for sender, count in session.execute(stmt)}

    def unread_counts(self, recipient_id: int) -> dict[int, int]:
        with self._session("count unread messages") as session:
            return self._unread_counts(session, recipient_id)

    def conversations(self, user_id: int) -> list[Conversation]:
        other = case(
            (MessageRow.from_user_id == user_id, MessageRow.to_user_id),
            else_=MessageRow.from_user_id,
        )
        ranked = (
            select(
                other.label("other_user_id"),
                MessageRow.message,
                MessageRow.created_at,
                func.row_number()
                .over(
                    partition_by=other,
                    order_by=(MessageRow.created_at.desc(), MessageRow.id.desc()),
                )
                .label("rn"),
            )
            .where(
                or_(MessageRow.from_user_id == user_id, MessageRow.to_user_id == user_id)
            )
            .subquery()
        )
        stmt = select(
            ranked.c.other_user_id, ranked.c.message, ranked.c.created_at
        ).where(ranked.c.rn == 1)

        with self._session("list conversations") as session:
            unread = self._unread_counts(session, user_id)
            rows = session.execute(stmt).all()

        return sort_conversations(
            Conversation(
                other_user_id=other_id,
                last_message=body,
                last_message_time=_aware(created_at),
                unread_count=unread.get(other_id, 0),
            )
            for other_id, body, created_at in rows
        )

    def close(self) -> None:
        self.engine.dispose()
