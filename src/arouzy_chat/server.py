# server.py
import sys

# ruff: noqa: E402, I001

# Python version check - must be at the very beginning
MIN_PY = (3, 11)
if sys.version_info < MIN_PY:
    sys.stderr.write(
        f"ERROR: Arouzy chat server requires Python {MIN_PY[0]}.{MIN_PY[1]}+ "
        f"(current: {sys.version.split()[0]}).\n"
    )
    sys.exit(1)

import argparse
import asyncio
import time
import tomllib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger

from . import protocol
from .auth import TokenAuthenticator
from .config import (
    ConfigurationError,
    DefaultConfigError,
    ServerConfig,
    create_config_from_args,
    load_default_config,
)
from .errors import AuthError, StorageError
from .lifecycle import ConnectionLifecycle
from .logging_utils import configure_logging
from .presence import PresenceBroadcaster
from .registry import ConnectionRegistry
from .router import MessageRouter
from .store import InMemoryMessageStore, MessageStore
from .unread import UnreadCounter

DRAIN_POLL_INTERVAL = 0.05


@lru_cache(maxsize=1)
def get_version() -> str:
    """
    Return the server version.
    Priority:
      1) importlib.metadata for 'arouzy-chat-server' (when installed)
      2) parse nearest pyproject.toml (when running from source)
      3) 'unknown'
    """
    import importlib.metadata as im

    try:
        return im.version("arouzy-chat-server")
    except im.PackageNotFoundError:
        pass

    for parent in Path(__file__).resolve().parents:
        toml_path = parent / "pyproject.toml"
        if toml_path.exists():
            data = tomllib.loads(toml_path.read_text(encoding="utf-8"))
            v = (data.get("project") or {}).get("version")
            if v:
                return v
            break

    return "unknown"


def create_store(config: ServerConfig) -> MessageStore:
    """In-memory store unless a database URL is configured."""
    if not config.database_url:
        logger.warning("No database_url configured; messages are kept in memory only")
        return InMemoryMessageStore()
    from .sql_store import SqlMessageStore

    return SqlMessageStore(config.database_url)


class ChatServer:
    """Owns the shared messaging components of one server process."""

    def __init__(
        self,
        config: ServerConfig | None = None,
        store: MessageStore | None = None,
    ) -> None:
        self.config = config or load_default_config()
        self.store = store if store is not None else create_store(self.config)
        self.registry = ConnectionRegistry()
        self.unread = UnreadCounter()
        self.broadcaster = PresenceBroadcaster(self.registry)
        self.router = MessageRouter(
            self.registry,
            self.unread,
            self.store,
            self.broadcaster,
            max_message_length=self.config.max_message_length,
        )
        self.authenticator = TokenAuthenticator(
            self.config.jwt_secret,
            algorithm=self.config.jwt_algorithm,
            issuer=self.config.jwt_issuer,
        )
        self.lifecycle = ConnectionLifecycle(
            self.registry,
            self.unread,
            self.store,
            self.broadcaster,
            self.router,
            self.authenticator,
        )
        self.started_at = time.monotonic()

    async def drain(self, timeout: float | None = None) -> bool:
        """Close every registered connection and wait for their loops to finish.

        Returns True when the registry emptied within ``timeout``.
        """
        timeout = self.config.shutdown_timeout if timeout is None else timeout
        connections = self.registry.connections()
        if connections:
            logger.info(f"Draining {len(connections)} connection(s)...")
        await asyncio.gather(*(conn.close() for conn in connections))

        deadline = time.monotonic() + timeout
        while len(self.registry) and time.monotonic() < deadline:
            await asyncio.sleep(DRAIN_POLL_INTERVAL)
        remaining = len(self.registry)
        if remaining:
            logger.warning(f"Shutdown timeout reached with {remaining} connection(s) open")
        return remaining == 0

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "connectedUsers": len(self.registry),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": round(time.monotonic() - self.started_at, 3),
            "version": get_version(),
        }

    def close(self) -> None:
        self.store.close()


def create_app(chat: ChatServer | None = None) -> FastAPI:
    """Create the FastAPI application hosting the chat channel."""
    chat = chat or ChatServer()
    bearer = HTTPBearer(auto_error=False)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Chat server is ready and waiting for connections...")
        yield
        await chat.drain()
        chat.close()
        logger.info("Chat server stopped")

    app = FastAPI(title="Arouzy Chat", version=get_version(), lifespan=lifespan)
    app.state.chat = chat

    app.add_middleware(
        CORSMiddleware,
        allow_origins=chat.config.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    def current_user(
        credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    ) -> int:
        token = credentials.credentials if credentials else None
        try:
            return chat.authenticator.authenticate(token)
        except AuthError as exc:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=str(exc),
                headers={"WWW-Authenticate": "Bearer"},
            ) from exc

    @app.websocket(chat.config.ws_path)
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await chat.lifecycle.serve(websocket)

    @app.get("/health")
    def health_check() -> dict[str, Any]:
        return chat.health()

    @app.get("/users/online")
    def online_users() -> dict[str, list[int]]:
        return {"userIds": sorted(chat.registry.snapshot())}

    @app.get("/users/me/unread")
    def my_unread(user_id: int = Depends(current_user)) -> dict[str, Any]:
        try:
            durable = chat.store.unread_counts(user_id)
        except StorageError as exc:
            raise HTTPException(
                status_code=500, detail="Failed to load unread counts"
            ) from exc
        return protocol.unread_counts_event(chat.unread.hydrate(user_id, durable))

    @app.get("/messages/history")
    def message_history(
        other_user_id: int = Query(..., alias="userId", gt=0),
        user_id: int = Depends(current_user),
    ) -> list[dict[str, Any]]:
        try:
            messages = chat.store.history(user_id, other_user_id)
        except StorageError as exc:
            raise HTTPException(
                status_code=500, detail="Failed to fetch message history"
            ) from exc
        return [m.to_dict() for m in messages]

    @app.get("/messages/conversations")
    def conversations(user_id: int = Depends(current_user)) -> list[dict[str, Any]]:
        try:
            found = chat.store.conversations(user_id)
        except StorageError as exc:
            raise HTTPException(
                status_code=500, detail="Failed to fetch conversations"
            ) from exc
        return [c.to_dict() for c in found]

    return app


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Arouzy chat server")
    parser.add_argument("--config", type=Path, help="Path to a TOML config file")
    parser.add_argument("--host", help="Bind address (default from config)")
    parser.add_argument("--port", type=int, help="Listen port (default from config)")
    parser.add_argument(
        "--database-url",
        dest="database_url",
        help="SQLAlchemy database URL; omit for the in-memory store",
    )
    parser.add_argument("--log-dir", type=Path, help="Directory for rotated log files")
    parser.add_argument(
        "--log-level-console",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Console log level",
    )
    parser.add_argument(
        "--log-json-console", action="store_true", help="Emit console logs as JSON"
    )
    parser.add_argument("--log-rotation", help="loguru rotation rule, e.g. '1 day'")
    parser.add_argument("--log-retention", help="loguru retention rule or file count")
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {get_version()}",
        help="Show version and exit",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config, overrides = create_config_from_args(args)
    except (
        ConfigurationError,
        DefaultConfigError,
        FileNotFoundError,
        tomllib.TOMLDecodeError,
    ) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    configure_logging(
        log_dir=Path(config.log_dir) if config.log_dir else None,
        console_level=config.log_level_console,
        console_json=config.log_json_console,
        rotation=config.log_rotation,
        retention=config.log_retention,
    )

    logger.info("=" * 80)
    logger.info("Arouzy Chat Server Starting")
    logger.info("=" * 80)
    logger.info(f"  Version: {get_version()}")
    logger.info(f"  Listening: {config.host}:{config.port}{config.ws_path}")
    logger.info(f"  Store: {'SQL' if config.database_url else 'in-memory'}")
    for override in overrides:
        logger.info(
            f"  Config override: {override.key} = {override.new_value!r}"
            f" (default {override.default_value!r})"
        )
    logger.info("=" * 80)

    if config.jwt_secret == load_default_config().jwt_secret:
        logger.warning(
            "jwt_secret is the bundled development default; set JWT_SECRET"
            " before exposing this server"
        )

    try:
        chat = ChatServer(config)
    except StorageError as e:
        logger.error(f"Failed to open message store: {e}")
        return 1

    uvicorn.run(
        create_app(chat),
        host=config.host,
        port=config.port,
        log_config=None,
        timeout_graceful_shutdown=int(config.shutdown_timeout) or 1,
    )
    logger.info("Server shutdown complete.")
    return 0
