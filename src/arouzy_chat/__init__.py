"""
Arouzy Chat Server Package

Real-time presence and direct messaging for authenticated users over a
WebSocket channel. Tracks who is online, routes messages between users,
keeps per-sender unread tallies and persists every message to a store.

Main Classes:
    ChatServer: Wires registry, unread counter, store, router and lifecycle
    ConnectionRegistry: Which user is online on which connection
    UnreadCounter: In-memory per-recipient, per-sender unread tallies
    MessageStore: Durable message storage (in-memory or SQL backed)

Examples:
    # Run server via CLI (after installation)
    arouzy-chat-server --database-url sqlite:///chat.db

    # Embed the ASGI app
    from arouzy_chat import ChatServer, create_app
    app = create_app(ChatServer())
"""

from importlib.metadata import PackageNotFoundError, version

from .models import Conversation, Message
from .registry import ConnectionRegistry
from .server import ChatServer, create_app, get_version
from .store import InMemoryMessageStore, MessageStore
from .unread import UnreadCounter

# Export public API
__all__ = [
    "ChatServer",
    "create_app",
    "get_version",
    "ConnectionRegistry",
    "UnreadCounter",
    "MessageStore",
    "InMemoryMessageStore",
    # Data types
    "Message",
    "Conversation",
]

try:
    __version__ = version("arouzy-chat-server")
except PackageNotFoundError:
    __version__ = "unknown"
