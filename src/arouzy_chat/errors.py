"""Error taxonomy for the messaging core."""


class ChatError(Exception):
    """Base class for all messaging errors."""

    code = "error"


class ValidationError(ChatError):
    """An inbound event was rejected (self-send, empty body, malformed)."""

    code = "validation"


class StorageError(ChatError):
    """The durable store failed to read or write."""

    code = "storage"


class TransportError(ChatError):
    """Reading from or writing to a connection failed."""

    code = "transport"


class AuthError(ChatError):
    """A bearer credential was missing, malformed or expired."""

    code = "unauthorized"
