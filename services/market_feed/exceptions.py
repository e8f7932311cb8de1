"""Market feed exceptions for Smart Feed."""
from typing import Any, Dict, Iterable, Optional


class FeedError(Exception):
    """Base market feed error."""
    pass


class CredentialError(FeedError):
    """Required session credential missing or empty."""

    def __init__(self, missing_fields: Iterable[str]):
        self.missing_fields = tuple(missing_fields)
        super().__init__(f"Missing required session credentials: {', '.join(self.missing_fields)}")


class TransportError(FeedError):
    """Underlying connection failure (open, send or receive)."""
    pass


class ConnectionClosedError(TransportError):
    """The transport was closed by either side."""

    def __init__(self, code: Optional[int] = None, reason: str = ""):
        self.code = code
        self.reason = reason
        super().__init__(f"Connection closed (code={code}, reason={reason or 'n/a'})")


class DecodeError(FeedError):
    """Malformed binary frame."""
    pass


class ProtocolError(FeedError):
    """Structured error payload sent by the remote endpoint."""

    def __init__(self, error_code: str, error_message: str = "", payload: Optional[Dict[str, Any]] = None):
        self.error_code = error_code
        self.error_message = error_message
        self.payload = payload or {}
        super().__init__(f"Feed error {error_code}: {error_message}" if error_message else f"Feed error {error_code}")


class NotConnectedError(FeedError):
    """Subscription change attempted while the feed is not connected."""
    pass


class AlreadyConnectedError(FeedError):
    """connect() called while a connection is active or being re-established."""
    pass
