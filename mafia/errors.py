from __future__ import annotations


class SessionError(Exception):
    """Base class for every failure raised by the session protocol."""


class TransportUnavailable(SessionError):
    """A local endpoint could not be opened (bind, collision or discovery failure)."""


class ConnectFailed(SessionError):
    """A connect attempt did not produce an open link. Retryable."""


class ConnectionTimeout(ConnectFailed):
    pass


class PeerUnavailable(ConnectFailed):
    pass


class ConnectionClosed(SessionError, ConnectionError):
    """An established link dropped, or was used after it dropped."""


class MessageValidationFailure(SessionError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"invalid message: {reason}")
        self.reason = reason


class IllegalTransition(SessionError):
    """A requested state change was rejected; nothing was modified."""
