"""Client error types for the Deriv streaming session."""

from __future__ import annotations


class DerivClientError(Exception):
    """Base error for Deriv session failures."""


class DerivConnectionError(DerivClientError):
    """The transport could not be opened."""


class DerivHandshakeError(DerivConnectionError):
    """WebSocket handshake failed."""


class DerivConnectTimeout(DerivConnectionError):
    """Opening the transport exceeded its deadline."""


class DerivNotReadyError(DerivConnectionError):
    """The session is not in a state that accepts this call."""


class DerivAuthorizationError(DerivClientError):
    """The remote rejected the authorization credential."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class DerivConnectionLost(DerivClientError):
    """The channel dropped while a request was in flight."""


class DerivRequestTimeout(DerivClientError):
    """No correlated response arrived before the deadline."""


class DerivDuplicateRequest(DerivClientError):
    """A request with the same correlation key is already outstanding."""


class DerivRequestCancelled(DerivClientError):
    """The session was disconnected while the request was outstanding."""


class DerivApiError(DerivClientError):
    """The remote answered a request with an error frame."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code
