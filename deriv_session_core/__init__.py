"""Connection and subscription session core for the Deriv WebSocket API."""

__version__ = "0.1.0"

from .backoff import ExponentialBackoff
from .config import ConfigError, SessionConfig, load_config
from .connection import (
    AuthorizationState,
    AuthorizationStatus,
    ConnectionManager,
    ConnectionState,
)
from .correlation import CorrelationTable
from .errors import (
    DerivApiError,
    DerivAuthorizationError,
    DerivClientError,
    DerivConnectionError,
    DerivConnectionLost,
    DerivConnectTimeout,
    DerivDuplicateRequest,
    DerivHandshakeError,
    DerivNotReadyError,
    DerivRequestCancelled,
    DerivRequestTimeout,
)
from .protocol import Envelope, FrameError, ProposalParams, parse_frame
from .session import DerivSession
from .subscriptions import ListenerHandle, Subscription, SubscriptionRegistry
from .transport import (
    DerivAiohttpWsClient,
    DerivTransport,
    DerivWsClient,
    DerivWsMessage,
    DerivWsMessageType,
)

__all__ = [
    "AuthorizationState",
    "AuthorizationStatus",
    "ConfigError",
    "ConnectionManager",
    "ConnectionState",
    "CorrelationTable",
    "DerivAiohttpWsClient",
    "DerivApiError",
    "DerivAuthorizationError",
    "DerivClientError",
    "DerivConnectTimeout",
    "DerivConnectionError",
    "DerivConnectionLost",
    "DerivDuplicateRequest",
    "DerivHandshakeError",
    "DerivNotReadyError",
    "DerivRequestCancelled",
    "DerivRequestTimeout",
    "DerivSession",
    "DerivTransport",
    "DerivWsClient",
    "DerivWsMessage",
    "DerivWsMessageType",
    "Envelope",
    "ExponentialBackoff",
    "FrameError",
    "ListenerHandle",
    "ProposalParams",
    "SessionConfig",
    "Subscription",
    "SubscriptionRegistry",
    "__version__",
    "load_config",
    "parse_frame",
]
