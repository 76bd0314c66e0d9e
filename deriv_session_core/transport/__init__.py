"""Transport layer for the Deriv session.

This package contains all socket IO:
- base: transport contract and normalized message types
- ws_client: Deriv endpoint dialing and the default transport over websockets
- aiohttp_ws: transport over an injected aiohttp ClientSession
"""

from .aiohttp_ws import DerivAiohttpWsClient
from .base import DerivTransport, DerivWsMessage, DerivWsMessageType
from .ws_client import DerivWsClient, connect_websocket

__all__ = [
    "DerivAiohttpWsClient",
    "DerivTransport",
    "DerivWsClient",
    "DerivWsMessage",
    "DerivWsMessageType",
    "connect_websocket",
]
