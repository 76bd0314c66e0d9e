"""WebSocket client wrapper for the Deriv endpoint."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs, urlsplit

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedOK,
    InvalidHandshake,
    InvalidStatus,
    InvalidURI,
    WebSocketException,
)

from ..errors import DerivConnectionError, DerivConnectTimeout, DerivHandshakeError
from ..protocol import encode_request
from .base import DerivTransport, DerivWsMessage, DerivWsMessageType

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


async def connect_websocket(
    url: str,
    *,
    ping_interval: int | None = 20,
    timeout: float = 15.0,
) -> ClientConnection:
    """Open a WebSocket to a Deriv API endpoint.

    The endpoint identifies the calling application by the ``app_id`` query
    parameter and refuses the upgrade without it, so a URL lacking one is
    rejected before dialing.

    Args:
        url: Endpoint URL including the ``app_id`` and ``l`` query parameters
        ping_interval: Interval for protocol-level ping frames
        timeout: Connection timeout

    Raises:
        DerivHandshakeError: Bad URL, missing app id, or upgrade refused.
        DerivConnectTimeout: No connection within ``timeout``.
        DerivConnectionError: Network failure.
    """
    query = parse_qs(urlsplit(url).query)
    if not query.get("app_id", [""])[0]:
        raise DerivHandshakeError(f"Endpoint URL has no app_id: {url}")

    try:
        return await asyncio.wait_for(
            websockets.connect(
                url,
                ping_interval=ping_interval,
                close_timeout=5,
                max_size=None,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise DerivConnectTimeout(f"No connection to Deriv within {timeout}s") from err
    except InvalidStatus as err:
        # 401 and 403 here mean the app id is unknown or blocked
        raise DerivHandshakeError(
            f"Deriv refused the connection (HTTP {err.response.status_code})"
        ) from err
    except (InvalidHandshake, InvalidURI) as err:
        raise DerivHandshakeError("WebSocket handshake failed") from err
    except (OSError, WebSocketException) as err:
        raise DerivConnectionError("WebSocket connection failed") from err


class DerivWsClient(DerivTransport):
    """Transport over the websockets library."""

    def __init__(self, *, ping_interval: int | None = 20) -> None:
        self._ws: ClientConnection | None = None
        self._ping_interval = ping_interval

    async def connect(self, url: str, *, timeout: float = 15.0) -> None:
        """Connect to the endpoint websocket."""
        self._ws = await connect_websocket(
            url,
            ping_interval=self._ping_interval,
            timeout=timeout,
        )

    async def close(self) -> None:
        """Close the websocket connection."""
        if self._ws is not None:
            await self._ws.close()

    async def send_json(self, payload: dict[str, Any]) -> None:
        """Send a JSON payload to the websocket."""
        if self._ws is None:
            raise DerivConnectionError("WebSocket is not connected")
        try:
            await self._ws.send(encode_request(payload))
        except ConnectionClosed as err:
            raise DerivConnectionError("WebSocket is closed") from err

    def __aiter__(self) -> AsyncIterator[DerivWsMessage]:
        if self._ws is None:
            raise DerivConnectionError("WebSocket is not connected")
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[DerivWsMessage]:
        if self._ws is None:
            raise DerivConnectionError("WebSocket is not connected")

        try:
            async for msg in self._ws:
                normalized = self._normalize_message(msg)
                if normalized is None:
                    continue
                yield normalized
        except ConnectionClosedOK:
            yield DerivWsMessage(type=DerivWsMessageType.CLOSED)
        except ConnectionClosed:
            yield DerivWsMessage(type=DerivWsMessageType.ERROR)
        except Exception:
            yield DerivWsMessage(type=DerivWsMessageType.ERROR)
        else:
            # Normal iteration completion means the peer closed gracefully.
            yield DerivWsMessage(type=DerivWsMessageType.CLOSED)

    @staticmethod
    def _normalize_message(msg: Any) -> DerivWsMessage | None:
        """Normalize library frames into DerivWsMessage."""
        if isinstance(msg, bytes):
            return None
        if isinstance(msg, str):
            return DerivWsMessage(DerivWsMessageType.TEXT, msg)
        return DerivWsMessage(DerivWsMessageType.TEXT, str(msg))
