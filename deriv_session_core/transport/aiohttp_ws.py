"""aiohttp-backed transport for hosts that already own a ClientSession."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import aiohttp

from ..errors import (
    DerivConnectionError,
    DerivConnectTimeout,
    DerivHandshakeError,
)
from .base import DerivTransport, DerivWsMessage, DerivWsMessageType

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class DerivAiohttpWsClient(DerivTransport):
    """Transport over an injected aiohttp ClientSession."""

    def __init__(self, session: aiohttp.ClientSession, *, heartbeat: float = 30.0) -> None:
        self._session = session
        self._heartbeat = heartbeat
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    async def connect(self, url: str, *, timeout: float = 15.0) -> None:
        """Connect to the endpoint websocket."""
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(url, heartbeat=self._heartbeat),
                timeout=timeout,
            )
        except TimeoutError as err:
            raise DerivConnectTimeout("WebSocket connection timed out") from err
        except aiohttp.WSServerHandshakeError as err:
            raise DerivHandshakeError("WebSocket handshake failed") from err
        except (aiohttp.ClientError, OSError) as err:
            raise DerivConnectionError("WebSocket connection failed") from err

    async def close(self) -> None:
        """Close the websocket connection."""
        if self._ws is not None:
            await self._ws.close()

    async def send_json(self, payload: dict[str, Any]) -> None:
        """Send a JSON payload to the websocket."""
        if self._ws is None or self._ws.closed:
            raise DerivConnectionError("WebSocket is not connected")
        try:
            await self._ws.send_json(payload)
        except (aiohttp.ClientError, ConnectionResetError) as err:
            raise DerivConnectionError("WebSocket send failed") from err

    def __aiter__(self) -> AsyncIterator[DerivWsMessage]:
        if self._ws is None:
            raise DerivConnectionError("WebSocket is not connected")
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[DerivWsMessage]:
        if self._ws is None:
            raise DerivConnectionError("WebSocket is not connected")

        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                yield DerivWsMessage(type=DerivWsMessageType.TEXT, data=msg.data)
            elif msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
            ):
                yield DerivWsMessage(type=DerivWsMessageType.CLOSED)
                return
            elif msg.type == aiohttp.WSMsgType.ERROR:
                yield DerivWsMessage(type=DerivWsMessageType.ERROR)
                return

        # aiohttp ends iteration without a message once the socket closed
        yield DerivWsMessage(type=DerivWsMessageType.CLOSED)
