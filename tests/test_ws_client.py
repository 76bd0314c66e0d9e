"""Tests for the WebSocket transports."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, InvalidStatus, InvalidURI

from deriv_session_core.errors import (
    DerivConnectionError,
    DerivConnectTimeout,
    DerivHandshakeError,
)
from deriv_session_core.transport import (
    DerivAiohttpWsClient,
    DerivWsClient,
    DerivWsMessage,
    DerivWsMessageType,
    connect_websocket,
)

URL = "wss://ws.derivws.com/websockets/v3?app_id=1089&l=EN"


class TestDerivWsMessage:
    """Tests for DerivWsMessage dataclass."""

    def test_enum_values(self):
        assert DerivWsMessageType.TEXT.value == "text"
        assert DerivWsMessageType.CLOSED.value == "closed"
        assert DerivWsMessageType.ERROR.value == "error"

    def test_closed_message_has_no_data(self):
        msg = DerivWsMessage(type=DerivWsMessageType.CLOSED)
        assert msg.data is None

    def test_message_is_frozen(self):
        msg = DerivWsMessage(type=DerivWsMessageType.TEXT, data="test")
        with pytest.raises(AttributeError):
            msg.data = "modified"  # type: ignore[misc]


class TestConnectWebsocket:
    """Tests for connect_websocket() error translation."""

    @pytest.mark.asyncio
    async def test_timeout_maps_to_connect_timeout(self):
        async def _hang(*args, **kwargs):
            await asyncio.sleep(1)

        with patch("deriv_session_core.transport.ws_client.websockets.connect", side_effect=_hang):
            with pytest.raises(DerivConnectTimeout):
                await connect_websocket(URL, timeout=0.01)

    @pytest.mark.asyncio
    async def test_invalid_uri_maps_to_handshake_error(self):
        with patch(
            "deriv_session_core.transport.ws_client.websockets.connect",
            side_effect=InvalidURI("http://nope?app_id=1089", "bad scheme"),
        ):
            with pytest.raises(DerivHandshakeError):
                await connect_websocket("http://nope?app_id=1089")

    @pytest.mark.asyncio
    async def test_os_error_maps_to_connection_error(self):
        with patch(
            "deriv_session_core.transport.ws_client.websockets.connect",
            side_effect=OSError("Network unreachable"),
        ):
            with pytest.raises(DerivConnectionError, match="connection failed") as exc_info:
                await connect_websocket(URL)
        assert isinstance(exc_info.value.__cause__, OSError)

    @pytest.mark.asyncio
    async def test_missing_app_id_rejected_before_dialing(self):
        with patch("deriv_session_core.transport.ws_client.websockets.connect") as mock_connect:
            with pytest.raises(DerivHandshakeError, match="app_id"):
                await connect_websocket("wss://ws.derivws.com/websockets/v3?l=EN")

        mock_connect.assert_not_called()

    @pytest.mark.asyncio
    async def test_refused_upgrade_reports_status(self):
        with patch(
            "deriv_session_core.transport.ws_client.websockets.connect",
            side_effect=InvalidStatus(MagicMock(status_code=401)),
        ):
            with pytest.raises(DerivHandshakeError, match="HTTP 401"):
                await connect_websocket(URL)


class TestDerivWsClientConnect:
    """Tests for DerivWsClient.connect()."""

    @pytest.mark.asyncio
    async def test_connect_success(self):
        mock_ws = AsyncMock()

        with patch(
            "deriv_session_core.transport.ws_client.connect_websocket",
            return_value=mock_ws,
        ) as mock_connect:
            client = DerivWsClient()
            await client.connect(URL)

            mock_connect.assert_called_once_with(URL, ping_interval=20, timeout=15.0)
            assert client._ws is mock_ws

    @pytest.mark.asyncio
    async def test_connect_custom_params(self):
        with patch(
            "deriv_session_core.transport.ws_client.connect_websocket",
            return_value=AsyncMock(),
        ) as mock_connect:
            client = DerivWsClient(ping_interval=None)
            await client.connect(URL, timeout=5.0)

            mock_connect.assert_called_once_with(URL, ping_interval=None, timeout=5.0)

    @pytest.mark.asyncio
    async def test_connect_propagates_errors(self):
        with patch(
            "deriv_session_core.transport.ws_client.connect_websocket",
            side_effect=DerivConnectionError("Connection failed"),
        ):
            client = DerivWsClient()
            with pytest.raises(DerivConnectionError, match="Connection failed"):
                await client.connect(URL)


class TestDerivWsClientSend:
    """Tests for DerivWsClient.send_json() and close()."""

    @pytest.mark.asyncio
    async def test_send_json_success(self):
        mock_ws = AsyncMock()

        with patch(
            "deriv_session_core.transport.ws_client.connect_websocket",
            return_value=mock_ws,
        ):
            client = DerivWsClient()
            await client.connect(URL)
            await client.send_json({"ticks": "R_100", "subscribe": 1})

        mock_ws.send.assert_called_once_with('{"ticks": "R_100", "subscribe": 1}')

    @pytest.mark.asyncio
    async def test_send_json_not_connected(self):
        client = DerivWsClient()
        with pytest.raises(DerivConnectionError, match="not connected"):
            await client.send_json({"ping": 1})

    @pytest.mark.asyncio
    async def test_send_json_on_closed_socket(self):
        mock_ws = AsyncMock()
        mock_ws.send.side_effect = ConnectionClosed(None, None)

        with patch(
            "deriv_session_core.transport.ws_client.connect_websocket",
            return_value=mock_ws,
        ):
            client = DerivWsClient()
            await client.connect(URL)
            with pytest.raises(DerivConnectionError, match="closed"):
                await client.send_json({"ping": 1})

    @pytest.mark.asyncio
    async def test_close_connected(self):
        mock_ws = AsyncMock()

        with patch(
            "deriv_session_core.transport.ws_client.connect_websocket",
            return_value=mock_ws,
        ):
            client = DerivWsClient()
            await client.connect(URL)
            await client.close()

        mock_ws.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_close_not_connected(self):
        client = DerivWsClient()
        await client.close()


class AsyncIteratorMock:
    """Helper class to create a proper async iterator mock."""

    def __init__(self, items: list, *, raise_on_iter: Exception | None = None):
        self._items = items
        self._index = 0
        self._raise_on_iter = raise_on_iter
        self.close = AsyncMock()

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._index >= len(self._items):
            if self._raise_on_iter is not None:
                raise self._raise_on_iter
            raise StopAsyncIteration
        item = self._items[self._index]
        self._index += 1
        return item


async def _collect(mock_ws) -> list[DerivWsMessage]:
    with patch(
        "deriv_session_core.transport.ws_client.connect_websocket",
        return_value=mock_ws,
    ):
        client = DerivWsClient()
        await client.connect(URL)
        return [msg async for msg in client]


class TestDerivWsClientIteration:
    """Tests for DerivWsClient async iteration."""

    def test_iter_not_connected(self):
        client = DerivWsClient()
        with pytest.raises(DerivConnectionError, match="not connected"):
            client.__aiter__()

    @pytest.mark.asyncio
    async def test_graceful_end_yields_closed(self):
        messages = await _collect(AsyncIteratorMock(['{"msg_type": "ping"}']))

        assert [m.type for m in messages] == [
            DerivWsMessageType.TEXT,
            DerivWsMessageType.CLOSED,
        ]
        assert messages[0].data == '{"msg_type": "ping"}'

    @pytest.mark.asyncio
    async def test_clean_close_yields_closed(self):
        messages = await _collect(
            AsyncIteratorMock(["a"], raise_on_iter=ConnectionClosedOK(None, None))
        )

        assert messages[-1].type == DerivWsMessageType.CLOSED

    @pytest.mark.asyncio
    async def test_abnormal_close_yields_error(self):
        messages = await _collect(
            AsyncIteratorMock([], raise_on_iter=ConnectionClosed(None, None))
        )

        assert len(messages) == 1
        assert messages[0].type == DerivWsMessageType.ERROR

    @pytest.mark.asyncio
    async def test_unexpected_error_yields_error(self):
        messages = await _collect(
            AsyncIteratorMock([], raise_on_iter=RuntimeError("Unexpected"))
        )

        assert [m.type for m in messages] == [DerivWsMessageType.ERROR]

    @pytest.mark.asyncio
    async def test_skips_binary_messages(self):
        messages = await _collect(AsyncIteratorMock(["text1", b"\x00\x01", "text2"]))

        text = [m.data for m in messages if m.type == DerivWsMessageType.TEXT]
        assert text == ["text1", "text2"]

    def test_normalize_unknown_object(self):
        result = DerivWsClient._normalize_message(object())
        assert result is not None
        assert result.type == DerivWsMessageType.TEXT
        assert "object at" in result.data  # type: ignore[operator]


class _AiohttpSocket:
    """Minimal stand-in for aiohttp.ClientWebSocketResponse."""

    def __init__(self, messages: list) -> None:
        self._messages = list(messages)
        self.closed = False
        self.send_json = AsyncMock()
        self.close = AsyncMock()

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._messages:
            raise StopAsyncIteration
        return self._messages.pop(0)


def _aiohttp_msg(msg_type: aiohttp.WSMsgType, data=None) -> MagicMock:
    msg = MagicMock()
    msg.type = msg_type
    msg.data = data
    return msg


class TestDerivAiohttpWsClient:
    """Tests for the aiohttp-backed transport."""

    @pytest.mark.asyncio
    async def test_connect_and_send(self):
        socket = _AiohttpSocket([])
        session = MagicMock()
        session.ws_connect = AsyncMock(return_value=socket)

        client = DerivAiohttpWsClient(session, heartbeat=10.0)
        await client.connect(URL)
        await client.send_json({"ping": 1})

        session.ws_connect.assert_awaited_once_with(URL, heartbeat=10.0)
        socket.send_json.assert_awaited_once_with({"ping": 1})

    @pytest.mark.asyncio
    async def test_connect_failure_maps_to_connection_error(self):
        session = MagicMock()
        session.ws_connect = AsyncMock(side_effect=aiohttp.ClientConnectionError("refused"))

        client = DerivAiohttpWsClient(session)
        with pytest.raises(DerivConnectionError):
            await client.connect(URL)

    @pytest.mark.asyncio
    async def test_send_not_connected(self):
        client = DerivAiohttpWsClient(MagicMock())
        with pytest.raises(DerivConnectionError, match="not connected"):
            await client.send_json({"ping": 1})

    @pytest.mark.asyncio
    async def test_iteration_maps_message_types(self):
        socket = _AiohttpSocket(
            [
                _aiohttp_msg(aiohttp.WSMsgType.TEXT, '{"msg_type": "ping"}'),
                _aiohttp_msg(aiohttp.WSMsgType.BINARY, b"\x00"),
                _aiohttp_msg(aiohttp.WSMsgType.CLOSE),
                _aiohttp_msg(aiohttp.WSMsgType.TEXT, "never read"),
            ]
        )
        session = MagicMock()
        session.ws_connect = AsyncMock(return_value=socket)

        client = DerivAiohttpWsClient(session)
        await client.connect(URL)
        messages = [msg async for msg in client]

        assert [m.type for m in messages] == [
            DerivWsMessageType.TEXT,
            DerivWsMessageType.CLOSED,
        ]

    @pytest.mark.asyncio
    async def test_iteration_error_message(self):
        socket = _AiohttpSocket([_aiohttp_msg(aiohttp.WSMsgType.ERROR)])
        session = MagicMock()
        session.ws_connect = AsyncMock(return_value=socket)

        client = DerivAiohttpWsClient(session)
        await client.connect(URL)
        messages = [msg async for msg in client]

        assert [m.type for m in messages] == [DerivWsMessageType.ERROR]

    @pytest.mark.asyncio
    async def test_iteration_end_yields_closed(self):
        socket = _AiohttpSocket([])
        session = MagicMock()
        session.ws_connect = AsyncMock(return_value=socket)

        client = DerivAiohttpWsClient(session)
        await client.connect(URL)
        messages = [msg async for msg in client]

        assert [m.type for m in messages] == [DerivWsMessageType.CLOSED]
