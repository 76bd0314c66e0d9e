"""Pytest configuration and fixtures for deriv_session_core tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest

from deriv_session_core.config import SessionConfig
from deriv_session_core.errors import DerivConnectionError
from deriv_session_core.transport import (
    DerivTransport,
    DerivWsMessage,
    DerivWsMessageType,
)

VALID_TOKEN = "a1-GoodToken1234"

Responder = Callable[[dict[str, Any]], list[dict[str, Any]]]


async def settle(rounds: int = 20) -> None:
    """Let queued callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll until predicate holds or fail after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not reached before timeout")
        await asyncio.sleep(0.001)


def tick_frame(
    symbol: str,
    quote: float,
    epoch: int,
    *,
    subscription_id: str | None = None,
) -> dict[str, Any]:
    """Build a tick push frame as the server sends it."""
    return {
        "msg_type": "tick",
        "echo_req": {"ticks": symbol, "subscribe": 1},
        "tick": {"symbol": symbol, "quote": quote, "epoch": epoch},
        "subscription": {"id": subscription_id or f"sub-{symbol}"},
    }


def error_frame(msg_type: str, echo_req: dict[str, Any], code: str, message: str) -> dict[str, Any]:
    return {
        "msg_type": msg_type,
        "echo_req": echo_req,
        "error": {"code": code, "message": message},
    }


def default_responder(payload: dict[str, Any]) -> list[dict[str, Any]]:
    """Answer authorize, forget and ping requests like the server does."""
    if "authorize" in payload:
        if payload["authorize"] == VALID_TOKEN:
            return [
                {
                    "msg_type": "authorize",
                    "echo_req": payload,
                    "authorize": {"loginid": "CR90000000", "balance": 1000, "currency": "USD"},
                }
            ]
        return [error_frame("authorize", payload, "InvalidToken", "The token is invalid.")]
    if "forget" in payload:
        return [{"msg_type": "forget", "echo_req": payload, "forget": 1}]
    if "ping" in payload:
        return [{"msg_type": "ping", "echo_req": payload, "ping": "pong"}]
    return []


class FakeTransport(DerivTransport):
    """In-memory transport recording sent frames.

    Tests push inbound frames with push(), simulate an unclean drop with
    drop(), and inspect sent frames via .sent.
    """

    def __init__(
        self,
        *,
        fail_connect: Exception | None = None,
        responder: Responder | None = default_responder,
    ) -> None:
        self.fail_connect = fail_connect
        self.responder = responder
        self.sent: list[dict[str, Any]] = []
        self.url: str | None = None
        self.closed = False
        self._queue: asyncio.Queue[DerivWsMessage] = asyncio.Queue()

    async def connect(self, url: str, *, timeout: float = 15.0) -> None:
        if self.fail_connect is not None:
            raise self.fail_connect
        self.url = url

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self.closed or self.url is None:
            raise DerivConnectionError("WebSocket is not connected")
        self.sent.append(payload)
        if self.responder is not None:
            for frame in self.responder(payload):
                self.push(frame)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(DerivWsMessage(type=DerivWsMessageType.CLOSED))

    def push(self, frame: dict[str, Any] | str) -> None:
        data = frame if isinstance(frame, str) else json.dumps(frame)
        self._queue.put_nowait(DerivWsMessage(type=DerivWsMessageType.TEXT, data=data))

    def drop(self) -> None:
        self.closed = True
        self._queue.put_nowait(DerivWsMessage(type=DerivWsMessageType.ERROR))

    def sent_of(self, key: str) -> list[dict[str, Any]]:
        return [frame for frame in self.sent if key in frame]

    def __aiter__(self) -> AsyncIterator[DerivWsMessage]:
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[DerivWsMessage]:
        while True:
            msg = await self._queue.get()
            yield msg
            if msg.type is not DerivWsMessageType.TEXT:
                return


class TransportFactory:
    """Create FakeTransports in sequence, optionally failing some connects."""

    def __init__(self, responder: Responder | None = default_responder) -> None:
        self.responder = responder
        self.created: list[FakeTransport] = []
        self.failures: list[Exception] = []

    def fail_next(self, *errors: Exception) -> None:
        self.failures.extend(errors)

    @property
    def current(self) -> FakeTransport:
        return self.created[-1]

    def __call__(self) -> FakeTransport:
        failure = self.failures.pop(0) if self.failures else None
        transport = FakeTransport(fail_connect=failure, responder=self.responder)
        self.created.append(transport)
        return transport


@pytest.fixture
def transport_factory() -> TransportFactory:
    return TransportFactory()


@pytest.fixture
def fast_config() -> SessionConfig:
    """Config with short timers and no jitter or keepalive."""
    return SessionConfig(
        request_timeout=0.2,
        connect_timeout=1.0,
        retry_base_delay=0.02,
        retry_max_delay=0.05,
        retry_jitter=0.0,
        keepalive_interval=None,
    )
