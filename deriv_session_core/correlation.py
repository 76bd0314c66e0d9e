"""Request/response correlation over the shared channel.

Each outstanding request is keyed by the correlation key derived from its
semantic fields. Only one request may be outstanding per key: a second
request with the same key fails fast instead of racing the first one for its
response.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .errors import (
    DerivApiError,
    DerivClientError,
    DerivDuplicateRequest,
    DerivRequestTimeout,
)
from .protocol import CorrelationKey, Envelope, correlation_key, response_key

_LOGGER = logging.getLogger(__name__)

Transmit = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass(slots=True)
class _PendingRequest:
    """One in-flight request awaiting its correlated response."""

    key: CorrelationKey
    future: asyncio.Future[Envelope]
    created_at: float
    timeout_handle: asyncio.TimerHandle | None = None


class CorrelationTable:
    """Match inbound responses to the requests that caused them.

    Usage:
        table = CorrelationTable(transmit=channel.send_json, timeout=5.0)
        envelope = await table.request({"ticks": "R_100", "subscribe": 1})
        ...
        table.resolve(parse_frame(text))          # from the listener
        table.fail_all(lambda: DerivConnectionLost("dropped"))
    """

    def __init__(
        self,
        transmit: Transmit,
        *,
        timeout: float = 5.0,
        label: str = "",
    ) -> None:
        self._transmit = transmit
        self._timeout = timeout
        self._label = label
        self._pending: dict[CorrelationKey, _PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, key: object) -> bool:
        return key in self._pending

    async def submit(
        self,
        request: dict[str, Any],
        *,
        timeout: float | None = None,
    ) -> asyncio.Future[Envelope]:
        """Register and transmit a request.

        Returns the outcome future once the frame is on the wire. The future
        resolves with the response Envelope, or fails with DerivApiError,
        DerivRequestTimeout, DerivConnectionLost or DerivRequestCancelled.

        Raises:
            DerivDuplicateRequest: A request with the same key is outstanding.
            DerivClientError: Transmission failed; the entry is discarded.
        """
        key = correlation_key(request)
        if key is None:
            raise ValueError(f"Request has no correlation key: {sorted(request)}")
        if key in self._pending:
            raise DerivDuplicateRequest(f"Request already outstanding for {key!r}")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Envelope] = loop.create_future()
        pending = _PendingRequest(key=key, future=future, created_at=loop.time())
        self._pending[key] = pending
        pending.timeout_handle = loop.call_later(
            timeout if timeout is not None else self._timeout,
            self._expire,
            pending,
        )
        future.add_done_callback(lambda _f: self._forget_cancelled(pending))

        try:
            await self._transmit(request)
        except (DerivClientError, asyncio.CancelledError):
            self._discard(pending)
            if future.done():
                if not future.cancelled():
                    future.exception()
            else:
                future.cancel()
            raise

        _LOGGER.debug("[%s] Request sent: %r", self._label, key)
        return future

    async def request(
        self,
        request: dict[str, Any],
        *,
        timeout: float | None = None,
    ) -> Envelope:
        """Transmit a request and wait for its correlated response."""
        future = await self.submit(request, timeout=timeout)
        return await future

    def resolve(self, envelope: Envelope) -> bool:
        """Complete the request an inbound frame answers.

        Returns:
            True if the frame matched an outstanding request.
        """
        key = response_key(envelope)
        if key is None:
            return False
        pending = self._pending.get(key)
        if pending is None:
            return False

        self._discard(pending)
        if pending.future.done():
            return True

        if envelope.is_error:
            pending.future.set_exception(
                DerivApiError(
                    envelope.error_message or "Request failed",
                    code=envelope.error_code,
                )
            )
        else:
            pending.future.set_result(envelope)
        return True

    def fail_all(self, error_factory: Callable[[], Exception]) -> int:
        """Fail and remove every outstanding request in one synchronous pass.

        Returns:
            Number of requests failed.
        """
        entries = list(self._pending.values())
        self._pending.clear()
        failed = 0
        for pending in entries:
            if pending.timeout_handle is not None:
                pending.timeout_handle.cancel()
                pending.timeout_handle = None
            if not pending.future.done():
                pending.future.set_exception(error_factory())
                failed += 1
        if failed:
            _LOGGER.debug("[%s] Failed %d pending requests", self._label, failed)
        return failed

    def _expire(self, pending: _PendingRequest) -> None:
        if self._pending.get(pending.key) is not pending:
            return
        self._discard(pending)
        if not pending.future.done():
            _LOGGER.debug(
                "[%s] Request timed out after %.2fs: %r",
                self._label,
                asyncio.get_running_loop().time() - pending.created_at,
                pending.key,
            )
            pending.future.set_exception(
                DerivRequestTimeout(f"No response for {pending.key!r}")
            )

    def _discard(self, pending: _PendingRequest) -> None:
        if self._pending.get(pending.key) is pending:
            del self._pending[pending.key]
        if pending.timeout_handle is not None:
            pending.timeout_handle.cancel()
            pending.timeout_handle = None

    def _forget_cancelled(self, pending: _PendingRequest) -> None:
        # A caller cancelling its await must free the key immediately
        if pending.future.cancelled():
            self._discard(pending)
