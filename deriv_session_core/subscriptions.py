"""Tick-stream subscription bookkeeping.

A Subscription exists while at least one listener is registered for its
stream key. Its upstream subscribe request is scoped to a connection epoch:
the registry issues at most one subscribe per key per epoch, marks every
subscription inactive when the channel drops, and replays them when the
connection manager opens the next epoch.

Activation is confirmed by the protocol, never assumed: the first tick frame
echoing the subscribe request is its acknowledgment. Ticks for a stream that
is not active on the current epoch are dropped.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from .correlation import CorrelationTable
from .errors import (
    DerivClientError,
    DerivConnectionLost,
    DerivRequestCancelled,
)
from .protocol import (
    Envelope,
    build_forget_request,
    build_ticks_request,
    correlation_key,
    tick_stream_key,
)

_LOGGER = logging.getLogger(__name__)

TickCallback = Callable[[dict[str, Any]], None]
ErrorCallback = Callable[[Exception], None]


@dataclass(frozen=True)
class ListenerHandle:
    """Opaque handle returned by add_listener."""

    stream_key: str
    listener_id: int


@dataclass(slots=True)
class _Listener:
    callback: TickCallback
    on_error: ErrorCallback | None = None


@dataclass
class Subscription:
    """Logical interest in one tick stream.

    Attributes:
        stream_key: Instrument symbol the stream is keyed on.
        listeners: Registered callbacks by listener id, in registration order.
        active: Whether the subscribe was acknowledged on the current epoch.
        subscription_id: Remote stream id from the acknowledgment.
        epoch: Epoch in which the current subscribe request was issued.
    """

    stream_key: str
    listeners: dict[int, _Listener] = field(default_factory=lambda: {})
    active: bool = False
    subscription_id: str | None = None
    epoch: int | None = None
    retiring: bool = False
    forgetting: bool = False


class SubscriptionRegistry:
    """Track live tick subscriptions and fan out push frames to listeners."""

    def __init__(self, correlation: CorrelationTable, *, label: str = "") -> None:
        self._correlation = correlation
        self._label = label
        self._subscriptions: dict[str, Subscription] = {}
        self._listener_ids = itertools.count(1)
        self._epoch = 0
        self._ready = False
        self._tasks: set[asyncio.Task[None]] = set()

    def __len__(self) -> int:
        return sum(1 for sub in self._subscriptions.values() if not sub.retiring)

    def __contains__(self, stream_key: object) -> bool:
        sub = self._subscriptions.get(stream_key)  # type: ignore[arg-type]
        return sub is not None and not sub.retiring

    def get(self, stream_key: str) -> Subscription | None:
        sub = self._subscriptions.get(stream_key)
        if sub is None or sub.retiring:
            return None
        return sub

    # -------------------------------------------------------------------------
    # Public API: Listeners
    # -------------------------------------------------------------------------

    def add_listener(
        self,
        stream_key: str,
        callback: TickCallback,
        *,
        on_error: ErrorCallback | None = None,
    ) -> ListenerHandle:
        """Register a tick listener, subscribing upstream if needed."""
        if not stream_key:
            raise ValueError("stream_key is required")

        sub = self._subscriptions.get(stream_key)
        if sub is None:
            sub = Subscription(stream_key=stream_key)
            self._subscriptions[stream_key] = sub
            _LOGGER.debug("[%s] Subscription created: %s", self._label, stream_key)
        elif sub.retiring:
            sub.retiring = False
            _LOGGER.debug("[%s] Subscription revived: %s", self._label, stream_key)

        listener_id = next(self._listener_ids)
        sub.listeners[listener_id] = _Listener(callback=callback, on_error=on_error)
        self._ensure_subscribed(sub)
        return ListenerHandle(stream_key=stream_key, listener_id=listener_id)

    def remove_listener(self, handle: ListenerHandle) -> bool:
        """Remove a listener; the last one out unsubscribes upstream.

        Returns:
            True if the handle was registered.
        """
        sub = self._subscriptions.get(handle.stream_key)
        if sub is None or sub.retiring:
            return False
        if sub.listeners.pop(handle.listener_id, None) is None:
            return False

        if not sub.listeners:
            sub.retiring = True
            self._begin_retire(sub)
        return True

    # -------------------------------------------------------------------------
    # Public API: Connection lifecycle hooks
    # -------------------------------------------------------------------------

    async def replay(self) -> int:
        """Open a new epoch and issue subscribes for every live subscription.

        Called by the connection manager before it declares Ready. Requests
        are on the wire when this returns; acknowledgments complete later.

        Returns:
            Number of subscribe requests issued.
        """
        self._epoch += 1
        self._ready = True
        issued = 0

        for sub in list(self._subscriptions.values()):
            if sub.retiring:
                self._drop(sub)
                continue
            if not sub.listeners or sub.epoch == self._epoch:
                continue
            sub.epoch = self._epoch
            await self._issue(sub, self._epoch)
            issued += 1

        if issued:
            _LOGGER.info(
                "[%s] Replayed %d subscriptions (epoch %d)",
                self._label,
                issued,
                self._epoch,
            )
        return issued

    def mark_inactive(self) -> None:
        """Mark every subscription inactive after the channel is gone."""
        self._ready = False
        for sub in list(self._subscriptions.values()):
            sub.active = False
            sub.subscription_id = None
            sub.forgetting = False
            if sub.retiring:
                self._drop(sub)

    def cancel_tasks(self) -> None:
        """Cancel background subscribe/unsubscribe tasks."""
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    # -------------------------------------------------------------------------
    # Public API: Push dispatch
    # -------------------------------------------------------------------------

    def dispatch(self, envelope: Envelope) -> int:
        """Deliver a tick frame to every listener of its stream.

        Listeners run synchronously in registration order; a failing
        listener is logged and does not affect the others.

        Returns:
            Number of listeners the frame was delivered to.
        """
        stream_key = tick_stream_key(envelope)
        sub = self._subscriptions.get(stream_key) if stream_key else None
        if sub is None or sub.retiring:
            _LOGGER.debug("[%s] Tick dropped, no subscription: %s", self._label, stream_key)
            return 0

        if not sub.active:
            if self._ready and sub.epoch == self._epoch:
                self._activate(sub, envelope.subscription_id)
            else:
                _LOGGER.debug("[%s] Tick dropped, inactive: %s", self._label, stream_key)
                return 0

        payload = envelope.payload if isinstance(envelope.payload, dict) else {}
        delivered = 0
        for listener_id, listener in list(sub.listeners.items()):
            if listener_id not in sub.listeners:
                continue
            try:
                listener.callback(payload)
            except Exception as err:
                _LOGGER.exception(
                    "[%s] Tick listener error for %s: %s", self._label, stream_key, err
                )
            delivered += 1
        return delivered

    # -------------------------------------------------------------------------
    # Internal: Upstream requests
    # -------------------------------------------------------------------------

    def _ensure_subscribed(self, sub: Subscription) -> None:
        if not self._ready or sub.forgetting or sub.epoch == self._epoch:
            return
        sub.epoch = self._epoch
        self._spawn(self._issue(sub, self._epoch))

    def _owns(self, sub: Subscription) -> bool:
        return self._subscriptions.get(sub.stream_key) is sub

    async def _issue(self, sub: Subscription, epoch: int) -> None:
        if sub.retiring or sub.epoch != epoch or not self._owns(sub):
            return
        try:
            future = await self._correlation.submit(build_ticks_request(sub.stream_key))
        except DerivClientError as err:
            _LOGGER.warning(
                "[%s] Subscribe to %s not sent: %s", self._label, sub.stream_key, err
            )
            if sub.epoch == epoch:
                sub.epoch = None
            self._report(sub, err)
            return
        self._spawn(self._await_activation(sub, future, epoch))

    async def _await_activation(
        self,
        sub: Subscription,
        future: asyncio.Future[Envelope],
        epoch: int,
    ) -> None:
        try:
            envelope = await future
        except (DerivConnectionLost, DerivRequestCancelled):
            _LOGGER.debug("[%s] Subscribe to %s abandoned", self._label, sub.stream_key)
            return
        except DerivClientError as err:
            _LOGGER.warning(
                "[%s] Subscribe to %s failed: %s", self._label, sub.stream_key, err
            )
            self._report(sub, err)
            if sub.retiring:
                self._begin_retire(sub)
            return

        if sub.epoch != epoch or not self._ready:
            return
        self._activate(sub, envelope.subscription_id)
        if sub.retiring:
            self._begin_retire(sub)

    def _activate(self, sub: Subscription, subscription_id: str | None) -> None:
        if not sub.active:
            _LOGGER.debug("[%s] Subscription active: %s", self._label, sub.stream_key)
        sub.active = True
        if subscription_id:
            sub.subscription_id = subscription_id

    def _begin_retire(self, sub: Subscription) -> None:
        if sub.forgetting or not self._owns(sub):
            return

        on_current_epoch = self._ready and sub.epoch == self._epoch
        ack_pending = (
            on_current_epoch
            and not sub.active
            and correlation_key(build_ticks_request(sub.stream_key)) in self._correlation
        )
        if ack_pending:
            # Activation task sends the forget once the acknowledgment lands
            return

        if on_current_epoch and sub.active and sub.subscription_id:
            sub.forgetting = True
            self._spawn(self._forget(sub, sub.subscription_id))
            return

        self._drop(sub)

    async def _forget(self, sub: Subscription, subscription_id: str) -> None:
        if not sub.retiring or not self._ready or not self._owns(sub):
            sub.forgetting = False
            return
        try:
            await self._correlation.request(build_forget_request(subscription_id))
            _LOGGER.debug("[%s] Unsubscribed from %s", self._label, sub.stream_key)
        except DerivClientError as err:
            _LOGGER.warning(
                "[%s] Unsubscribe from %s failed: %s", self._label, sub.stream_key, err
            )
        finally:
            sub.forgetting = False
            if sub.subscription_id == subscription_id:
                sub.active = False
                sub.subscription_id = None
                sub.epoch = None

        if sub.retiring:
            self._drop(sub)
        else:
            self._ensure_subscribed(sub)

    def _drop(self, sub: Subscription) -> None:
        if self._owns(sub):
            del self._subscriptions[sub.stream_key]
            _LOGGER.debug("[%s] Subscription removed: %s", self._label, sub.stream_key)

    def _report(self, sub: Subscription, err: Exception) -> None:
        for listener in list(sub.listeners.values()):
            if listener.on_error is None:
                continue
            try:
                listener.on_error(err)
            except Exception as cb_err:
                _LOGGER.exception(
                    "[%s] Subscribe error callback failed: %s", self._label, cb_err
                )

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
