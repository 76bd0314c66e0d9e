"""Connection state machine for the Deriv streaming session.

The ConnectionManager exclusively owns the physical channel. It drives
Disconnected -> Connecting -> Authorizing -> Ready, routes inbound frames to
the correlation table and subscription registry, and reconnects with
exponential backoff after an unclean drop.

All transitions happen on the event loop thread. Failing pending requests
and deactivating subscriptions happens synchronously with the transition out
of Ready, before any other event is processed.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .backoff import ExponentialBackoff
from .config import SessionConfig
from .correlation import CorrelationTable
from .errors import (
    DerivApiError,
    DerivAuthorizationError,
    DerivClientError,
    DerivConnectionError,
    DerivConnectionLost,
    DerivDuplicateRequest,
    DerivNotReadyError,
    DerivRequestCancelled,
    DerivRequestTimeout,
)
from .protocol import (
    Envelope,
    FrameError,
    build_authorize_request,
    build_ping_request,
    parse_frame,
)
from .subscriptions import SubscriptionRegistry
from .transport import DerivTransport, DerivWsClient, DerivWsMessageType

_LOGGER = logging.getLogger(__name__)

CredentialSource = Callable[[], str | None]
StateCallback = Callable[["ConnectionState"], None]


class ConnectionState(Enum):
    """Lifecycle phase of the connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHORIZING = "authorizing"
    READY = "ready"
    RECONNECTING = "reconnecting"


class AuthorizationStatus(Enum):
    """Authorization phase of the current physical connection."""

    UNAUTHORIZED = "unauthorized"
    PENDING = "pending"
    AUTHORIZED = "authorized"
    FAILED = "failed"


@dataclass(frozen=True)
class AuthorizationState:
    status: AuthorizationStatus
    reason: str | None = None


_UNAUTHORIZED = AuthorizationState(AuthorizationStatus.UNAUTHORIZED)


class ConnectionManager:
    """Own the channel and its lifecycle.

    Usage:
        manager = ConnectionManager(SessionConfig(), credential_source=store.token)
        manager.on_connection_state_changed(print)
        await manager.connect()
        envelope = await manager.request({"proposal": 1, ...})
        await manager.disconnect()
    """

    def __init__(
        self,
        config: SessionConfig,
        *,
        transport_factory: Callable[[], DerivTransport] | None = None,
        credential_source: CredentialSource | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._label = config.app_id
        self._transport_factory = transport_factory or DerivWsClient
        self._credential_source = credential_source
        self._credential: str | None = None

        # Connection state
        self._channel: DerivTransport | None = None
        # Bumped by every open and shutdown; a physical connection is identified
        # by its generation, not by the transport object
        self._generation = 0
        self._replayed_generation: int | None = None
        self._state = ConnectionState.DISCONNECTED
        self._authorization = _UNAUTHORIZED
        self._last_error: Exception | None = None
        self._listen_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._backoff = ExponentialBackoff(
            config.retry_base_delay,
            config.retry_max_delay,
            jitter=config.retry_jitter,
            rng=rng,
        )
        self._last_reconnect_delay: float | None = None

        self._state_callbacks: list[StateCallback] = []

        self.correlation = CorrelationTable(
            self._transmit,
            timeout=config.request_timeout,
            label=self._label,
        )
        self.subscriptions = SubscriptionRegistry(self.correlation, label=self._label)

    # -------------------------------------------------------------------------
    # Public API: State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ConnectionState.READY

    @property
    def authorization(self) -> AuthorizationState:
        return self._authorization

    @property
    def last_error(self) -> Exception | None:
        return self._last_error

    @property
    def reconnect_attempt(self) -> int:
        """Consecutive reconnect attempts since the last Ready."""
        return self._backoff.attempt

    @property
    def last_reconnect_delay(self) -> float | None:
        return self._last_reconnect_delay

    def on_connection_state_changed(self, callback: StateCallback) -> Callable[[], None]:
        """Register a state observer.

        Returns:
            Callable that removes the observer.
        """
        self._state_callbacks.append(callback)

        def _remove() -> None:
            if callback in self._state_callbacks:
                self._state_callbacks.remove(callback)

        return _remove

    # -------------------------------------------------------------------------
    # Public API: Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the channel and bring the connection to Ready.

        No-op while Connecting, Authorizing or Ready.

        Raises:
            DerivConnectionError: The transport could not be opened.
            DerivAuthorizationError: The stored credential was rejected.
        """
        if self._state in (
            ConnectionState.CONNECTING,
            ConnectionState.AUTHORIZING,
            ConnectionState.READY,
        ):
            return

        self._cancel_reconnect()
        await self._open(failure_state=ConnectionState.DISCONNECTED)

    async def authorize(self, credential: str) -> dict[str, Any]:
        """Authorize the current connection and store the credential.

        Returns:
            The authorize response payload.

        Raises:
            DerivNotReadyError: Not in Authorizing or Ready.
            DerivAuthorizationError: The credential was rejected.
        """
        if self._state not in (ConnectionState.AUTHORIZING, ConnectionState.READY):
            raise DerivNotReadyError(f"Cannot authorize while {self._state.value}")
        return await self._authorize(credential)

    async def disconnect(self) -> None:
        """Tear the connection down permanently.

        Pending requests fail with DerivRequestCancelled and the backoff
        timer is cancelled before this coroutine first yields.
        """
        _LOGGER.info("[%s] Disconnecting", self._label)
        self._last_error = None
        await self._shutdown(
            lambda: DerivRequestCancelled("Session disconnected"),
            authorization=_UNAUTHORIZED,
        )

    async def request(
        self,
        payload: dict[str, Any],
        *,
        timeout: float | None = None,
    ) -> Envelope:
        """Send a correlated request on a Ready connection."""
        if self._state is not ConnectionState.READY:
            raise DerivNotReadyError(f"Connection is {self._state.value}")
        return await self.correlation.request(payload, timeout=timeout)

    # -------------------------------------------------------------------------
    # Internal: Connection State Machine
    # -------------------------------------------------------------------------

    def _set_state(self, state: ConnectionState) -> None:
        """Update connection state and notify observers."""
        if self._state is state:
            return
        _LOGGER.debug(
            "[%s] State: %s → %s", self._label, self._state.value, state.value
        )
        self._state = state
        for callback in list(self._state_callbacks):
            try:
                callback(state)
            except Exception as err:
                _LOGGER.exception("[%s] State callback error: %s", self._label, err)

    def _stored_credential(self) -> str | None:
        if self._credential:
            return self._credential
        if self._credential_source is not None:
            return self._credential_source()
        return None

    async def _open(self, *, failure_state: ConnectionState) -> None:
        self._generation += 1
        generation = self._generation
        self._set_state(ConnectionState.CONNECTING)
        self._authorization = _UNAUTHORIZED

        _LOGGER.info(
            "[%s] Connecting to %s (attempt #%d)",
            self._label,
            self._config.endpoint,
            self._backoff.attempt + 1,
        )

        channel = self._transport_factory()
        try:
            await channel.connect(self._config.url, timeout=self._config.connect_timeout)
        except DerivConnectionError as err:
            _LOGGER.warning("[%s] Connection failed: %s", self._label, err)
            self._last_error = err
            if generation == self._generation and self._state is ConnectionState.CONNECTING:
                self._set_state(failure_state)
            raise

        if generation != self._generation or self._state is not ConnectionState.CONNECTING:
            # disconnect() ran while the transport was opening
            await channel.close()
            raise DerivRequestCancelled("Disconnected while connecting")

        self._channel = channel
        self._listen_task = asyncio.create_task(self._listen(channel, generation))
        _LOGGER.info("[%s] WebSocket connected", self._label)

        credential = self._stored_credential()
        if credential:
            await self._authorize(credential)
        else:
            await self._become_ready(channel, generation)

    async def _authorize(self, credential: str) -> dict[str, Any]:
        channel = self._channel
        generation = self._generation
        self._set_state(ConnectionState.AUTHORIZING)
        self._authorization = AuthorizationState(AuthorizationStatus.PENDING)

        try:
            envelope = await self.correlation.request(build_authorize_request(credential))
        except DerivApiError as err:
            reason = str(err)
            _LOGGER.error("[%s] Authorization rejected: %s", self._label, reason)
            auth_error = DerivAuthorizationError(reason, code=err.code)
            if self._credential == credential:
                self._credential = None
            await self._shutdown(
                lambda: DerivRequestCancelled("Authorization failed"),
                authorization=AuthorizationState(AuthorizationStatus.FAILED, reason),
            )
            self._last_error = auth_error
            raise auth_error from err
        except DerivRequestTimeout:
            _LOGGER.warning("[%s] Authorization timed out", self._label)
            if channel is not None and self._owns_channel(channel, generation):
                self._handle_channel_loss(channel, generation)
                await channel.close()
            raise

        if channel is None or not self._owns_channel(channel, generation):
            raise DerivConnectionLost("Connection lost during authorization")

        self._credential = credential
        self._authorization = AuthorizationState(AuthorizationStatus.AUTHORIZED)
        _LOGGER.info("[%s] Authorized", self._label)
        await self._become_ready(channel, generation)
        payload: dict[str, Any] = envelope.payload if isinstance(envelope.payload, dict) else {}
        return payload

    def _owns_channel(self, channel: DerivTransport, generation: int) -> bool:
        return channel is self._channel and generation == self._generation

    async def _become_ready(self, channel: DerivTransport, generation: int) -> None:
        if self._replayed_generation != generation:
            self._replayed_generation = generation
            await self.subscriptions.replay()

        if not self._owns_channel(channel, generation):
            raise DerivConnectionLost("Connection lost before ready")

        self._backoff.reset()
        self._last_error = None
        self._set_state(ConnectionState.READY)

        if self._config.keepalive_interval and self._keepalive_task is None:
            self._keepalive_task = asyncio.create_task(
                self._keepalive_loop(channel, generation)
            )

    def _handle_channel_loss(self, channel: DerivTransport, generation: int) -> None:
        """Fail in-flight work and schedule a reconnect after an unclean drop."""
        if not self._owns_channel(channel, generation):
            return

        self._channel = None
        self._cancel_keepalive()
        failed = self.correlation.fail_all(lambda: DerivConnectionLost("Connection lost"))
        self.subscriptions.mark_inactive()
        self._authorization = _UNAUTHORIZED
        self._last_error = DerivConnectionLost("Connection lost")

        _LOGGER.warning(
            "[%s] Connection lost (%d pending requests failed)", self._label, failed
        )
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        """Schedule reconnection attempt with exponential backoff."""
        if self._reconnect_task is not None:
            return

        delay = self._backoff.next_delay()
        self._last_reconnect_delay = delay
        self._set_state(ConnectionState.RECONNECTING)

        _LOGGER.info(
            "[%s] Reconnecting in %.2fs (attempt %d)",
            self._label,
            delay,
            self._backoff.attempt,
        )

        self._reconnect_task = asyncio.create_task(self._reconnect_after_delay(delay))

    async def _reconnect_after_delay(self, delay: float) -> None:
        """Reconnect after delay."""
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            _LOGGER.debug("[%s] Reconnect cancelled", self._label)
            raise

        self._reconnect_task = None
        if self._state is not ConnectionState.RECONNECTING:
            return

        try:
            await self._open(failure_state=ConnectionState.RECONNECTING)
        except DerivAuthorizationError:
            return
        except DerivClientError as err:
            _LOGGER.warning("[%s] Reconnect attempt failed: %s", self._label, err)
            if self._state is ConnectionState.RECONNECTING:
                self._schedule_reconnect()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None

    def _cancel_keepalive(self) -> None:
        if self._keepalive_task is not None:
            if self._keepalive_task is not asyncio.current_task():
                self._keepalive_task.cancel()
            self._keepalive_task = None

    async def _shutdown(
        self,
        error_factory: Callable[[], Exception],
        *,
        authorization: AuthorizationState,
    ) -> None:
        """Close the channel for good; synchronous part runs before any await."""
        self._cancel_reconnect()
        self._cancel_keepalive()
        self.subscriptions.cancel_tasks()

        channel = self._channel
        listen_task = self._listen_task
        self._channel = None
        self._generation += 1
        self._listen_task = None

        self.correlation.fail_all(error_factory)
        self.subscriptions.mark_inactive()
        self._authorization = authorization
        self._backoff.reset()
        self._set_state(ConnectionState.DISCONNECTED)

        if listen_task is not None and listen_task is not asyncio.current_task():
            listen_task.cancel()
            try:
                await listen_task
            except asyncio.CancelledError:
                pass

        if channel is not None:
            try:
                await asyncio.wait_for(channel.close(), timeout=2.0)
            except TimeoutError:
                _LOGGER.warning("[%s] WebSocket close timed out", self._label)
            except DerivClientError as err:
                _LOGGER.warning("[%s] WebSocket close failed: %s", self._label, err)

    # -------------------------------------------------------------------------
    # Internal: Channel IO
    # -------------------------------------------------------------------------

    async def _transmit(self, payload: dict[str, Any]) -> None:
        channel = self._channel
        if channel is None:
            raise DerivConnectionLost("Channel is not open")
        try:
            await channel.send_json(payload)
        except DerivConnectionError as err:
            raise DerivConnectionLost("Failed to send frame") from err

    async def _listen(self, channel: DerivTransport, generation: int) -> None:
        """Listen for frames until the channel ends."""
        message_count = 0

        try:
            async for msg in channel:
                if msg.type == DerivWsMessageType.TEXT:
                    message_count += 1
                    try:
                        envelope = parse_frame(
                            msg.data if msg.data is not None else ""
                        )
                    except FrameError as err:
                        _LOGGER.warning("[%s] Invalid frame: %s", self._label, err)
                        continue
                    self._route(envelope)

                elif msg.type == DerivWsMessageType.CLOSED:
                    _LOGGER.info("[%s] WebSocket closed by server", self._label)
                    break

                elif msg.type == DerivWsMessageType.ERROR:
                    _LOGGER.error("[%s] WebSocket error", self._label)
                    break

        except asyncio.CancelledError:
            _LOGGER.debug(
                "[%s] Listener cancelled (%d frames)", self._label, message_count
            )
            raise
        except DerivClientError as err:
            _LOGGER.warning("[%s] Client error: %s", self._label, err)
        except Exception as err:
            _LOGGER.exception("[%s] Unexpected error: %s", self._label, err)

        self._handle_channel_loss(channel, generation)

    def _route(self, envelope: Envelope) -> None:
        """Demultiplex one frame to the correlation table and the registry."""
        matched = self.correlation.resolve(envelope)

        if envelope.msg_type == "tick" and not envelope.is_error:
            self.subscriptions.dispatch(envelope)
        elif envelope.is_error and not matched:
            _LOGGER.warning(
                "[%s] Uncorrelated error frame (%s): %s",
                self._label,
                envelope.msg_type,
                envelope.error_message,
            )
        elif not matched:
            _LOGGER.debug(
                "[%s] Unhandled frame type: %s", self._label, envelope.msg_type
            )

    # -------------------------------------------------------------------------
    # Internal: Keepalive
    # -------------------------------------------------------------------------

    async def _keepalive_loop(self, channel: DerivTransport, generation: int) -> None:
        """Keepalive loop - send periodic pings."""
        interval = self._config.keepalive_interval or 0
        try:
            while self._owns_channel(channel, generation):
                await asyncio.sleep(interval)
                if self._state is not ConnectionState.READY:
                    continue
                try:
                    await self.correlation.request(
                        build_ping_request(),
                        timeout=self._config.keepalive_timeout,
                    )
                except DerivDuplicateRequest:
                    continue
                except DerivApiError as err:
                    _LOGGER.warning("[%s] Ping rejected: %s", self._label, err)
                except DerivRequestTimeout:
                    _LOGGER.error("[%s] Connection dead (ping timeout)", self._label)
                    self._keepalive_task = None
                    await channel.close()
                    return
        except (DerivConnectionLost, DerivRequestCancelled):
            return
        except asyncio.CancelledError:
            _LOGGER.debug("[%s] Keepalive cancelled", self._label)
