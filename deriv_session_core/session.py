"""High-level session facade for the Deriv streaming API.

This module provides the API that presentation-layer collaborators use to
talk to the brokerage. It routes calls to the connection manager, the
correlation table and the subscription registry, and performs no business
logic of its own:
- connect / disconnect / authorize
- tick subscriptions that survive reconnects
- proposal and buy request/response calls
- an observable connection state

Collaborators MUST use this API and MUST NOT write to the channel directly.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from typing import Any

from .config import SessionConfig
from .connection import (
    AuthorizationState,
    ConnectionManager,
    ConnectionState,
    CredentialSource,
)
from .protocol import ProposalParams, build_buy_request, build_proposal_request
from .subscriptions import ErrorCallback, TickCallback
from .transport import DerivTransport

_LOGGER = logging.getLogger(__name__)


class DerivSession:
    """Session facade consumed by external collaborators.

    Usage:
        session = DerivSession(load_config(), credential_source=store.token)
        session.on_connection_state_changed(status_indicator.update)
        await session.connect()
        unsubscribe = session.subscribe("R_100", on_tick)
        proposal = await session.request_proposal(params)
        receipt = await session.buy(proposal["id"], proposal["ask_price"])
        unsubscribe()
        await session.disconnect()
    """

    def __init__(
        self,
        config: SessionConfig | None = None,
        *,
        credential_source: CredentialSource | None = None,
        transport_factory: Callable[[], DerivTransport] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or SessionConfig()
        self._connection = ConnectionManager(
            self.config,
            transport_factory=transport_factory,
            credential_source=credential_source,
            rng=rng,
        )

    # -------------------------------------------------------------------------
    # Public API: Connection Management
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect, authorizing with the stored credential if there is one."""
        await self._connection.connect()

    async def disconnect(self) -> None:
        """Disconnect permanently; outstanding calls fail with DerivRequestCancelled."""
        await self._connection.disconnect()

    async def authorize(self, credential: str) -> dict[str, Any]:
        """Authorize the connection with a trading-account token.

        Returns:
            Account details from the authorize response.
        """
        return await self._connection.authorize(credential)

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    @property
    def is_ready(self) -> bool:
        return self._connection.is_ready

    @property
    def authorization_state(self) -> AuthorizationState:
        return self._connection.authorization

    @property
    def last_error(self) -> Exception | None:
        return self._connection.last_error

    @property
    def reconnect_attempt(self) -> int:
        return self._connection.reconnect_attempt

    def on_connection_state_changed(
        self, callback: Callable[[ConnectionState], None]
    ) -> Callable[[], None]:
        """Register callback for connection state changes.

        Callback receives a ConnectionState. Returns a callable that removes
        the callback.
        """
        return self._connection.on_connection_state_changed(callback)

    # -------------------------------------------------------------------------
    # Public API: Streams
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        stream_key: str,
        on_tick: TickCallback,
        *,
        on_error: ErrorCallback | None = None,
    ) -> Callable[[], None]:
        """Listen to the tick stream of an instrument.

        Callback receives the tick payload, e.g.
        ``{"symbol": "R_100", "quote": 957.32, "epoch": 1700000000}``.
        The stream is re-established automatically after reconnects.

        Returns:
            Callable that removes this listener. Calling it twice is a no-op.
        """
        registry = self._connection.subscriptions
        handle = registry.add_listener(stream_key, on_tick, on_error=on_error)

        def _unsubscribe() -> None:
            registry.remove_listener(handle)

        return _unsubscribe

    # -------------------------------------------------------------------------
    # Public API: Trading
    # -------------------------------------------------------------------------

    async def request_proposal(
        self, params: ProposalParams | dict[str, Any]
    ) -> dict[str, Any]:
        """Request a price proposal for a contract.

        Returns:
            Proposal payload including ``id`` and ``ask_price``.

        Raises:
            ValueError: Invalid proposal parameters.
            DerivNotReadyError: The connection is not Ready.
            DerivDuplicateRequest: An identical proposal is outstanding.
            DerivApiError: The remote rejected the proposal.
        """
        if not isinstance(params, ProposalParams):
            params = ProposalParams.from_dict(params)
        envelope = await self._connection.request(build_proposal_request(params))
        _LOGGER.debug("[%s] Proposal received for %s", self.config.app_id, params.symbol)
        return envelope.payload if isinstance(envelope.payload, dict) else {}

    async def buy(self, proposal_id: str, price: float) -> dict[str, Any]:
        """Buy the contract a proposal describes at up to ``price``.

        Returns:
            Purchase receipt payload (``contract_id``, ``buy_price``...).
        """
        envelope = await self._connection.request(build_buy_request(proposal_id, price))
        _LOGGER.info("[%s] Contract bought from proposal %s", self.config.app_id, proposal_id)
        return envelope.payload if isinstance(envelope.payload, dict) else {}
