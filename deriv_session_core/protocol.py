"""Frame codec for the Deriv WebSocket API.

Outgoing requests are plain JSON objects whose first key names the call
(``ticks``, ``proposal``, ``buy``, ``authorize``...). Every response carries a
``msg_type`` discriminator, the payload under a key of the same name, and an
``echo_req`` copy of the request that caused it.

The protocol has no per-message request id, so responses are matched to their
requests by a correlation key derived from the request's semantic fields. The
same derivation is applied to an outgoing frame and to a response's
``echo_req``, which is what makes the two comparable.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

CONTRACT_TYPES: tuple[str, ...] = ("CALL", "PUT")
DURATION_UNITS: tuple[str, ...] = ("t", "s", "m", "h", "d")
BASIS_TYPES: tuple[str, ...] = ("stake", "payout")
MIN_STAKE = 0.35
MAX_STAKE = 50000
DEFAULT_CURRENCY = "USD"

PROPOSAL_KEY_FIELDS: tuple[str, ...] = (
    "contract_type",
    "symbol",
    "duration",
    "duration_unit",
    "amount",
    "basis",
    "currency",
)

CorrelationKey = tuple[Any, ...]


class FrameError(ValueError):
    """Raised when an inbound frame cannot be decoded."""


@dataclass(frozen=True)
class ProposalParams:
    """Parameters for a contract price proposal.

    Attributes:
        contract_type: ``CALL`` (rise) or ``PUT`` (fall).
        symbol: Underlying instrument, e.g. ``R_100``.
        duration: Contract duration in ``duration_unit``.
        duration_unit: One of ``t s m h d``.
        amount: Stake or payout amount depending on ``basis``.
        basis: ``stake`` or ``payout``.
        currency: Account currency code.
    """

    contract_type: str
    symbol: str
    duration: int
    duration_unit: str
    amount: float
    basis: str = "stake"
    currency: str = DEFAULT_CURRENCY

    def __post_init__(self) -> None:
        if self.contract_type not in CONTRACT_TYPES:
            raise ValueError(f"Unsupported contract_type: {self.contract_type}")
        if not self.symbol:
            raise ValueError("symbol is required")
        if isinstance(self.duration, bool) or not isinstance(self.duration, int):
            raise ValueError("duration must be an integer")
        if self.duration <= 0:
            raise ValueError("duration must be positive")
        if self.duration_unit not in DURATION_UNITS:
            raise ValueError(f"Unsupported duration_unit: {self.duration_unit}")
        if self.basis not in BASIS_TYPES:
            raise ValueError(f"Unsupported basis: {self.basis}")
        if not MIN_STAKE <= self.amount <= MAX_STAKE:
            raise ValueError(f"amount must be within [{MIN_STAKE}, {MAX_STAKE}]")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProposalParams:
        """Build params from a loose mapping, ignoring unrelated keys."""
        try:
            return cls(
                contract_type=data["contract_type"],
                symbol=data["symbol"],
                duration=data["duration"],
                duration_unit=data["duration_unit"],
                amount=data["amount"],
                basis=data.get("basis", "stake"),
                currency=data.get("currency", DEFAULT_CURRENCY),
            )
        except KeyError as err:
            raise ValueError(f"Missing proposal field: {err.args[0]}") from err


@dataclass(frozen=True)
class Envelope:
    """Typed view of one inbound frame."""

    msg_type: str
    payload: Any = None
    echo_req: dict[str, Any] = field(default_factory=lambda: {})
    error_code: str | None = None
    error_message: str | None = None
    subscription_id: str | None = None
    raw: dict[str, Any] = field(default_factory=lambda: {})

    @property
    def is_error(self) -> bool:
        return self.error_code is not None or self.error_message is not None


# -----------------------------------------------------------------------------
# Request builders
# -----------------------------------------------------------------------------


def build_authorize_request(credential: str) -> dict[str, Any]:
    if not credential:
        raise ValueError("credential is required")
    return {"authorize": credential}


def build_ticks_request(symbol: str) -> dict[str, Any]:
    if not symbol:
        raise ValueError("symbol is required")
    return {"ticks": symbol, "subscribe": 1}


def build_forget_request(subscription_id: str) -> dict[str, Any]:
    return {"forget": subscription_id}


def build_proposal_request(params: ProposalParams) -> dict[str, Any]:
    return {
        "proposal": 1,
        "contract_type": params.contract_type,
        "symbol": params.symbol,
        "duration": params.duration,
        "duration_unit": params.duration_unit,
        "amount": params.amount,
        "basis": params.basis,
        "currency": params.currency,
    }


def build_buy_request(proposal_id: str, price: float) -> dict[str, Any]:
    if not proposal_id:
        raise ValueError("proposal_id is required")
    if price <= 0:
        raise ValueError("price must be positive")
    return {"buy": proposal_id, "price": price}


def build_ping_request() -> dict[str, Any]:
    return {"ping": 1}


def encode_request(request: dict[str, Any]) -> str:
    """Serialize a request frame to wire text."""
    return json.dumps(request)


# -----------------------------------------------------------------------------
# Inbound parsing
# -----------------------------------------------------------------------------


def parse_frame(data: str | bytes | dict[str, Any]) -> Envelope:
    """Decode an inbound frame into an Envelope.

    Raises:
        FrameError: If the frame is not a JSON object with a ``msg_type``.
    """
    if isinstance(data, dict):
        message = data
    else:
        try:
            message = json.loads(data)
        except (TypeError, ValueError) as err:
            raise FrameError(f"Frame is not valid JSON: {err}") from err

    if not isinstance(message, dict):
        raise FrameError("Frame must be a JSON object")

    msg_type = message.get("msg_type")
    if not isinstance(msg_type, str) or not msg_type:
        raise FrameError("Frame has no msg_type")

    echo_req = message.get("echo_req")
    if not isinstance(echo_req, dict):
        echo_req = {}

    error_code: str | None = None
    error_message: str | None = None
    error = message.get("error")
    if isinstance(error, dict):
        error_code = str(error.get("code") or "UnknownError")
        error_message = str(error.get("message") or error_code)
    elif error is not None:
        error_code = "UnknownError"
        error_message = str(error)

    subscription_id: str | None = None
    subscription = message.get("subscription")
    if isinstance(subscription, dict) and subscription.get("id"):
        subscription_id = str(subscription["id"])

    return Envelope(
        msg_type=msg_type,
        payload=message.get(msg_type),
        echo_req=echo_req,
        error_code=error_code,
        error_message=error_message,
        subscription_id=subscription_id,
        raw=message,
    )


# -----------------------------------------------------------------------------
# Correlation
# -----------------------------------------------------------------------------


def _normalize(value: Any) -> Any:
    """Normalize a request field so echoed numbers compare equal."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    if value is None:
        return None
    return str(value)


def correlation_key(request: dict[str, Any]) -> CorrelationKey | None:
    """Derive the correlation key for a request or an echoed request.

    Returns None when the request shape is not one the session correlates.
    """
    if "authorize" in request:
        return ("authorize",)
    if "ticks" in request:
        return ("ticks", str(request["ticks"]))
    if "proposal" in request:
        values = [
            request.get(name, DEFAULT_CURRENCY if name == "currency" else None)
            for name in PROPOSAL_KEY_FIELDS
        ]
        return ("proposal", *(_normalize(v) for v in values))
    if "buy" in request:
        return ("buy", str(request["buy"]))
    if "forget" in request:
        return ("forget", str(request["forget"]))
    if "ping" in request:
        return ("ping",)
    return None


def response_key(envelope: Envelope) -> CorrelationKey | None:
    """Derive the correlation key of the request a response answers."""
    if envelope.echo_req:
        key = correlation_key(envelope.echo_req)
        if key is not None:
            return key

    # Fallbacks for frames without an echo
    if envelope.msg_type in ("authorize", "ping"):
        return (envelope.msg_type,)
    if envelope.msg_type == "tick" and isinstance(envelope.payload, dict):
        symbol = envelope.payload.get("symbol")
        if symbol:
            return ("ticks", str(symbol))
    return None


def tick_stream_key(envelope: Envelope) -> str | None:
    """Return the stream key a tick push frame belongs to."""
    if isinstance(envelope.payload, dict) and envelope.payload.get("symbol"):
        return str(envelope.payload["symbol"])
    ticks = envelope.echo_req.get("ticks")
    return str(ticks) if ticks else None
