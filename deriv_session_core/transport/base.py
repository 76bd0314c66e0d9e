"""Transport contract consumed by the connection manager.

A transport owns one physical duplex channel. The connection manager opens
it, writes JSON frames through it, and iterates it for inbound frames until
the iteration yields CLOSED or ERROR.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum
from typing import Any


class DerivWsMessageType(Enum):
    """Normalized WebSocket message types."""

    TEXT = "text"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class DerivWsMessage:
    """Normalized WebSocket message payload."""

    type: DerivWsMessageType
    data: str | dict[str, Any] | None = None


class DerivTransport(ABC):
    """Abstract duplex channel to the Deriv endpoint."""

    @abstractmethod
    async def connect(self, url: str, *, timeout: float = 15.0) -> None:
        """Open the channel.

        Raises:
            DerivConnectionError: If the channel cannot be opened.
        """
        ...

    @abstractmethod
    async def send_json(self, payload: dict[str, Any]) -> None:
        """Write one JSON frame.

        Raises:
            DerivConnectionError: If the channel is not open.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the channel cleanly. Safe to call when not connected."""
        ...

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[DerivWsMessage]:
        """Iterate inbound messages, ending with one CLOSED or ERROR."""
        ...

