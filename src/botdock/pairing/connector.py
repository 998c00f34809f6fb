"""Abstract messaging-protocol connection used during device pairing."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional


@dataclass(frozen=True, slots=True)
class ConnectionUpdate:
    """A connection state change reported by the protocol layer."""

    connection: str  # "connecting" | "open" | "close"
    session_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.connection == "open"

    @property
    def is_closed(self) -> bool:
        return self.connection == "close"


class PairingConnection(ABC):
    """One live protocol connection bound to a session directory.

    The protocol layer owns the credential files in the session directory and
    keeps them current while the connection is open.
    """

    @abstractmethod
    async def request_pairing_code(self, phone_number: str) -> str:
        """Ask the protocol for a human-entry pairing code."""
        ...

    @abstractmethod
    def updates(self) -> AsyncIterator[ConnectionUpdate]:
        """Yield connection updates until the connection ends."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class PairingConnector(ABC):
    """Factory for protocol connections.

    To support another protocol backend, subclass this and return your own
    ``PairingConnection`` from ``connect``.
    """

    @abstractmethod
    async def connect(self, session_dir: Path) -> PairingConnection:
        ...
