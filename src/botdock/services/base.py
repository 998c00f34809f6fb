"""Lifecycle interface for background services run by the host."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class Service(ABC):
    """A long-lived component started and stopped together with the host."""

    @property
    @abstractmethod
    def service_name(self) -> str:
        ...

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        ...

    async def describe(self) -> dict[str, Any]:
        """Health summary reported by the host's health endpoint."""
        return {"name": self.service_name, "healthy": await self.health_check()}
