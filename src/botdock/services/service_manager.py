"""Service lifecycle manager."""

from __future__ import annotations

from typing import Any

from botdock.log import get_logger
from botdock.services.base import Service

logger = get_logger(__name__)


class ServiceManager:
    """Starts services in order and stops them in reverse order."""

    def __init__(self, services: list[Service]):
        self._services = list(services)

    def get(self, name: str) -> Service | None:
        for service in self._services:
            if service.service_name == name:
                return service
        return None

    async def start_all(self) -> None:
        for service in self._services:
            await service.start()
        logger.info("all_services_started", services=[s.service_name for s in self._services])

    async def stop_all(self) -> None:
        """Stop all services; one failing service does not block the others."""
        for service in reversed(self._services):
            try:
                await service.stop()
            except Exception as e:
                logger.error("service_stop_error", service=service.service_name, error=str(e))
        logger.info("all_services_stopped")

    async def health_check_all(self) -> dict[str, dict[str, Any]]:
        return {s.service_name: await s.describe() for s in self._services}
