"""Application context - wires all components and manages lifecycle."""

from __future__ import annotations

from pathlib import Path

from botdock.config import AppConfig
from botdock.core.process_registry import ProcessRegistry
from botdock.deploy.orchestrator import DeploymentOrchestrator
from botdock.deploy.source import SourceFetcher
from botdock.log import get_logger
from botdock.pairing.bridge import SubprocessBridgeConnector
from botdock.pairing.connector import PairingConnector
from botdock.pairing.manager import PairingSessionManager
from botdock.pairing.status import SessionStatusResolver
from botdock.services.monitor import ProcessMonitor
from botdock.services.service_manager import ServiceManager
from botdock.storage.bot_repo import BotRepository
from botdock.storage.database import Database

logger = get_logger(__name__)


class BotDockApp:
    """Holds the single instance of every component for one host process.

    Constructed once at startup and handed to the HTTP layer; nothing here is
    a module-level global.
    """

    def __init__(
        self,
        config: AppConfig,
        connector: PairingConnector | None = None,
        fetcher: SourceFetcher | None = None,
    ):
        self.config = config
        self.db = Database(config.storage.db_path)
        self.bot_repo = BotRepository(self.db)
        self.registry = ProcessRegistry()
        self.resolver = SessionStatusResolver(config.paths.sessions_dir)
        self.orchestrator = DeploymentOrchestrator(
            config.deploy,
            config.paths,
            self.bot_repo,
            self.registry,
            fetcher=fetcher,
        )
        self.pairing = PairingSessionManager(
            config.pairing,
            self.resolver,
            connector or SubprocessBridgeConnector(config.pairing.bridge_command),
            bot_repo=self.bot_repo,
        )
        self.monitor = ProcessMonitor(
            config.monitor,
            self.bot_repo,
            self.registry,
            self.resolver,
            self.orchestrator,
        )
        self.service_manager = ServiceManager([self.monitor])

    async def start(self) -> None:
        """Initialize storage, create directories and start background services."""
        for directory in (
            self.config.paths.sessions_dir,
            self.config.paths.deployments_dir,
            self.config.paths.configs_dir,
        ):
            Path(directory).mkdir(parents=True, exist_ok=True)

        await self.db.initialize()
        await self.service_manager.start_all()
        logger.info("botdock_started")

    async def stop(self) -> None:
        """Gracefully shut down all components."""
        await self.service_manager.stop_all()
        await self.pairing.shutdown()
        await self.orchestrator.shutdown()
        await self.db.close()
        logger.info("botdock_stopped")
