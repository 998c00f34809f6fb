"""Process monitor: periodic reconciliation of persisted bot status.

Two checks run on every tick:

* bots persisted as ``online`` whose process is not in the registry (typically
  after a host restart) are corrected to ``offline``;
* ``pending`` bots with an authorized session and no process are deployed, so a
  bot comes online once the user finishes pairing on their phone.

The monitor never restarts a crashed process; it only fixes drift between
what is persisted and what is running.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from botdock.config import MonitorConfig
from botdock.core.clock import utc_now_iso
from botdock.core.types import BotStatus
from botdock.log import get_logger
from botdock.services.base import Service

if TYPE_CHECKING:
    from botdock.core.process_registry import ProcessRegistry
    from botdock.deploy.orchestrator import DeploymentOrchestrator
    from botdock.pairing.status import SessionStatusResolver
    from botdock.storage.bot_repo import BotRepository
    from botdock.storage.models import BotRecord

logger = get_logger(__name__)


class ProcessMonitor(Service):
    JOB_ID = "process_monitor"

    def __init__(
        self,
        config: MonitorConfig,
        bot_repo: BotRepository,
        registry: ProcessRegistry,
        resolver: SessionStatusResolver,
        orchestrator: DeploymentOrchestrator,
    ):
        self._config = config
        self._repo = bot_repo
        self._registry = registry
        self._resolver = resolver
        self._orchestrator = orchestrator
        self._scheduler = AsyncIOScheduler()
        self._tick_running = False
        self._last_tick: Optional[str] = None

    @property
    def service_name(self) -> str:
        return "process_monitor"

    async def start(self) -> None:
        if not self._config.enabled:
            logger.info("monitor_disabled")
            return
        self._scheduler.add_job(
            self.tick,
            IntervalTrigger(seconds=self._config.interval_seconds),
            id=self.JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info("monitor_started", interval=self._config.interval_seconds)

    async def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("monitor_stopped")

    async def health_check(self) -> bool:
        return not self._config.enabled or self._scheduler.running

    async def describe(self) -> dict[str, Any]:
        info = await super().describe()
        info["last_tick"] = self._last_tick
        return info

    async def tick(self) -> dict[str, list[str]]:
        """Run one reconciliation pass and return the affected bot ids."""
        summary: dict[str, list[str]] = {"reconciled": [], "deploy_triggered": []}
        if self._tick_running:
            logger.warning("monitor_tick_skipped")
            return summary

        self._tick_running = True
        try:
            try:
                bots = await self._repo.list_bots()
            except Exception as e:
                logger.error("monitor_list_bots_failed", error=str(e))
                return summary

            for bot in bots:
                if bot.status != BotStatus.ONLINE or bot.pid is None:
                    continue
                try:
                    if await self._reconcile(bot):
                        summary["reconciled"].append(bot.id)
                except Exception as e:
                    logger.error("monitor_reconcile_failed", bot_id=bot.id, error=str(e))

            for bot in bots:
                if bot.status != BotStatus.PENDING or not bot.phone_number or bot.pid is not None:
                    continue
                try:
                    if await self._auto_deploy(bot):
                        summary["deploy_triggered"].append(bot.id)
                except Exception as e:
                    logger.error("monitor_auto_deploy_failed", bot_id=bot.id, error=str(e))

            return summary
        finally:
            self._tick_running = False
            self._last_tick = utc_now_iso()

    async def _reconcile(self, bot: BotRecord) -> bool:
        if self._registry.is_running(bot.id):
            return False
        logger.warning("bot_process_missing", bot_id=bot.id, name=bot.name, pid=bot.pid)
        await self._repo.update_bot(
            bot.id,
            status=BotStatus.OFFLINE,
            pid=None,
            last_check=utc_now_iso(),
        )
        return True

    async def _auto_deploy(self, bot: BotRecord) -> bool:
        status = await self._resolver.check_session_status(bot.owner, bot.id)
        if not status.connected:
            return False
        logger.info("auto_deploy", bot_id=bot.id, name=bot.name)
        result = await self._orchestrator.deploy(bot)
        if not result.success:
            logger.warning("auto_deploy_failed", bot_id=bot.id, error=result.error)
        return True
