import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from botdock.config import MonitorConfig
from botdock.core.process_registry import ActiveProcess
from botdock.core.types import BotStatus
from botdock.deploy.orchestrator import DeployResult
from botdock.services.monitor import ProcessMonitor


@pytest.fixture
def orchestrator():
    orch = MagicMock()
    orch.deploy = AsyncMock(side_effect=lambda bot: DeployResult(success=True, bot_id=bot.id, pid=42))
    return orch


@pytest.fixture
def monitor(bot_repo, registry, resolver, orchestrator):
    return ProcessMonitor(MonitorConfig(enabled=False), bot_repo, registry, resolver, orchestrator)


async def _pending_bot(bot_repo, name="echo", phone="15551234567"):
    bot = await bot_repo.create_bot(name, "alice", f"https://example.com/{name}.git")
    return await bot_repo.update_bot(bot.id, phone_number=phone)


@pytest.mark.asyncio
async def test_online_bot_without_process_is_reconciled(monitor, bot_repo):
    bot = await bot_repo.create_bot("echo", "alice", "https://example.com/echo.git")
    await bot_repo.update_bot(bot.id, status=BotStatus.ONLINE, pid=1234)

    summary = await monitor.tick()

    assert summary["reconciled"] == [bot.id]
    stored = await bot_repo.get_bot(bot.id)
    assert stored.status == BotStatus.OFFLINE
    assert stored.pid is None
    assert stored.last_check is not None


@pytest.mark.asyncio
async def test_online_bot_with_live_process_is_left_alone(monitor, bot_repo, registry):
    bot = await bot_repo.create_bot("echo", "alice", "https://example.com/echo.git")
    await bot_repo.update_bot(bot.id, status=BotStatus.ONLINE, pid=1234)
    registry.register(ActiveProcess(bot_id=bot.id, bot_name="echo", process=MagicMock(), pid=1234))

    summary = await monitor.tick()

    assert summary["reconciled"] == []
    assert (await bot_repo.get_bot(bot.id)).status == BotStatus.ONLINE


@pytest.mark.asyncio
async def test_pending_bot_with_connected_session_is_deployed(monitor, bot_repo, orchestrator,
                                                              write_session):
    bot = await _pending_bot(bot_repo)
    write_session("alice", bot.id)

    summary = await monitor.tick()

    assert summary["deploy_triggered"] == [bot.id]
    orchestrator.deploy.assert_awaited_once()
    assert orchestrator.deploy.await_args.args[0].id == bot.id


@pytest.mark.asyncio
async def test_pending_bot_without_authorized_session_waits(monitor, bot_repo, orchestrator,
                                                            write_session):
    still_pairing = await _pending_bot(bot_repo, "a")
    write_session("alice", still_pairing.id, status="pairing")
    await _pending_bot(bot_repo, "b")
    no_phone = await bot_repo.create_bot("c", "alice", "https://example.com/c.git")
    write_session("alice", no_phone.id)

    summary = await monitor.tick()

    assert summary["deploy_triggered"] == []
    orchestrator.deploy.assert_not_awaited()


@pytest.mark.asyncio
async def test_one_failing_bot_does_not_stop_the_pass(monitor, bot_repo, orchestrator,
                                                      write_session):
    broken = await _pending_bot(bot_repo, "broken")
    healthy = await _pending_bot(bot_repo, "healthy")
    write_session("alice", broken.id)
    write_session("alice", healthy.id)

    def deploy(bot):
        if bot.id == broken.id:
            raise RuntimeError("boom")
        return DeployResult(success=True, bot_id=bot.id)

    orchestrator.deploy.side_effect = deploy

    summary = await monitor.tick()

    assert summary["deploy_triggered"] == [healthy.id]
    assert orchestrator.deploy.await_count == 2


@pytest.mark.asyncio
async def test_overlapping_ticks_are_skipped(monitor, bot_repo, orchestrator, write_session):
    bot = await _pending_bot(bot_repo)
    write_session("alice", bot.id)
    release = asyncio.Event()

    async def slow_deploy(bot):
        await release.wait()
        return DeployResult(success=True, bot_id=bot.id)

    orchestrator.deploy.side_effect = slow_deploy

    first = asyncio.create_task(monitor.tick())
    await asyncio.sleep(0.05)
    second = await monitor.tick()
    release.set()
    first_summary = await first

    assert second == {"reconciled": [], "deploy_triggered": []}
    assert first_summary["deploy_triggered"] == [bot.id]
    orchestrator.deploy.assert_awaited_once()


@pytest.mark.asyncio
async def test_start_schedules_interval_job(bot_repo, registry, resolver, orchestrator):
    monitor = ProcessMonitor(MonitorConfig(interval_seconds=60), bot_repo, registry, resolver,
                             orchestrator)

    await monitor.start()
    try:
        assert await monitor.health_check() is True
        job = monitor._scheduler.get_job(ProcessMonitor.JOB_ID)
        assert job is not None
        assert job.max_instances == 1
        assert job.coalesce is True
    finally:
        await monitor.stop()

    info = await monitor.describe()
    assert info["name"] == "process_monitor"
    assert info["last_tick"] is None


@pytest.mark.asyncio
async def test_disabled_monitor_is_healthy_without_scheduler(monitor):
    await monitor.start()

    assert await monitor.health_check() is True
    await monitor.stop()
