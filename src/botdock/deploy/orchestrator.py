"""Deployment orchestrator: fetch, install, spawn and supervise bot processes."""

from __future__ import annotations

import asyncio
import os
import signal
import subprocess
from collections import deque
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Coroutine, Optional

from botdock.config import DeployConfig, PathsConfig
from botdock.core.clock import utc_now, utc_now_iso
from botdock.core.process_registry import ActiveProcess, ProcessRegistry
from botdock.core.types import BotStatus, ProcessStatus
from botdock.deploy.runtime_config import load_runtime_config
from botdock.deploy.source import (
    GitSourceFetcher,
    SourceFetcher,
    find_entrypoint,
    run_command,
)
from botdock.errors import (
    DependencyInstallError,
    DeploymentError,
    ImmediateExitError,
    NoEntrypointError,
    SpawnError,
)
from botdock.log import get_logger
from botdock.storage.bot_repo import BotRepository
from botdock.storage.models import BotRecord
from botdock.util.fs import remove_tree

logger = get_logger(__name__)

_STREAM_LIMIT = 1024 * 1024
_EXIT_POLL_SECONDS = 0.2


@dataclass
class DeployResult:
    success: bool
    bot_id: str
    pid: Optional[int] = None
    deploy_dir: Optional[str] = None
    main_file: Optional[str] = None
    has_package: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class DeploymentOrchestrator:
    """Turns a bot record into a supervised child process.

    The orchestrator is the only writer of the process registry: entries are
    added right after spawn and removed by the per-process exit watcher.
    """

    def __init__(
        self,
        config: DeployConfig,
        paths: PathsConfig,
        bot_repo: BotRepository,
        registry: ProcessRegistry,
        fetcher: SourceFetcher | None = None,
    ):
        self._config = config
        self._paths = paths
        self._repo = bot_repo
        self._registry = registry
        self._fetcher = fetcher or GitSourceFetcher(timeout=config.clone_timeout)
        self._inflight: dict[str, asyncio.Task[DeployResult]] = {}
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def registry(self) -> ProcessRegistry:
        return self._registry

    # ── paths ───────────────────────────────────────────────────

    def deploy_dir(self, owner: str, bot_id: str) -> Path:
        return Path(self._paths.deployments_dir).resolve() / owner / bot_id

    def session_dir(self, owner: str, bot_id: str) -> Path:
        return Path(self._paths.sessions_dir).resolve() / owner / bot_id

    def config_dir(self, owner: str, bot_id: str) -> Path:
        return Path(self._paths.configs_dir).resolve() / owner / bot_id

    def config_path(self, owner: str, bot_id: str) -> Path:
        return self.config_dir(owner, bot_id) / "config.json"

    # ── deploy ──────────────────────────────────────────────────

    async def deploy(self, bot: BotRecord) -> DeployResult:
        """Deploy ``bot``. Concurrent calls for one bot share a single run."""
        task = self._inflight.get(bot.id)
        if task is None:
            task = asyncio.create_task(self._deploy(bot), name=f"deploy-{bot.id}")
            self._inflight[bot.id] = task
            task.add_done_callback(lambda t, bot_id=bot.id: self._forget_inflight(bot_id, t))
        else:
            logger.info("deploy_joined_inflight", bot_id=bot.id)
        return await asyncio.shield(task)

    def _forget_inflight(self, bot_id: str, task: asyncio.Task[DeployResult]) -> None:
        if self._inflight.get(bot_id) is task:
            del self._inflight[bot_id]

    async def _deploy(self, bot: BotRecord) -> DeployResult:
        deploy_dir = self.deploy_dir(bot.owner, bot.id)
        result = DeployResult(success=False, bot_id=bot.id, deploy_dir=str(deploy_dir))
        entry: ActiveProcess | None = None
        logger.info("deploy_start", bot_id=bot.id, name=bot.name, repo_url=bot.repo_url)

        try:
            if self._registry.get(bot.id) is not None:
                await self.stop_and_wait(bot.id)

            await remove_tree(deploy_dir)
            deploy_dir.parent.mkdir(parents=True, exist_ok=True)
            await self._fetcher.fetch(bot.repo_url, deploy_dir)

            result.has_package = await self._install_dependencies(bot, deploy_dir)

            main_file = find_entrypoint(
                deploy_dir, self._config.entrypoint_candidates, self._config.source_suffix
            )
            if main_file is None:
                raise NoEntrypointError()
            result.main_file = main_file
            logger.info("entrypoint_found", bot_id=bot.id, main_file=main_file)

            runtime = load_runtime_config(self.config_path(bot.owner, bot.id), bot.owner)
            logger.debug("runtime_config_loaded", bot_id=bot.id, prefix=runtime.prefix)

            entry = await self._spawn(bot, deploy_dir, main_file)
            result.pid = entry.pid

            await asyncio.sleep(self._config.startup_grace_seconds)
            if entry.process.returncode is not None or entry.status == ProcessStatus.STOPPED:
                if entry.exit_task is not None:
                    await asyncio.shield(entry.exit_task)
                exit_code = entry.exit_code
                if exit_code is None:
                    exit_code = entry.process.returncode
                raise ImmediateExitError(exit_code)

            await self._repo.update_bot(
                bot.id,
                status=BotStatus.ONLINE,
                pid=entry.pid,
                deployed_at=utc_now_iso(),
                error=None,
            )
            result.success = True
            logger.info("bot_deployed", bot_id=bot.id, name=bot.name, pid=entry.pid)
            return result

        except DeploymentError as e:
            error = str(e)
            logger.error("deploy_failed", bot_id=bot.id, error=error)
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.exception("deploy_crashed", bot_id=bot.id, error=error)

        if entry is not None and entry.running:
            self.stop_bot(bot.id)
        result.pid = None
        result.error = error
        await self._record_failure(bot.id, error)
        return result

    async def _install_dependencies(self, bot: BotRecord, deploy_dir: Path) -> bool:
        """Run the dependency install step; returns whether a manifest exists."""
        if not (deploy_dir / self._config.manifest_file).is_file():
            logger.info("dependency_install_skipped", bot_id=bot.id,
                        manifest=self._config.manifest_file)
            return False

        cmd = self._config.resolved_install_command()
        logger.info("dependency_install_start", bot_id=bot.id, command=" ".join(cmd))
        ok, output = await run_command(cmd, cwd=deploy_dir, timeout=self._config.install_timeout)
        if ok:
            logger.info("dependency_install_done", bot_id=bot.id)
        elif self._config.install_failure_policy == "abort":
            raise DependencyInstallError(f"Dependency install failed: {output}")
        else:
            logger.warning("dependency_install_failed", bot_id=bot.id, error=output[-500:])
        return True

    def _build_env(self, bot: BotRecord) -> dict[str, str]:
        env = dict(os.environ)
        env.update(
            {
                "BOT_OWNER": bot.owner,
                "BOT_NAME": bot.name,
                "BOT_ID": bot.id,
                "WHATSAPP_NUMBER": bot.phone_number or "",
                "SESSION_PATH": str(self.session_dir(bot.owner, bot.id)),
                "CONFIG_PATH": str(self.config_path(bot.owner, bot.id)),
                "NODE_ENV": "production",
                "PORT": self._config.runtime_port,
                "LOG_LEVEL": "info",
            }
        )
        return env

    async def _spawn(self, bot: BotRecord, deploy_dir: Path, main_file: str) -> ActiveProcess:
        cmd = [*self._config.runtime_command, main_file]
        kwargs: dict[str, Any] = {}
        if os.name == "posix":
            kwargs["start_new_session"] = True
        else:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(deploy_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(bot),
                limit=_STREAM_LIMIT,
                **kwargs,
            )
        except OSError as e:
            raise SpawnError(f"Failed to start bot process: {e}") from e

        entry = ActiveProcess(
            bot_id=bot.id,
            bot_name=bot.name,
            process=process,
            pid=process.pid,
            logs=deque(maxlen=self._config.log_buffer_size),
        )
        self._registry.register(entry)
        entry.exit_task = asyncio.create_task(
            self._watch_process(entry), name=f"watch-{bot.id}-{process.pid}"
        )
        logger.info("bot_process_spawned", bot_id=bot.id, pid=process.pid, command=" ".join(cmd))
        return entry

    async def _record_failure(self, bot_id: str, error: str) -> None:
        try:
            await self._repo.update_bot(
                bot_id,
                status=BotStatus.ERROR,
                error=error,
                last_error_at=utc_now_iso(),
                pid=None,
            )
        except Exception as e:
            logger.error("deploy_failure_not_recorded", bot_id=bot_id, error=str(e))

    # ── output and exit ─────────────────────────────────────────

    async def _watch_process(self, entry: ActiveProcess) -> None:
        """Pump output until the bot exits, then run the exit handler once.

        The pipes may outlive the bot when it leaves children behind, so
        draining is bounded and any leftover members of its process group are
        killed.
        """
        proc = entry.process
        pumps = [
            asyncio.create_task(self._pump(entry, proc.stdout, is_error=False)),
            asyncio.create_task(self._pump(entry, proc.stderr, is_error=True)),
        ]
        try:
            code = await _wait_for_exit(proc)
            _, pending = await asyncio.wait(pumps, timeout=self._config.output_drain_seconds)
        except asyncio.CancelledError:
            for task in pumps:
                task.cancel()
            raise

        if pending:
            logger.warning("bot_output_not_drained", bot_id=entry.bot_id, pid=entry.pid)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            if os.name == "posix":
                try:
                    _signal_group(entry, force=True)
                except OSError:
                    pass
        await self._handle_exit(entry, code)

    async def _pump(
        self, entry: ActiveProcess, stream: asyncio.StreamReader | None, is_error: bool
    ) -> None:
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # line longer than the stream limit; the oversized chunk is dropped
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            if is_error:
                self._add_log(entry, f"ERROR: {line}")
                logger.warning("bot_error_output", bot_id=entry.bot_id, line=line)
            else:
                self._add_log(entry, line)
                logger.info("bot_output", bot_id=entry.bot_id, line=line)

    def _add_log(self, entry: ActiveProcess, message: str) -> None:
        appended = entry.append_log(message)
        if appended % self._config.log_flush_every == 0:
            self._run_background(self._flush_logs(entry))

    async def _flush_logs(self, entry: ActiveProcess) -> None:
        try:
            await self._repo.update_bot(
                entry.bot_id, logs=entry.log_tail(self._config.log_persist_tail)
            )
        except Exception as e:
            logger.error("bot_logs_flush_failed", bot_id=entry.bot_id, error=str(e))

    async def _handle_exit(self, entry: ActiveProcess, code: int) -> None:
        if entry.kill_timer is not None:
            entry.kill_timer.cancel()
            entry.kill_timer = None

        stop_requested = entry.status == ProcessStatus.STOPPING
        entry.status = ProcessStatus.STOPPED
        entry.exit_code = code
        entry.end_time = utc_now()

        status = BotStatus.OFFLINE if code == 0 or stop_requested else BotStatus.ERROR
        logger.info("bot_exited", bot_id=entry.bot_id, pid=entry.pid, exit_code=code,
                    stop_requested=stop_requested)
        try:
            await self._repo.update_bot(
                entry.bot_id,
                status=status,
                exit_code=code,
                last_stop=utc_now_iso(),
                pid=None,
                logs=entry.log_tail(self._config.log_persist_tail),
            )
        except Exception as e:
            logger.error("bot_exit_not_recorded", bot_id=entry.bot_id, error=str(e))
        finally:
            self._registry.remove(entry.bot_id, entry)

    def _run_background(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ── stop ────────────────────────────────────────────────────

    def stop_bot(self, bot_id: str) -> bool:
        """Send SIGTERM to the bot's process group; SIGKILL follows after the
        stop grace period."""
        entry = self._registry.get(bot_id)
        if entry is None or entry.status == ProcessStatus.STOPPED:
            return False

        try:
            _signal_group(entry, force=False)
        except (ProcessLookupError, PermissionError):
            logger.warning("bot_stop_no_process", bot_id=bot_id, pid=entry.pid)
            return False

        entry.status = ProcessStatus.STOPPING
        if entry.kill_timer is None:
            loop = asyncio.get_running_loop()
            entry.kill_timer = loop.call_later(
                self._config.stop_grace_seconds, self._force_kill, entry
            )
        logger.info("bot_stop_requested", bot_id=bot_id, pid=entry.pid)
        return True

    def _force_kill(self, entry: ActiveProcess) -> None:
        entry.kill_timer = None
        if entry.status == ProcessStatus.STOPPED:
            return
        try:
            _signal_group(entry, force=True)
            logger.warning("bot_force_killed", bot_id=entry.bot_id, pid=entry.pid)
        except (ProcessLookupError, PermissionError):
            pass

    async def stop_and_wait(self, bot_id: str) -> bool:
        """Stop the bot's process and wait until its exit has been recorded."""
        entry = self._registry.get(bot_id)
        if entry is None:
            return False
        self.stop_bot(bot_id)
        if entry.exit_task is not None:
            await asyncio.shield(entry.exit_task)
        return True

    async def shutdown(self) -> None:
        for task in list(self._inflight.values()):
            task.cancel()
        if self._config.stop_on_shutdown and len(self._registry):
            logger.info("stopping_all_bots", count=len(self._registry))
            await asyncio.gather(
                *(self.stop_and_wait(bot_id) for bot_id in self._registry.ids()),
                return_exceptions=True,
            )
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ── queries ─────────────────────────────────────────────────

    def get_process_info(self, bot_id: str) -> dict[str, Any] | None:
        entry = self._registry.get(bot_id)
        return entry.info() if entry else None

    def get_all_active_processes(self) -> list[dict[str, Any]]:
        return [entry.summary() for entry in self._registry.all()]


async def _wait_for_exit(proc: asyncio.subprocess.Process) -> int:
    """Return the exit code once the child has been reaped.

    ``Process.wait`` can also wait for the pipes to close, so the reaped
    return code is polled alongside it.
    """
    waiter = asyncio.ensure_future(proc.wait())
    try:
        while proc.returncode is None:
            done, _ = await asyncio.wait({waiter}, timeout=_EXIT_POLL_SECONDS)
            if done:
                return waiter.result()
    finally:
        if not waiter.done():
            waiter.cancel()
    return proc.returncode


def _signal_group(entry: ActiveProcess, force: bool) -> None:
    """Signal the bot together with everything it spawned.

    Bots run in their own session, so on POSIX the process group id is the
    bot's pid.
    """
    if os.name == "posix":
        os.killpg(entry.pid, signal.SIGKILL if force else signal.SIGTERM)
    elif force:
        entry.process.kill()
    else:
        entry.process.terminate()
