"""HTTP routes for deploying, pairing and managing bots (FastAPI)."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from botdock import __version__
from botdock.app import BotDockApp
from botdock.core.clock import utc_now_iso
from botdock.core.types import BotStatus
from botdock.errors import InvalidPhoneNumberError, PairingError, PairingInProgressError
from botdock.log import get_logger
from botdock.pairing.manager import normalize_phone_number
from botdock.storage.models import BotRecord
from botdock.util.fs import remove_tree

logger = get_logger(__name__)

_REPO_URL_PREFIXES = ("https://", "http://", "git@", "ssh://", "file://")


class CreateBotRequest(BaseModel):
    bot_name: str = Field(min_length=1, max_length=64)
    repo_url: str
    owner: str = Field(min_length=1)
    description: str = Field(default="")


class PairingRequest(BaseModel):
    phone_number: str
    bot_id: str


class RegenerateRequest(BaseModel):
    phone_number: Optional[str] = None


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def create_app(host: BotDockApp, manage_lifecycle: bool = True) -> FastAPI:
    """Build the API around an application context.

    With ``manage_lifecycle`` the context is started and stopped with the
    server.
    """

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if manage_lifecycle:
            await host.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await host.stop()

    app = FastAPI(title="botdock", version=__version__, lifespan=lifespan)
    app.state.host = host

    async def _get_bot(bot_id: str) -> BotRecord:
        bot = await host.bot_repo.get_bot(bot_id)
        if bot is None:
            raise _error(404, "bot_not_found", f"bot not found: {bot_id}")
        return bot

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "healthy",
            "version": __version__,
            "timestamp": utc_now_iso(),
            "services": await host.service_manager.health_check_all(),
            "active_processes": len(host.registry),
        }

    # ── deployment ──────────────────────────────────────────────

    @app.post("/api/deploy")
    async def create_bot(req: CreateBotRequest) -> dict[str, Any]:
        if not req.repo_url.startswith(_REPO_URL_PREFIXES):
            raise _error(400, "invalid_repo_url", "repository URL must be a git URL")

        existing = await host.bot_repo.get_bots_by_owner(req.owner)
        for bot in existing:
            if bot.name == req.bot_name:
                raise _error(409, "duplicate_name", f"bot name already in use: {bot.id}")

        bot = await host.bot_repo.create_bot(
            name=req.bot_name,
            owner=req.owner,
            repo_url=req.repo_url,
            description=req.description or f"Messaging bot {req.bot_name}",
        )
        return {
            "success": True,
            "bot_id": bot.id,
            "bot_name": bot.name,
            "status": str(bot.status),
            "next_step": "pairing",
        }

    @app.get("/api/deploy/status/{bot_id}")
    async def deploy_status(bot_id: str) -> dict[str, Any]:
        bot = await _get_bot(bot_id)
        return {
            "bot_id": bot.id,
            "name": bot.name,
            "status": str(bot.status),
            "phone_number": bot.phone_number,
            "pairing_code": bot.pairing_code,
            "deployed_at": bot.deployed_at,
            "pid": bot.pid,
            "repo_url": bot.repo_url,
            "error": bot.error,
            "process_info": host.orchestrator.get_process_info(bot.id),
            "recent_logs": bot.logs[-10:],
            "can_manage": bot.status in (BotStatus.ONLINE, BotStatus.OFFLINE, BotStatus.ERROR),
            "needs_pairing": bot.status in (BotStatus.PENDING, BotStatus.PAIRING_FAILED),
        }

    @app.post("/api/deploy/restart/{bot_id}")
    async def restart_bot(bot_id: str) -> dict[str, Any]:
        bot = await _get_bot(bot_id)
        if host.registry.get(bot.id) is not None:
            await host.orchestrator.stop_and_wait(bot.id)

        await host.bot_repo.update_bot(
            bot.id, status=BotStatus.RESTARTING, last_restart=utc_now_iso(), pid=None
        )
        logger.info("bot_restart_requested", bot_id=bot.id)

        session = await host.resolver.check_session_status(bot.owner, bot.id)
        if not session.connected:
            await host.bot_repo.update_bot(
                bot.id, status=BotStatus.PENDING, error="No active session found"
            )
            return {"success": False, "bot_id": bot.id, "status": "pending", "needs_pairing": True}

        result = await host.orchestrator.deploy(bot)
        if not result.success:
            raise _error(500, "restart_failed", result.error or "deployment failed")
        return {"success": True, "bot_id": bot.id, "status": "online", "pid": result.pid}

    @app.post("/api/deploy/stop/{bot_id}")
    async def stop_bot(bot_id: str) -> dict[str, Any]:
        bot = await _get_bot(bot_id)
        stopped = host.orchestrator.stop_bot(bot.id)
        if not stopped and bot.status == BotStatus.ONLINE and host.registry.is_running(bot.id):
            raise _error(500, "stop_failed", "failed to stop bot process")

        await host.bot_repo.update_bot(
            bot.id, status=BotStatus.OFFLINE, pid=None, last_stop=utc_now_iso()
        )
        return {"success": True, "bot_id": bot.id, "status": "offline"}

    @app.delete("/api/deploy/{bot_id}")
    async def delete_bot(bot_id: str) -> dict[str, Any]:
        bot = await _get_bot(bot_id)
        await host.orchestrator.stop_and_wait(bot.id)
        await host.pairing.delete_session(bot.owner, bot.id)
        await remove_tree(host.orchestrator.config_dir(bot.owner, bot.id))
        await remove_tree(host.orchestrator.deploy_dir(bot.owner, bot.id))
        await host.bot_repo.delete_bot(bot.id)
        return {"success": True, "bot_id": bot.id}

    @app.get("/api/processes")
    async def list_processes() -> dict[str, Any]:
        processes = host.orchestrator.get_all_active_processes()
        return {"processes": processes, "count": len(processes)}

    # ── pairing ─────────────────────────────────────────────────

    async def _start_pairing(bot: BotRecord, raw_phone: str) -> dict[str, Any]:
        try:
            phone = normalize_phone_number(raw_phone)
        except InvalidPhoneNumberError as e:
            raise _error(400, "invalid_phone_number", str(e))

        try:
            code = await host.pairing.generate_pairing_code(phone, bot.owner, bot.id)
        except PairingInProgressError as e:
            raise _error(409, "pairing_in_progress", str(e))
        except PairingError as e:
            await host.bot_repo.update_bot(bot.id, status=BotStatus.PAIRING_FAILED, error=str(e))
            raise _error(500, "pairing_failed", str(e))

        return {
            "success": True,
            "pairing_code": code,
            "phone_number": phone,
            "bot_id": bot.id,
        }

    @app.post("/api/pairing/generate")
    async def generate_pairing(req: PairingRequest) -> dict[str, Any]:
        bot = await _get_bot(req.bot_id)
        return await _start_pairing(bot, req.phone_number)

    @app.post("/api/pairing/regenerate/{bot_id}")
    async def regenerate_pairing(bot_id: str, req: RegenerateRequest) -> dict[str, Any]:
        bot = await _get_bot(bot_id)
        phone = req.phone_number or bot.phone_number
        if not phone:
            raise _error(400, "phone_number_required", "phone number required")
        await host.pairing.delete_session(bot.owner, bot.id)
        return await _start_pairing(bot, phone)

    @app.get("/api/pairing/status/{bot_id}")
    async def pairing_status(bot_id: str) -> dict[str, Any]:
        bot = await _get_bot(bot_id)
        session = await host.resolver.check_session_status(bot.owner, bot.id)
        return {
            "bot_id": bot.id,
            "paired": session.exists,
            "connected": session.connected,
            "phone_number": bot.phone_number,
            "pairing_code": bot.pairing_code,
            "status": str(bot.status),
            "session_exists": session.exists,
            "session_info": await host.resolver.get_session_info(bot.owner, bot.id),
            "should_deploy": session.connected
            and bot.status != BotStatus.ONLINE
            and not host.registry.is_running(bot.id),
            "last_checked": utc_now_iso(),
        }

    @app.post("/api/pairing/verify/{bot_id}")
    async def verify_pairing(bot_id: str) -> dict[str, Any]:
        bot = await _get_bot(bot_id)
        session = await host.resolver.check_session_status(bot.owner, bot.id)
        if not session.connected:
            raise _error(400, "not_connected", "bot session is not connected")

        result = await host.orchestrator.deploy(bot)
        if not result.success:
            raise _error(500, "deploy_failed", result.error or "deployment failed")
        return {"success": True, "bot_id": bot.id, "status": "online", "pid": result.pid}

    return app
