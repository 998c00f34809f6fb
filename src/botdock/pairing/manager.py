"""Pairing session manager: drives device pairing for one (owner, bot) at a time."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Coroutine, Optional

from botdock.config import PairingConfig
from botdock.core.clock import utc_now_iso
from botdock.core.types import BotStatus, PairingStatus, SessionState
from botdock.errors import (
    ConnectionClosedError,
    InvalidPhoneNumberError,
    PairingError,
    PairingInProgressError,
    PairingRejectedError,
    PairingTimeoutError,
)
from botdock.log import get_logger
from botdock.pairing.connector import PairingConnection, PairingConnector
from botdock.pairing.status import SESSION_INFO_FILE, SessionStatus, SessionStatusResolver
from botdock.storage.bot_repo import BotRepository
from botdock.util.fs import atomic_write_json, remove_tree

logger = get_logger(__name__)

CONNECTED_CODE = "CONNECTED"

_NON_DIGITS = re.compile(r"\D")


def normalize_phone_number(raw: str) -> str:
    """Strip formatting from a phone number; at least 9 digits are required."""
    digits = _NON_DIGITS.sub("", raw or "")
    if len(digits) < 9:
        raise InvalidPhoneNumberError("Invalid phone number format")
    return digits


@dataclass
class PairingAttempt:
    owner: str
    bot_id: str
    phone_number: str
    session_dir: Path
    code: asyncio.Future[str]
    started_at: str = field(default_factory=utc_now_iso)
    connection: Optional[PairingConnection] = None
    task: Optional[asyncio.Task[None]] = None
    state: str = SessionState.PAIRING.value  # pairing | connected | failed | timed_out
    error: Optional[PairingError] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.owner, self.bot_id)

    def session_info(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "bot_id": self.bot_id,
            "phone_number": self.phone_number,
            "started_at": self.started_at,
            "status": SessionState.PAIRING.value,
        }

    async def wait(self) -> str:
        """Wait for the attempt to finish and return its final state."""
        if self.task is not None:
            await asyncio.shield(self.task)
        return self.state


class PairingSessionManager:
    """Runs pairing handshakes and owns the session directories.

    Each attempt is a single task bounded by the pairing timeout. The caller of
    ``generate_pairing_code`` is released as soon as a code is issued; the task
    keeps the connection open until the device confirms (``open``) or the
    attempt fails, then settles the session directory accordingly.
    """

    def __init__(
        self,
        config: PairingConfig,
        resolver: SessionStatusResolver,
        connector: PairingConnector,
        bot_repo: BotRepository | None = None,
    ):
        self._config = config
        self._resolver = resolver
        self._connector = connector
        self._repo = bot_repo
        self._attempts: dict[tuple[str, str], PairingAttempt] = {}
        self._background: set[asyncio.Task[Any]] = set()

    def session_path(self, owner: str, bot_id: str) -> Path:
        return self._resolver.session_path(owner, bot_id)

    def active_attempt(self, owner: str, bot_id: str) -> PairingAttempt | None:
        return self._attempts.get((owner, bot_id))

    # ── pairing ─────────────────────────────────────────────────

    async def generate_pairing_code(self, phone_number: str, owner: str, bot_id: str) -> str:
        """Start pairing and return the code the user types on their phone.

        Returns ``CONNECTED`` when the session authorizes before a code is issued.
        """
        key = (owner, bot_id)
        if key in self._attempts:
            raise PairingInProgressError(owner, bot_id)

        session_dir = self.session_path(owner, bot_id)
        code: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        code.add_done_callback(_consume_exception)
        attempt = PairingAttempt(
            owner=owner,
            bot_id=bot_id,
            phone_number=phone_number,
            session_dir=session_dir,
            code=code,
        )
        self._attempts[key] = attempt

        try:
            await remove_tree(session_dir)
            session_dir.mkdir(parents=True, exist_ok=True)
            atomic_write_json(session_dir / SESSION_INFO_FILE, attempt.session_info())
            logger.info("pairing_start", owner=owner, bot_id=bot_id, phone_number=phone_number)
            attempt.connection = await self._connector.connect(session_dir)
        except Exception as e:
            logger.error("pairing_connect_failed", owner=owner, bot_id=bot_id, error=str(e))
            await remove_tree(session_dir)
            self._forget(attempt)
            raise PairingError(f"Failed to open pairing connection: {e}") from e

        attempt.task = asyncio.create_task(
            self._run_attempt(attempt), name=f"pairing-{owner}-{bot_id}"
        )
        return await asyncio.shield(attempt.code)

    async def _run_attempt(self, attempt: PairingAttempt) -> None:
        try:
            session_id = await asyncio.wait_for(
                self._handshake(attempt), timeout=self._config.timeout_seconds
            )
        except asyncio.CancelledError:
            await self._fail(attempt, PairingError("Pairing cancelled"))
            raise
        except asyncio.TimeoutError:
            await self._fail(attempt, PairingTimeoutError(self._config.timeout_seconds))
        except PairingError as e:
            await self._fail(attempt, e)
        except Exception as e:
            logger.exception("pairing_crashed", owner=attempt.owner, bot_id=attempt.bot_id)
            await self._fail(attempt, PairingError(str(e) or type(e).__name__))
        else:
            await self._mark_connected(attempt, session_id)

    async def _handshake(self, attempt: PairingAttempt) -> Optional[str]:
        """Request a code, then wait for the device to open the session."""
        conn = attempt.connection
        if conn is None:
            raise PairingError("Pairing connection is not open")
        code_task = asyncio.create_task(conn.request_pairing_code(attempt.phone_number))
        open_task = asyncio.create_task(self._wait_for_open(conn))
        try:
            done, _ = await asyncio.wait(
                {code_task, open_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if code_task in done:
                try:
                    code = code_task.result()
                except Exception as e:
                    raise PairingRejectedError(str(e) or "Pairing code request rejected") from e
                await self._code_issued(attempt, code)
            return await open_task
        finally:
            for task in (code_task, open_task):
                if not task.done():
                    task.cancel()

    @staticmethod
    async def _wait_for_open(conn: PairingConnection) -> Optional[str]:
        async for update in conn.updates():
            if update.is_open:
                return update.session_id
            if update.is_closed:
                raise ConnectionClosedError(update.reason)
        raise ConnectionClosedError("connection ended")

    async def _code_issued(self, attempt: PairingAttempt, code: str) -> None:
        logger.info("pairing_code_issued", owner=attempt.owner, bot_id=attempt.bot_id,
                    phone_number=attempt.phone_number)
        await self._update_bot(
            attempt.bot_id,
            phone_number=attempt.phone_number,
            pairing_code=code,
            pairing_status=PairingStatus.PENDING.value,
            status=BotStatus.PAIRING,
            session_path=str(attempt.session_dir),
        )
        # the record is current before the caller sees the code
        if not attempt.code.done():
            attempt.code.set_result(code)

    async def _mark_connected(self, attempt: PairingAttempt, session_id: Optional[str]) -> None:
        info = attempt.session_info()
        info.update(
            status=SessionState.CONNECTED.value,
            connected_at=utc_now_iso(),
            session_id=session_id,
        )
        try:
            atomic_write_json(attempt.session_dir / SESSION_INFO_FILE, info)
        except OSError as e:
            await self._fail(attempt, PairingError(f"Failed to persist session status: {e}"))
            return

        attempt.state = SessionState.CONNECTED.value
        logger.info("pairing_connected", owner=attempt.owner, bot_id=attempt.bot_id,
                    session_id=session_id)
        self._run_background(self._close_later(attempt))
        await self._record_connected(attempt, info["connected_at"])
        self._forget(attempt)
        if not attempt.code.done():
            attempt.code.set_result(CONNECTED_CODE)

    async def _fail(self, attempt: PairingAttempt, error: PairingError) -> None:
        """Tear the attempt down so a retry starts from an empty session directory."""
        attempt.state = error.outcome
        attempt.error = error
        logger.warning("pairing_failed", owner=attempt.owner, bot_id=attempt.bot_id,
                       outcome=error.outcome, error=str(error))
        await self._close_connection(attempt)
        await remove_tree(attempt.session_dir)
        await self._update_bot(
            attempt.bot_id,
            status=BotStatus.PAIRING_FAILED,
            pairing_status=error.outcome,
            error=str(error),
        )
        self._forget(attempt)
        if not attempt.code.done():
            attempt.code.set_exception(error)

    def _forget(self, attempt: PairingAttempt) -> None:
        if self._attempts.get(attempt.key) is attempt:
            del self._attempts[attempt.key]

    async def _close_later(self, attempt: PairingAttempt) -> None:
        await asyncio.sleep(self._config.close_delay_seconds)
        await self._close_connection(attempt)

    async def _close_connection(self, attempt: PairingAttempt) -> None:
        if attempt.connection is None:
            return
        try:
            await attempt.connection.close()
        except Exception as e:
            logger.warning("pairing_connection_close_failed", bot_id=attempt.bot_id, error=str(e))

    # ── bot record bookkeeping ──────────────────────────────────

    async def _record_connected(self, attempt: PairingAttempt, connected_at: str) -> None:
        if self._repo is None:
            return
        try:
            bot = await self._repo.get_bot(attempt.bot_id)
            if bot is None:
                return
            fields: dict[str, Any] = {
                "pairing_status": PairingStatus.CONNECTED.value,
                "connected_at": connected_at,
                "error": None,
            }
            # A connected session makes a stopped bot eligible for auto-deploy
            if bot.status != BotStatus.ONLINE:
                fields["status"] = BotStatus.PENDING
            await self._repo.update_bot(attempt.bot_id, **fields)
        except Exception as e:
            logger.error("pairing_record_update_failed", bot_id=attempt.bot_id, error=str(e))

    async def _update_bot(self, bot_id: str, **fields: Any) -> None:
        if self._repo is None:
            return
        try:
            await self._repo.update_bot(bot_id, **fields)
        except Exception as e:
            logger.error("pairing_record_update_failed", bot_id=bot_id, error=str(e))

    # ── sessions ────────────────────────────────────────────────

    async def check_session_status(self, owner: str, bot_id: str) -> SessionStatus:
        return await self._resolver.check_session_status(owner, bot_id)

    async def get_session_info(self, owner: str, bot_id: str) -> dict[str, Any] | None:
        return await self._resolver.get_session_info(owner, bot_id)

    async def delete_session(self, owner: str, bot_id: str) -> bool:
        """Abort any in-flight attempt and remove the session directory."""
        attempt = self._attempts.get((owner, bot_id))
        if attempt is not None and attempt.task is not None:
            attempt.task.cancel()
            await asyncio.gather(attempt.task, return_exceptions=True)

        try:
            await remove_tree(self.session_path(owner, bot_id))
        except OSError as e:
            logger.error("session_delete_failed", owner=owner, bot_id=bot_id, error=str(e))
            return False
        logger.info("session_deleted", owner=owner, bot_id=bot_id)
        return True

    async def shutdown(self) -> None:
        tasks = [a.task for a in self._attempts.values() if a.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, *self._background, return_exceptions=True)

    def _run_background(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


def _consume_exception(future: asyncio.Future[str]) -> None:
    # the caller may have gone away; keep asyncio from reporting the error
    if not future.cancelled():
        future.exception()
