"""Pairing connector backed by an external bridge process.

The bridge speaks the messaging protocol and talks to botdock with JSON lines:

    stdin   {"op": "pair", "phone": "15551234567"}
            {"op": "close"}
    stdout  {"event": "code", "code": "ABCD-EFGH"}
            {"event": "error", "message": "..."}
            {"event": "connection", "connection": "open", "id": "1555...@s.whatsapp.net"}
            {"event": "connection", "connection": "close", "reason": "..."}

The session directory is passed as the last command-line argument; the bridge
keeps its credential files there.
"""

from __future__ import annotations

import asyncio
import json
import shutil
from pathlib import Path
from typing import Any, AsyncIterator

from botdock.log import get_logger
from botdock.pairing.connector import ConnectionUpdate, PairingConnection, PairingConnector

logger = get_logger(__name__)

BRIDGE_STREAM_LIMIT = 1024 * 1024


class BridgeConnection(PairingConnection):
    def __init__(self, process: asyncio.subprocess.Process):
        self._process = process
        self._updates: asyncio.Queue[ConnectionUpdate] = asyncio.Queue()
        self._code_future: asyncio.Future[str] | None = None
        self._reader = asyncio.create_task(self._read_events())

    async def request_pairing_code(self, phone_number: str) -> str:
        loop = asyncio.get_running_loop()
        self._code_future = loop.create_future()
        await self._send({"op": "pair", "phone": phone_number})
        return await self._code_future

    async def updates(self) -> AsyncIterator[ConnectionUpdate]:
        while True:
            update = await self._updates.get()
            yield update
            if update.is_closed:
                return

    async def close(self) -> None:
        if self._process.returncode is None:
            try:
                await self._send({"op": "close"})
                await asyncio.wait_for(self._process.wait(), timeout=3)
            except (asyncio.TimeoutError, ConnectionError, RuntimeError):
                if self._process.returncode is None:
                    try:
                        self._process.terminate()
                    except ProcessLookupError:
                        pass
                    await self._process.wait()
        self._reader.cancel()

    async def _send(self, message: dict[str, Any]) -> None:
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            raise ConnectionError("pairing bridge is not accepting input")
        stdin.write((json.dumps(message) + "\n").encode("utf-8"))
        await stdin.drain()

    async def _read_events(self) -> None:
        reason = "bridge exited"
        stdout = self._process.stdout
        try:
            if stdout is not None:
                async for raw in stdout:
                    self._handle_line(raw)
        except ValueError:
            # an over-long line leaves the stream position undefined
            logger.warning("bridge_line_too_long", pid=self._process.pid)
            reason = "bridge output line too long"

        self._fail_code_request(ConnectionError(f"pairing {reason}"))
        self._updates.put_nowait(ConnectionUpdate("close", reason=reason))

    def _handle_line(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("bridge_output", line=line)
            return
        self._dispatch(event)

    def _dispatch(self, event: dict[str, Any]) -> None:
        kind = event.get("event")
        if kind == "code":
            if self._code_future is not None and not self._code_future.done():
                self._code_future.set_result(str(event.get("code", "")))
        elif kind == "error":
            self._fail_code_request(RuntimeError(str(event.get("message", "pairing error"))))
        elif kind == "connection":
            self._updates.put_nowait(
                ConnectionUpdate(
                    connection=str(event.get("connection", "")),
                    session_id=event.get("id"),
                    reason=event.get("reason"),
                )
            )
        else:
            logger.debug("bridge_event_ignored", event=event)

    def _fail_code_request(self, error: Exception) -> None:
        if self._code_future is not None and not self._code_future.done():
            self._code_future.set_exception(error)


class SubprocessBridgeConnector(PairingConnector):
    """Starts one bridge process per pairing attempt."""

    def __init__(self, command: list[str]):
        if not command:
            raise ValueError("bridge command must not be empty")
        self._command = [shutil.which(command[0]) or command[0], *command[1:]]

    async def connect(self, session_dir: Path) -> PairingConnection:
        process = await asyncio.create_subprocess_exec(
            *self._command,
            str(session_dir),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            limit=BRIDGE_STREAM_LIMIT,
        )
        logger.info("bridge_started", pid=process.pid, session_dir=str(session_dir))
        return BridgeConnection(process)
