"""Registry of bot processes spawned by this host.

The registry is an in-memory cache: it holds live process handles for the
current run only and is lost on restart. Persisted bot status is brought back
in line with it by the process monitor.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from botdock.core.clock import utc_now, utc_now_iso
from botdock.core.types import ProcessStatus


@dataclass
class ActiveProcess:
    bot_id: str
    bot_name: str
    process: asyncio.subprocess.Process
    pid: int
    start_time: datetime = field(default_factory=utc_now)
    status: ProcessStatus = ProcessStatus.RUNNING
    exit_code: Optional[int] = None
    end_time: Optional[datetime] = None
    logs: deque[dict[str, str]] = field(default_factory=lambda: deque(maxlen=100))
    log_appends: int = 0
    kill_timer: Optional[asyncio.TimerHandle] = None
    exit_task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self.status == ProcessStatus.RUNNING

    @property
    def uptime(self) -> float:
        end = self.end_time or utc_now()
        return (end - self.start_time).total_seconds()

    def append_log(self, message: str) -> int:
        """Append a log line (oldest dropped on overflow); returns total appends."""
        self.logs.append({"timestamp": utc_now_iso(), "message": message})
        self.log_appends += 1
        return self.log_appends

    def log_tail(self, count: int) -> list[dict[str, str]]:
        if count <= 0:
            return []
        return list(self.logs)[-count:]

    def info(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "running": self.running,
            "start_time": self.start_time.isoformat(),
            "uptime": self.uptime,
            "logs": self.log_tail(10),
            "status": str(self.status),
        }

    def summary(self) -> dict[str, Any]:
        return {
            "bot_id": self.bot_id,
            "bot_name": self.bot_name,
            "pid": self.pid,
            "status": str(self.status),
            "uptime": self.uptime,
            "start_time": self.start_time.isoformat(),
        }


class ProcessRegistry:
    """Tracks live bot processes by bot id."""

    def __init__(self) -> None:
        self._entries: dict[str, ActiveProcess] = {}

    def register(self, entry: ActiveProcess) -> None:
        self._entries[entry.bot_id] = entry

    def get(self, bot_id: str) -> ActiveProcess | None:
        return self._entries.get(bot_id)

    def remove(self, bot_id: str, entry: ActiveProcess | None = None) -> bool:
        """Drop the entry for ``bot_id``.

        When ``entry`` is given, only that exact entry is removed so a stale
        exit handler cannot evict a newer process for the same bot.
        """
        current = self._entries.get(bot_id)
        if current is None or (entry is not None and current is not entry):
            return False
        del self._entries[bot_id]
        return True

    def is_running(self, bot_id: str) -> bool:
        entry = self._entries.get(bot_id)
        return entry is not None and entry.running

    def all(self) -> list[ActiveProcess]:
        return list(self._entries.values())

    def ids(self) -> list[str]:
        return list(self._entries.keys())

    def __len__(self) -> int:
        return len(self._entries)
