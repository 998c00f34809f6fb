"""Read-only view of pairing sessions on disk."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from botdock.core.types import SessionState
from botdock.log import get_logger
from botdock.util.fs import read_json

logger = get_logger(__name__)

SESSION_INFO_FILE = "session_info.json"


def has_credentials(files: list[str]) -> bool:
    return any("creds" in name and name.endswith(".json") for name in files)


@dataclass
class SessionStatus:
    exists: bool
    connected: bool = False
    reason: Optional[str] = None
    session_info: dict[str, Any] = field(default_factory=dict)
    files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"exists": self.exists, "connected": self.connected}
        if self.reason:
            data["reason"] = self.reason
        if self.exists and not self.reason:
            data["session_info"] = self.session_info
            data["files"] = self.files
        return data


class SessionStatusResolver:
    """Answers whether a session exists and is authorized.

    Only persisted state is consulted: no protocol connection is opened, so
    checks are cheap enough to run on every status poll.
    """

    def __init__(self, sessions_dir: str | Path):
        self._root = Path(sessions_dir).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def session_path(self, owner: str, bot_id: str) -> Path:
        return self._root / owner / bot_id

    async def check_session_status(self, owner: str, bot_id: str) -> SessionStatus:
        path = self.session_path(owner, bot_id)
        try:
            files = sorted(p.name for p in path.iterdir())
        except (FileNotFoundError, NotADirectoryError):
            return SessionStatus(exists=False, reason="no_directory")

        if not has_credentials(files):
            return SessionStatus(exists=True, reason="no_creds", files=files)

        info = read_json(path / SESSION_INFO_FILE) or {}
        return SessionStatus(
            exists=True,
            connected=info.get("status") == SessionState.CONNECTED,
            session_info=info,
            files=files,
        )

    async def get_session_info(self, owner: str, bot_id: str) -> dict[str, Any] | None:
        return read_json(self.session_path(owner, bot_id) / SESSION_INFO_FILE)

    async def check_all_sessions(self) -> list[dict[str, Any]]:
        """Status of every (owner, bot) session directory under the root."""
        results: list[dict[str, Any]] = []
        if not self._root.is_dir():
            return results
        for owner_dir in sorted(self._root.iterdir()):
            if not owner_dir.is_dir():
                continue
            for bot_dir in sorted(owner_dir.iterdir()):
                if not bot_dir.is_dir():
                    continue
                status = await self.check_session_status(owner_dir.name, bot_dir.name)
                results.append({"owner": owner_dir.name, "bot_id": bot_dir.name, **status.to_dict()})
        return results
