"""Data models for storage layer."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from botdock.core.types import BotStatus


@dataclass
class BotRecord:
    id: str
    name: str
    owner: str
    repo_url: str
    description: str = ""
    status: BotStatus = BotStatus.PENDING
    phone_number: Optional[str] = None
    pairing_code: Optional[str] = None
    pairing_status: Optional[str] = None
    session_path: Optional[str] = None
    pid: Optional[int] = None
    error: Optional[str] = None
    exit_code: Optional[int] = None
    logs: list[dict[str, str]] = field(default_factory=list)  # [{"timestamp", "message"}]
    deployed_at: Optional[str] = None
    last_restart: Optional[str] = None
    last_stop: Optional[str] = None
    last_check: Optional[str] = None
    connected_at: Optional[str] = None
    last_error_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = str(self.status)
        return data
