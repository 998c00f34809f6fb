"""Bot record repository: get / create / update / delete / list over the bots table."""

from __future__ import annotations

import json
import uuid
from dataclasses import fields
from typing import Any, Optional

from botdock.core.clock import utc_now_iso
from botdock.core.types import BotStatus
from botdock.errors import BotNotFoundError
from botdock.log import get_logger
from botdock.storage.database import Database
from botdock.storage.models import BotRecord

logger = get_logger(__name__)

# Columns callers may touch through update_bot(); identity fields are immutable.
_UPDATABLE = {
    f.name for f in fields(BotRecord)
} - {"id", "owner", "created_at", "updated_at"}


class BotRepository:
    """CRUD over persisted bot records.

    ``update_bot`` is a shallow merge: only the given fields change and
    ``updated_at`` is stamped on every call.
    """

    def __init__(self, db: Database):
        self._db = db

    async def create_bot(
        self,
        name: str,
        owner: str,
        repo_url: str,
        description: str = "",
    ) -> BotRecord:
        bot_id = uuid.uuid4().hex[:12]
        now = utc_now_iso()
        await self._db.conn.execute(
            """INSERT INTO bots (id, name, owner, repo_url, description, status,
                                 created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (bot_id, name, owner, repo_url, description, BotStatus.PENDING.value, now, now),
        )
        await self._db.conn.commit()
        logger.info("bot_created", bot_id=bot_id, name=name, owner=owner)
        record = await self.get_bot(bot_id)
        if record is None:
            raise BotNotFoundError(bot_id)
        return record

    async def get_bot(self, bot_id: str) -> Optional[BotRecord]:
        cursor = await self._db.conn.execute("SELECT * FROM bots WHERE id = ?", (bot_id,))
        row = await cursor.fetchone()
        return self._row_to_record(row) if row else None

    async def get_bots_by_owner(self, owner: str) -> list[BotRecord]:
        cursor = await self._db.conn.execute(
            "SELECT * FROM bots WHERE owner = ? ORDER BY created_at ASC", (owner,)
        )
        rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def list_bots(self) -> list[BotRecord]:
        cursor = await self._db.conn.execute("SELECT * FROM bots ORDER BY created_at ASC")
        rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def update_bot(self, bot_id: str, **updates: Any) -> BotRecord:
        """Merge ``updates`` into the record and return the new state."""
        unknown = set(updates) - _UPDATABLE
        if unknown:
            raise ValueError(f"Unknown bot fields: {', '.join(sorted(unknown))}")

        columns: list[str] = []
        values: list[Any] = []
        for key, value in updates.items():
            if key == "logs":
                columns.append("logs_json = ?")
                values.append(json.dumps(value or [], ensure_ascii=False))
            else:
                columns.append(f"{key} = ?")
                values.append(str(value) if isinstance(value, BotStatus) else value)
        columns.append("updated_at = ?")
        values.append(utc_now_iso())
        values.append(bot_id)

        cursor = await self._db.conn.execute(
            f"UPDATE bots SET {', '.join(columns)} WHERE id = ?", values
        )
        await self._db.conn.commit()
        if cursor.rowcount == 0:
            raise BotNotFoundError(bot_id)

        record = await self.get_bot(bot_id)
        if record is None:
            raise BotNotFoundError(bot_id)
        return record

    async def delete_bot(self, bot_id: str) -> bool:
        cursor = await self._db.conn.execute("DELETE FROM bots WHERE id = ?", (bot_id,))
        await self._db.conn.commit()
        if cursor.rowcount == 0:
            raise BotNotFoundError(bot_id)
        logger.info("bot_deleted", bot_id=bot_id)
        return True

    @staticmethod
    def _row_to_record(row) -> BotRecord:
        return BotRecord(
            id=row["id"],
            name=row["name"],
            owner=row["owner"],
            repo_url=row["repo_url"],
            description=row["description"],
            status=BotStatus(row["status"]),
            phone_number=row["phone_number"],
            pairing_code=row["pairing_code"],
            pairing_status=row["pairing_status"],
            session_path=row["session_path"],
            pid=row["pid"],
            error=row["error"],
            exit_code=row["exit_code"],
            logs=json.loads(row["logs_json"] or "[]"),
            deployed_at=row["deployed_at"],
            last_restart=row["last_restart"],
            last_stop=row["last_stop"],
            last_check=row["last_check"],
            connected_at=row["connected_at"],
            last_error_at=row["last_error_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
