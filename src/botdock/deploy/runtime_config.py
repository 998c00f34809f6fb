"""Per-bot runtime configuration read by the deployed bot through CONFIG_PATH."""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from botdock.log import get_logger
from botdock.util.fs import atomic_write_json

logger = get_logger(__name__)


class BotRuntimeConfig(BaseModel):
    """Settings the bot itself consumes. Serialized with camelCase keys."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    owner: str = ""
    online: bool = True
    autotype: bool = True
    fakerecord: bool = False
    prefix: str = "!"
    welcome_message: str = Field(default="Welcome to the bot!", alias="welcomeMessage")
    goodbye_message: str = Field(default="Goodbye!", alias="goodbyeMessage")

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True)


def load_runtime_config(path: Path, owner: str) -> BotRuntimeConfig:
    """Load the bot's config file, falling back to defaults.

    A missing default file is written in place; a corrupt one is left alone.
    """
    if not path.exists():
        config = BotRuntimeConfig(owner=owner)
        try:
            atomic_write_json(path, config.to_json_dict())
        except OSError as e:
            logger.warning("runtime_config_write_failed", path=str(path), error=str(e))
        return config

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("config root must be an object")
        data.setdefault("owner", owner)
        return BotRuntimeConfig.model_validate(data)
    except (OSError, ValueError, ValidationError) as e:
        logger.warning("runtime_config_invalid", path=str(path), error=str(e))
        return BotRuntimeConfig(owner=owner)
