"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import platform
import re
from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


class PathsConfig(BaseModel):
    sessions_dir: str = "./data/sessions"
    deployments_dir: str = "./data/deployments"
    configs_dir: str = "./data/configs"


class DeployConfig(BaseModel):
    runtime_command: list[str] = Field(default_factory=lambda: ["node"])
    # None picks npm / npm.cmd for the host platform
    install_command: Optional[list[str]] = None
    manifest_file: str = "package.json"
    entrypoint_candidates: list[str] = Field(
        default_factory=lambda: ["index.js", "main.js", "app.js", "bot.js", "start.js"]
    )
    source_suffix: str = ".js"
    startup_grace_seconds: float = 5.0
    stop_grace_seconds: float = 5.0
    # leftover children can hold the output pipes after the bot exits
    output_drain_seconds: float = 2.0
    log_buffer_size: int = 100
    log_flush_every: int = 10
    log_persist_tail: int = 50
    install_failure_policy: Literal["continue", "abort"] = "continue"
    runtime_port: str = "3001"
    clone_timeout: int = 300
    install_timeout: int = 600
    stop_on_shutdown: bool = True

    def resolved_install_command(self) -> list[str]:
        if self.install_command:
            return list(self.install_command)
        npm = "npm.cmd" if platform.system() == "Windows" else "npm"
        return [npm, "install"]


class PairingConfig(BaseModel):
    timeout_seconds: float = 120.0
    close_delay_seconds: float = 3.0
    bridge_command: list[str] = Field(default_factory=lambda: ["node", "pair-bridge.js"])


class MonitorConfig(BaseModel):
    enabled: bool = True
    interval_seconds: float = 30.0


class StorageConfig(BaseModel):
    db_path: str = "./data/botdock.db"


class WebConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 3000


class AppConfig(BaseModel):
    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    data_dir: str = "./data"
    paths: PathsConfig = Field(default_factory=PathsConfig)
    deploy: DeployConfig = Field(default_factory=DeployConfig)
    pairing: PairingConfig = Field(default_factory=PairingConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    web: WebConfig = Field(default_factory=WebConfig)


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str, extra: dict[str, str] | None = None) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if extra and var_name in extra:
            return extra[var_name]
        value = os.environ.get(var_name)
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation."""
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")

    # data_dir may be referenced as ${data_dir} by the path settings
    raw_data = yaml.safe_load(raw_text) or {}
    data_dir = _interpolate_env_vars(str(raw_data.get("data_dir", "./data")))

    interpolated = _interpolate_env_vars(raw_text, extra={"data_dir": data_dir})
    data = yaml.safe_load(interpolated) or {}

    return AppConfig(**data)
