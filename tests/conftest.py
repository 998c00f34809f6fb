from __future__ import annotations

import sys
import textwrap
from pathlib import Path

import pytest

from botdock.config import (
    AppConfig,
    DeployConfig,
    MonitorConfig,
    PairingConfig,
    PathsConfig,
    StorageConfig,
)
from botdock.core.process_registry import ProcessRegistry
from botdock.pairing.status import SessionStatusResolver
from botdock.storage.bot_repo import BotRepository
from botdock.storage.database import Database


@pytest.fixture
def config(tmp_path):
    data = tmp_path / "data"
    return AppConfig(
        data_dir=str(data),
        paths=PathsConfig(
            sessions_dir=str(data / "sessions"),
            deployments_dir=str(data / "deployments"),
            configs_dir=str(data / "configs"),
        ),
        deploy=DeployConfig(
            runtime_command=[sys.executable, "-u"],
            install_command=[sys.executable, "-c", "pass"],
            manifest_file="requirements.txt",
            entrypoint_candidates=["main.py", "bot.py"],
            source_suffix=".py",
            startup_grace_seconds=0.5,
            stop_grace_seconds=1.0,
            output_drain_seconds=0.3,
            log_flush_every=2,
        ),
        pairing=PairingConfig(timeout_seconds=2.0, close_delay_seconds=0.01),
        monitor=MonitorConfig(enabled=False),
        storage=StorageConfig(db_path=str(data / "botdock.db")),
    )


@pytest.fixture
async def db(config):
    database = Database(config.storage.db_path)
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def bot_repo(db):
    return BotRepository(db)


@pytest.fixture
def registry():
    return ProcessRegistry()


@pytest.fixture
def resolver(config):
    return SessionStatusResolver(config.paths.sessions_dir)


@pytest.fixture
def make_source(tmp_path):
    """Create a local bot repository; returns its ``file://`` URL."""

    def _make(name: str, files: dict[str, str]) -> str:
        root = tmp_path / "repos" / name
        root.mkdir(parents=True)
        for rel, content in files.items():
            path = root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(textwrap.dedent(content), encoding="utf-8")
        return f"file://{root}"

    return _make


@pytest.fixture
def write_session(resolver):
    """Write a session directory as the protocol layer would leave it."""

    def _write(owner: str, bot_id: str, status: str = "connected", creds: bool = True) -> Path:
        path = resolver.session_path(owner, bot_id)
        path.mkdir(parents=True, exist_ok=True)
        if creds:
            (path / "creds.json").write_text("{}", encoding="utf-8")
        (path / "session_info.json").write_text(
            f'{{"owner": "{owner}", "bot_id": "{bot_id}", "status": "{status}"}}',
            encoding="utf-8",
        )
        return path

    return _write
