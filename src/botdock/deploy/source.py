"""Fetching bot source trees and preparing them to run."""

from __future__ import annotations

import asyncio
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from botdock.errors import CloneError
from botdock.log import get_logger

logger = get_logger(__name__)


async def run_command(
    cmd: list[str], cwd: Path | None = None, timeout: float = 300
) -> tuple[bool, str]:
    """Run a command to completion and return (success, output)."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return False, f"Command not found: {cmd[0]}"

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return False, f"Command timed out after {timeout:g} seconds: {' '.join(cmd)}"

    out = (stdout or b"").decode("utf-8", errors="replace").strip()
    err = (stderr or b"").decode("utf-8", errors="replace").strip()
    if proc.returncode != 0:
        return False, err or out or f"exit code {proc.returncode}"
    return True, out or err


class SourceFetcher(ABC):
    """Places a bot's source tree into a target directory."""

    @abstractmethod
    async def fetch(self, repo_url: str, target: Path) -> None:
        ...


class GitSourceFetcher(SourceFetcher):
    """Clones the repository with the ``git`` CLI."""

    def __init__(self, git_path: str = "git", timeout: float = 300):
        self._git = shutil.which(git_path) or git_path
        self._timeout = timeout

    async def fetch(self, repo_url: str, target: Path) -> None:
        logger.info("source_clone_start", repo_url=repo_url, target=str(target))
        ok, output = await run_command(
            [self._git, "clone", repo_url, str(target)], timeout=self._timeout
        )
        if not ok:
            raise CloneError(f"git clone failed: {output}")
        logger.info("source_cloned", repo_url=repo_url)


def find_entrypoint(
    deploy_dir: Path, candidates: list[str], source_suffix: str
) -> Optional[str]:
    """Return the file name that starts the bot, or None.

    Conventional names win in order; otherwise the first top-level source file
    that is not a test/spec file.
    """
    for name in candidates:
        if (deploy_dir / name).is_file():
            return name

    try:
        entries = sorted(p for p in deploy_dir.iterdir() if p.is_file())
    except OSError:
        return None

    for path in entries:
        name = path.name
        if name.endswith(source_suffix) and "test" not in name and "spec" not in name:
            return name
    return None
