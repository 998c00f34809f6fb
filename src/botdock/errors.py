"""Exception hierarchy shared by the deployment, pairing and storage layers."""

from __future__ import annotations

from botdock.core.types import PairingStatus


class BotDockError(Exception):
    """Base class for all botdock errors."""


class BotNotFoundError(BotDockError, LookupError):
    def __init__(self, bot_id: str):
        super().__init__(f"Bot not found: {bot_id}")
        self.bot_id = bot_id


# ── deployment ──────────────────────────────────────────────


class DeploymentError(BotDockError):
    """A deployment step failed; the bot is marked ``error``."""


class CloneError(DeploymentError):
    pass


class DependencyInstallError(DeploymentError):
    pass


class NoEntrypointError(DeploymentError):
    def __init__(self, message: str = "No main bot file found"):
        super().__init__(message)


class SpawnError(DeploymentError):
    pass


class ImmediateExitError(DeploymentError):
    def __init__(self, exit_code: int | None):
        super().__init__(f"Bot process failed to start, exit code: {exit_code}")
        self.exit_code = exit_code


# ── pairing ─────────────────────────────────────────────────


class PairingError(BotDockError):
    """A pairing attempt ended without a connected session."""

    outcome: str = PairingStatus.FAILED.value


class PairingTimeoutError(PairingError):
    outcome: str = PairingStatus.TIMED_OUT.value

    def __init__(self, timeout: float):
        super().__init__(f"Pairing timeout ({timeout:g} seconds)")
        self.timeout = timeout


class PairingRejectedError(PairingError):
    pass


class ConnectionClosedError(PairingError):
    def __init__(self, reason: str | None = None):
        message = "Connection closed during pairing"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.reason = reason


class PairingInProgressError(PairingError):
    def __init__(self, owner: str, bot_id: str):
        super().__init__(f"Pairing already in progress for bot {bot_id}")
        self.owner = owner
        self.bot_id = bot_id


class InvalidPhoneNumberError(PairingError, ValueError):
    pass
