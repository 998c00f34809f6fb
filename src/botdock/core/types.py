"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum


class BotStatus(StrEnum):
    PENDING = "pending"
    PAIRING = "pairing"
    PAIRING_FAILED = "pairing_failed"
    ONLINE = "online"
    OFFLINE = "offline"
    RESTARTING = "restarting"
    ERROR = "error"


class ProcessStatus(StrEnum):
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class SessionState(StrEnum):
    PAIRING = "pairing"
    CONNECTED = "connected"


class PairingStatus(StrEnum):
    """Pairing progress as recorded on the bot record."""

    PENDING = "pending"
    CONNECTED = "connected"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
