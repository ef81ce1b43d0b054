"""Models for cross-process coordination of interactive authorization.

The coordination record is the lockfile one process writes to claim the
browser flow for a server; every other process reads it to decide whether to
wait or take over.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field


class LockState(str, Enum):
    """Lifecycle of a coordination record.

    A missing record means unowned. Terminal states are written just before
    the record is removed so waiters polling in between see the outcome.
    """

    OWNED = "owned"
    COMPLETED = "completed"
    ABANDONED = "abandoned"

    @property
    def terminal(self) -> bool:
        return self is not LockState.OWNED


class WaitOutcome(str, Enum):
    """How a wait on another process's authorization ended."""

    RELEASED = "released"  # Owner finished, re-read the credential store
    OWNER_GONE = "owner_gone"  # Owner died or went stale, try to take over


class CoordinationRecord(BaseModel):
    """Lockfile contents for one server identity."""

    pid: int = Field(gt=0)
    process_started_at: float | None = None  # Owner's process creation time
    server_identity: str
    callback_port: int | None = None
    state: LockState = LockState.OWNED
    acquired_at: float  # Unix timestamp


@dataclass
class Lease:
    """Proof of ownership handed to the process that won ``acquire``.

    ``exclusive`` is False when coordination is disabled and every process
    acts as its own owner.
    """

    server_identity: str
    record: CoordinationRecord | None
    exclusive: bool = True
    released: bool = False
