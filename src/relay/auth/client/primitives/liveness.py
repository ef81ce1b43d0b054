"""Process liveness checks used to detect abandoned coordination records.

A recorded PID alone is not enough: the OS may hand the same PID to an
unrelated process after the owner exits. The owner's creation time is stored
next to its PID and compared on every probe.
"""

from __future__ import annotations

import logging
import sys
from typing import Protocol

import psutil

logger = logging.getLogger(__name__)

# Creation times are reported with limited precision on some platforms.
START_TIME_TOLERANCE = 1.0

# Platforms where cross-process coordination is switched off.
UNSUPPORTED_PLATFORMS = frozenset({"win32", "cygwin"})


class LivenessProbe(Protocol):
    def start_time(self, pid: int) -> float | None:
        """Creation time of ``pid``, or None if it cannot be determined."""
        ...

    def is_alive(self, pid: int, started_at: float | None = None) -> bool:
        """Whether ``pid`` still refers to the process that started at
        ``started_at``."""
        ...


class ProcessLivenessProbe:
    """psutil-backed liveness probe."""

    def start_time(self, pid: int) -> float | None:
        try:
            return psutil.Process(pid).create_time()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None

    def is_alive(self, pid: int, started_at: float | None = None) -> bool:
        try:
            process = psutil.Process(pid)
            if process.status() == psutil.STATUS_ZOMBIE:
                return False
            if started_at is None:
                return True
            created = process.create_time()
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            # Exists but belongs to someone else; assume it is the owner.
            return True

        if abs(created - started_at) > START_TIME_TOLERANCE:
            logger.debug(f"PID {pid} was reused by a newer process")
            return False
        return True


def liveness_supported(platform: str | None = None) -> bool:
    """Whether coordination can rely on liveness probes on this platform.

    Windows hands out PIDs aggressively and the lockfile takeover path has not
    been validated there, so coordination is disabled instead.
    """
    platform = sys.platform if platform is None else platform
    return platform not in UNSUPPORTED_PLATFORMS
