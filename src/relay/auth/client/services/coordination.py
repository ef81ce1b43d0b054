"""Cross-process coordination of interactive authorization.

Several independent processes may start against the same remote server at
once. Only one of them should open a browser; the others wait for it to
finish and then pick up the tokens it stored. There is no daemon: a lockfile
in the server's credential namespace, created with create-if-absent
semantics, decides who owns the browser flow.

States per server identity::

    Unowned --acquire--> Owned(pid) --release--> Completed/Abandoned --> Unowned
                              |
                              +-- owner dead or stale --> reaped --> Unowned

A record is stale when its owner process is gone (or its PID now belongs to a
different process), when it is older than ``stale_after`` seconds, or when it
cannot be parsed. Any process that finds a stale record reaps it and retries.
"""

from __future__ import annotations

import asyncio
import atexit
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from pydantic import ValidationError

from relay.auth.client.models.coordination import (
    CoordinationRecord,
    Lease,
    LockState,
    WaitOutcome,
)
from relay.auth.client.models.errors import CoordinationTimeoutError
from relay.auth.client.primitives.liveness import (
    LivenessProbe,
    ProcessLivenessProbe,
    liveness_supported,
)
from relay.auth.client.primitives.storage import ArtifactKind, CredentialStore

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = 30 * 60.0
DEFAULT_POLL_INTERVAL = 0.5
DEFAULT_AUTH_TIMEOUT = 300.0
MAX_REAP_ROUNDS = 5


class InstanceCoordinator:
    """Serializes interactive authorization across OS processes.

    Args:
        store: Credential store whose namespaces hold the lockfiles
        probe: Liveness probe, psutil-backed by default
        stale_after: Age in seconds after which a record is reaped even if
            its owner still runs
        poll_interval: Seconds between checks while waiting on an owner
        enabled: Force coordination on or off; by default it is on wherever
            liveness probes are supported
        pid: PID to record as owner, defaults to this process
    """

    def __init__(
        self,
        store: CredentialStore,
        probe: LivenessProbe | None = None,
        stale_after: float = DEFAULT_STALE_AFTER,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        enabled: bool | None = None,
        pid: int | None = None,
    ):
        self.store = store
        self.probe = probe or ProcessLivenessProbe()
        self.stale_after = stale_after
        self.poll_interval = poll_interval
        self.enabled = liveness_supported() if enabled is None else enabled
        self.pid = pid or os.getpid()
        self._started_at = self.probe.start_time(self.pid)
        self._held: dict[str, Lease] = {}
        self._atexit_registered = False
        self._fallback_logged = False

    def acquire(self, identity: str, callback_port: int | None = None) -> Lease | None:
        """Try to become the owner of the authorization flow for ``identity``.

        Returns:
            A lease if this process now owns the flow, None if a live process
            already does
        """
        if not self.enabled:
            self._log_fallback()
            return Lease(server_identity=identity, record=None, exclusive=False)

        held = self._held.get(identity)
        if held is not None and not held.released:
            return held

        for _ in range(MAX_REAP_ROUNDS):
            record = CoordinationRecord(
                pid=self.pid,
                process_started_at=self._started_at,
                server_identity=identity,
                callback_port=callback_port,
                state=LockState.OWNED,
                acquired_at=time.time(),
            )
            if self.store.create_exclusive(identity, ArtifactKind.LOCK, record):
                lease = Lease(server_identity=identity, record=record)
                self._hold(lease)
                logger.info(
                    f"Acquired authorization lock for {identity} (pid {self.pid})"
                )
                return lease

            raw = self.store.read_raw(identity, ArtifactKind.LOCK)
            if raw is None:
                # Released between our attempt and the read.
                continue

            existing = _parse_record(raw)
            if (
                existing is not None
                and not existing.state.terminal
                and not self.is_stale(existing)
            ):
                logger.debug(
                    f"Authorization for {identity} is owned by pid {existing.pid}"
                )
                return None

            if self._reap(identity, raw):
                owner = existing.pid if existing else "unknown"
                logger.info(
                    f"CoordinationTakeoverPerformed: reaped finished or stale lock "
                    f"of pid {owner} for {identity}"
                )

        logger.warning(f"Could not settle authorization lock for {identity}")
        return None

    def release(self, lease: Lease, outcome: LockState = LockState.COMPLETED) -> None:
        """Give up ownership. Safe to call more than once.

        Only removes the record if it still names this process; a record that
        was reaped and re-acquired by someone else is left alone.
        """
        if lease.released:
            return
        lease.released = True
        self._held.pop(lease.server_identity, None)

        if not lease.exclusive:
            return

        identity = lease.server_identity
        current = self.read_record(identity)
        if current is None or not self._is_own(current):
            logger.warning(
                f"Authorization lock for {identity} is no longer ours, not removing it"
            )
            return

        terminal = current.model_copy(update={"state": outcome})
        self.store.write(identity, ArtifactKind.LOCK, terminal)
        # Waiters may take over a terminal record at once; only remove our own.
        raw = self.store.read_raw(identity, ArtifactKind.LOCK)
        record = _parse_record(raw) if raw is not None else None
        if record is not None and self._is_own(record):
            self._reap(identity, raw)
        logger.info(f"Released authorization lock for {identity} ({outcome.value})")

    def read_record(self, identity: str) -> CoordinationRecord | None:
        raw = self.store.read_raw(identity, ArtifactKind.LOCK)
        if raw is None:
            return None
        return _parse_record(raw)

    def is_stale(self, record: CoordinationRecord) -> bool:
        age = time.time() - record.acquired_at
        if age > self.stale_after:
            logger.debug(f"Lock of pid {record.pid} is {age:.0f}s old")
            return True
        if record.pid == self.pid and record.process_started_at == self._started_at:
            return False
        return not self.probe.is_alive(record.pid, record.process_started_at)

    async def wait_for_release(
        self, identity: str, timeout: float = DEFAULT_AUTH_TIMEOUT
    ) -> WaitOutcome:
        """Wait for the current owner to finish.

        Returns:
            RELEASED once the record is gone or terminal, OWNER_GONE if the
            owner died or went stale while we waited

        Raises:
            CoordinationTimeoutError: If the owner is still alive at the deadline
        """
        deadline = time.monotonic() + timeout
        logger.info(f"Waiting for another process to finish authorizing {identity}")

        while True:
            raw = self.store.read_raw(identity, ArtifactKind.LOCK)
            if raw is None:
                return WaitOutcome.RELEASED

            record = _parse_record(raw)
            if record is not None and record.state.terminal:
                return WaitOutcome.RELEASED
            if record is None or self.is_stale(record):
                return WaitOutcome.OWNER_GONE

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise CoordinationTimeoutError(
                    f"Timed out after {timeout:.0f}s waiting for pid {record.pid} "
                    f"to finish authorization",
                    server_identity=identity,
                    owner_pid=record.pid,
                )
            await asyncio.sleep(min(self.poll_interval, remaining))

    @asynccontextmanager
    async def ownership(
        self,
        identity: str,
        callback_port: int | None = None,
        timeout: float = DEFAULT_AUTH_TIMEOUT,
        max_attempts: int = 3,
    ) -> AsyncIterator[Lease | None]:
        """Run a block as owner of the authorization flow, or wait for one.

        Yields a lease when this process owns the flow; the lease is released
        as completed on normal exit and abandoned on any exception or
        cancellation. Yields None when another process finished first, in
        which case the caller should re-read the credential store.

        Raises:
            CoordinationTimeoutError: If every attempt timed out waiting
        """
        lease: Lease | None = None
        outcome: WaitOutcome | None = None
        for attempt in range(1, max_attempts + 1):
            lease = self.acquire(identity, callback_port)
            if lease is not None:
                break

            try:
                outcome = await self.wait_for_release(identity, timeout)
            except CoordinationTimeoutError:
                if attempt == max_attempts:
                    raise
                logger.warning(
                    f"Attempt {attempt}/{max_attempts} timed out waiting for "
                    f"authorization of {identity}, retrying"
                )
                continue

            if outcome is WaitOutcome.RELEASED:
                break
            # Owner gone: loop round and take over.

        if lease is None:
            if outcome is not WaitOutcome.RELEASED:
                raise CoordinationTimeoutError(
                    f"Could not acquire authorization lock for {identity} "
                    f"after {max_attempts} attempts",
                    server_identity=identity,
                )
            yield None
            return

        try:
            yield lease
        except BaseException:
            self.release(lease, LockState.ABANDONED)
            raise
        else:
            self.release(lease, LockState.COMPLETED)

    def release_all(self) -> None:
        """Abandon every lease still held, used at interpreter exit."""
        for lease in list(self._held.values()):
            self.release(lease, LockState.ABANDONED)

    def _hold(self, lease: Lease) -> None:
        self._held[lease.server_identity] = lease
        if not self._atexit_registered:
            atexit.register(self.release_all)
            self._atexit_registered = True

    def _is_own(self, record: CoordinationRecord) -> bool:
        return record.pid == self.pid and record.process_started_at == self._started_at

    def _reap(self, identity: str, stale_raw: bytes) -> bool:
        """Remove the record holding ``stale_raw`` without clobbering a newer one.

        The record is moved to a private tombstone first. If the tombstone
        does not hold the bytes we judged stale, another process replaced the
        record in between; it is put back with create-if-absent semantics.
        """
        path = self.store.path_for(identity, ArtifactKind.LOCK)
        tombstone = path.with_name(f".{path.name}.reap-{self.pid}-{time.monotonic_ns()}")
        try:
            os.rename(path, tombstone)
        except FileNotFoundError:
            return False

        try:
            if tombstone.read_bytes() == stale_raw:
                return True
            logger.debug(f"Lock for {identity} changed while reaping, restoring it")
            try:
                os.link(tombstone, path)
            except FileExistsError:
                logger.warning(
                    f"Lock for {identity} was replaced twice during reaping; "
                    f"a concurrent owner lost its record"
                )
            return False
        finally:
            tombstone.unlink(missing_ok=True)

    def _log_fallback(self) -> None:
        if self._fallback_logged:
            return
        self._fallback_logged = True
        logger.warning(
            "Cross-process authorization coordination is disabled on this "
            "platform; every process acts as its own owner and may open a browser"
        )


def _parse_record(raw: bytes) -> CoordinationRecord | None:
    try:
        return CoordinationRecord.model_validate_json(raw)
    except ValidationError as e:
        logger.warning(f"Unreadable authorization lock, treating as stale: {e}")
        return None
