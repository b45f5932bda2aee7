"""Fleet-wide deployment lock.

The lock is a JSON record replicated to ``.convoy/<project>/deploy.lock`` on
every host. It is advisory: status is read before writing, so two operators
racing between the read and the write can both succeed. Acquisition is all
or nothing; a partial write is rolled back.
"""

import asyncio
import logging
import shlex
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from ..constants import CONVOY_DIR, LOCK_FILE, LOCK_FORMAT_VERSION
from ..errors import LockError, LockTimeoutError, RemoteExecutionError
from ..models import AuditEntry, AuditStatus, Err, LockRecord, Ok, partition
from ..services.identity import IdentityProvider, SystemIdentity
from ..services.ssh import RemoteExecutor
from .audit_trail import AuditTrail
from .pool import ConcurrencyPool

logger = logging.getLogger(__name__)

_HEREDOC_MARKER = "CONVOY_LOCK_EOF"


def lock_path(project: str) -> str:
    """Lock file path relative to the login directory of a host."""
    return f"{CONVOY_DIR}/{project}/{LOCK_FILE}"


def parse_lock_record(content: str) -> LockRecord | None:
    """Parse lock file content.

    Returns:
        The record if it describes a held lock, None for empty, corrupted
        or released content
    """
    if not content.strip():
        return None
    try:
        record = LockRecord.model_validate_json(content)
    except ValidationError:
        # Corrupted lock file - treat as no lock
        return None
    return record if record.locked else None


@dataclass
class HostLockStatus:
    """Lock state of one host at the time of the read."""

    host: str
    record: LockRecord | None = None
    error: str | None = None

    @property
    def locked(self) -> bool:
        return self.record is not None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"host": self.host, "locked": self.locked}
        if self.record is not None:
            data.update(self.record.model_dump(mode="json", by_alias=True, exclude_none=True))
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class LockStatusSet:
    """Per-host lock states, in host order."""

    hosts: list[HostLockStatus] = field(default_factory=list)

    @property
    def locked_hosts(self) -> list[HostLockStatus]:
        return [h for h in self.hosts if h.locked]

    @property
    def unlocked_hosts(self) -> list[HostLockStatus]:
        return [h for h in self.hosts if not h.locked]

    @property
    def any_locked(self) -> bool:
        return any(h.locked for h in self.hosts)

    def to_dict(self) -> dict[str, Any]:
        locked = len(self.locked_hosts)
        return {
            "hosts": [h.to_dict() for h in self.hosts],
            "summary": {
                "total": len(self.hosts),
                "locked": locked,
                "unlocked": len(self.hosts) - locked,
            },
        }


@dataclass
class AcquireResult:
    """Outcome of a lock acquisition."""

    success: bool
    record: LockRecord | None = None
    locked_hosts: list[str] = field(default_factory=list)
    conflicts: list[HostLockStatus] = field(default_factory=list)
    failures: list[Err] = field(default_factory=list)
    suppressed_errors: list[Err] = field(default_factory=list)


@dataclass
class ReleaseResult:
    """Outcome of a lock release."""

    was_locked: bool
    released_hosts: list[str] = field(default_factory=list)
    failures: list[Err] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failures


class DeploymentLock:
    """Deployment lock replicated across the fleet."""

    def __init__(
        self,
        executors: Sequence[RemoteExecutor],
        project: str,
        pool: ConcurrencyPool | None = None,
        identity: IdentityProvider | None = None,
        audit: AuditTrail | None = None,
    ) -> None:
        self.executors = list(executors)
        self.project = project
        self.pool = pool or ConcurrencyPool()
        self.identity = identity or SystemIdentity()
        self.audit = audit or AuditTrail(self.executors, project, self.pool)
        self._by_host = {ex.host: ex for ex in self.executors}

    @property
    def path(self) -> str:
        return lock_path(self.project)

    async def _read(self, executor: RemoteExecutor) -> LockRecord | None:
        result = await executor.execute(f"cat {shlex.quote(self.path)} 2>/dev/null || true")
        if not result.success:
            raise RemoteExecutionError(
                executor.host, f"lock read failed: {result.stderr.strip() or result.exit_code}"
            )
        return parse_lock_record(result.stdout)

    async def status(self) -> LockStatusSet:
        """Read the lock state of every host.

        A host that cannot be read is reported unlocked with its error.
        """
        outcomes = await self.pool.execute_host_operations(
            [(ex.host, lambda ex=ex: self._read(ex)) for ex in self.executors]
        )
        statuses = LockStatusSet()
        for outcome in outcomes:
            if isinstance(outcome, Ok):
                statuses.hosts.append(HostLockStatus(outcome.host, outcome.value))
            else:
                logger.warning(f"Could not read lock on {outcome.host}: {outcome.message}")
                statuses.hosts.append(HostLockStatus(outcome.host, error=outcome.message))
        return statuses

    async def is_locked(self) -> bool:
        return (await self.status()).any_locked

    def _write_command(self, record: LockRecord) -> str:
        path = Path(self.path)
        target = shlex.quote(str(path))
        temp = shlex.quote(f"{path}.tmp")
        directory = shlex.quote(str(path.parent))
        return (
            f"mkdir -p {directory} && cat > {temp} << '{_HEREDOC_MARKER}' && mv {temp} {target}\n"
            f"{record.to_json()}\n"
            f"{_HEREDOC_MARKER}"
        )

    async def _write(self, executor: RemoteExecutor, record: LockRecord) -> None:
        result = await executor.execute(self._write_command(record))
        if not result.success:
            raise RemoteExecutionError(
                executor.host, f"lock write failed: {result.stderr.strip() or result.exit_code}"
            )

    async def _write_with_deadline(
        self, executor: RemoteExecutor, record: LockRecord, timeout_seconds: float | None
    ) -> None:
        if timeout_seconds is None:
            await self._write(executor, record)
            return
        try:
            await asyncio.wait_for(self._write(executor, record), timeout=timeout_seconds)
        except TimeoutError:
            raise LockTimeoutError(
                f"{executor.host}: lock write did not finish within {timeout_seconds}s"
            ) from None

    async def _remove(self, executor: RemoteExecutor) -> None:
        result = await executor.execute(f"rm -f {shlex.quote(self.path)}")
        if not result.success:
            raise RemoteExecutionError(
                executor.host, f"lock removal failed: {result.stderr.strip() or result.exit_code}"
            )

    async def _remove_from(self, hosts: Sequence[str]) -> list[Ok[None] | Err]:
        return await self.pool.execute_host_operations(
            [(host, lambda host=host: self._remove(self._by_host[host])) for host in hosts]
        )

    async def acquire(
        self, message: str, force: bool = False, timeout_seconds: float | None = None
    ) -> AcquireResult:
        """Acquire the lock on every host.

        Args:
            message: Reason recorded in the lock
            force: Overwrite locks held by someone else
            timeout_seconds: Deadline for each host write

        Returns:
            AcquireResult; on conflict nothing was written anywhere
        """
        statuses = await self.status()
        if statuses.any_locked and not force:
            conflicts = statuses.locked_hosts
            logger.info(f"Lock held on {len(conflicts)} host(s); not acquiring")
            return AcquireResult(success=False, conflicts=conflicts)
        if statuses.any_locked:
            logger.warning(f"Overriding lock on {len(statuses.locked_hosts)} host(s)")

        record = LockRecord(
            locked=True,
            message=message,
            acquired_at=datetime.now(UTC),
            acquired_by=self.identity.user(),
            pid=self.identity.pid(),
            version=LOCK_FORMAT_VERSION,
        )
        outcomes = await self.pool.execute_host_operations(
            [
                (ex.host, lambda ex=ex: self._write_with_deadline(ex, record, timeout_seconds))
                for ex in self.executors
            ]
        )
        oks, failures = partition(outcomes)
        written = [ok.host for ok in oks]

        if failures:
            # A failed or timed out write may still have landed remotely
            attempted = [ex.host for ex in self.executors]
            logger.warning(
                f"Lock write failed on {len(failures)} host(s); rolling back {len(attempted)}"
            )
            _, suppressed = partition(await self._remove_from(attempted))
            for err in suppressed:
                logger.warning(f"Rollback failed on {err.host}: {err.message}")
            return AcquireResult(
                success=False, record=record, failures=failures, suppressed_errors=suppressed
            )

        await self.audit.log(
            AuditEntry(
                status=AuditStatus.SUCCESS,
                action="deployment_lock",
                message="Deployment lock acquired",
                details={"message": message, "acquired_by": record.acquired_by, "pid": record.pid},
            )
        )
        logger.info(f"Lock acquired on {len(written)} host(s)")
        return AcquireResult(success=True, record=record, locked_hosts=written)

    async def release(self) -> ReleaseResult:
        """Remove the lock from every host that holds it.

        Hosts whose state could not be read are cleared as well. Failures are
        reported and never undo hosts already released.
        """
        statuses = await self.status()
        targets = [h.host for h in statuses.hosts if h.locked or h.error is not None]
        if not targets:
            logger.info("No deployment lock held")
            return ReleaseResult(was_locked=False)

        oks, failures = partition(await self._remove_from(targets))
        released = [ok.host for ok in oks]
        for err in failures:
            logger.warning(f"Failed to release lock on {err.host}: {err.message}")

        if released:
            await self.audit.log(
                AuditEntry(
                    status=AuditStatus.SUCCESS,
                    action="deployment_unlock",
                    message="Deployment lock released",
                ),
                hosts=released,
            )
        return ReleaseResult(
            was_locked=statuses.any_locked or bool(failures),
            released_hosts=released,
            failures=failures,
        )

    @asynccontextmanager
    async def hold(
        self, message: str, force: bool = False, timeout_seconds: float | None = None
    ) -> AsyncIterator[AcquireResult]:
        """Hold the lock for the duration of the block.

        Raises:
            LockError: If the lock cannot be acquired
        """
        result = await self.acquire(message, force=force, timeout_seconds=timeout_seconds)
        if not result.success:
            if result.conflicts:
                holders = ", ".join(
                    f"{c.host} ({c.record.acquired_by if c.record else 'unknown'})"
                    for c in result.conflicts
                )
                raise LockError(f"Deployment lock held on: {holders}")
            failed = ", ".join(f"{f.host}: {f.message}" for f in result.failures)
            raise LockError(f"Failed to acquire deployment lock: {failed}")
        try:
            yield result
        finally:
            release = await self.release()
            for err in release.failures:
                logger.warning(f"Lock left behind on {err.host}: {err.message}")
