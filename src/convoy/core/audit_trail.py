"""Cross-host audit trail.

Significant actions (locking, rollouts, proxy changes, pruning) are appended
as text lines to ``.convoy/<project>/audit.txt`` on every host:

    [2026-01-02T10:00:00+00:00] [SUCCESS ] deployment_lock [web1] - Deployment lock acquired
        Details: {"message":"release"}

Reading returns the raw tail of each host's file; the helpers below parse,
filter and merge those lines for display.
"""

import asyncio
import json
import logging
import re
import shlex
from collections.abc import AsyncIterator, Awaitable, Callable, Hashable, Sequence
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generic, TypeVar

from ..constants import AUDIT_FILE, AUDIT_FOLLOW_INTERVAL, CONVOY_DIR
from ..errors import RemoteExecutionError
from ..models import AuditEntry, Err, Ok, Outcome
from ..services.ssh import RemoteExecutor
from .pool import ConcurrencyPool

logger = logging.getLogger(__name__)

LOCAL_HOST = "local"

_LINE_PATTERN = re.compile(
    r"^\[(?P<timestamp>[^\]]+)\]\s*\[(?P<status>[^\]]+)\]\s*(?P<action>[^\[\-]*)"
    r"(\[(?P<host>[^\]]+)\])?\s*-?\s*(?P<message>.*)?$"
)

_DETAILS_PREFIX = "    Details: "

_FILE_HEADER = "# convoy audit trail for {project}\n# One line per action, newest last\n\n"


def audit_path(project: str) -> str:
    """Audit file path relative to the login directory of a host."""
    return f"{CONVOY_DIR}/{project}/{AUDIT_FILE}"


def format_entry(entry: AuditEntry) -> str:
    """Render an entry as audit file text (one line, plus a details line)."""
    status = entry.status.value.upper().ljust(8)
    host = f" [{entry.host}]" if entry.host else ""
    line = f"[{entry.timestamp.isoformat()}] [{status}] {entry.action}{host} - {entry.message}"
    if entry.details:
        details = json.dumps(entry.details, separators=(",", ":"), default=str)
        line += f"\n{_DETAILS_PREFIX}{details}"
    return line


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC.

    Raises:
        ValueError: If the value is not ISO 8601
    """
    parsed = datetime.fromisoformat(value.strip())
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


@dataclass(frozen=True)
class ParsedAuditLine:
    """One audit line split into its fields."""

    timestamp: str
    status: str
    action: str
    host: str
    message: str
    raw: str

    @property
    def time(self) -> datetime | None:
        try:
            return parse_timestamp(self.timestamp)
        except ValueError:
            return None

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


def parse_line(line: str, host: str) -> ParsedAuditLine | None:
    """Parse an audit line, or return None if it is not an entry line.

    The host tag written in the line wins over ``host`` (the host the line
    was read from).
    """
    match = _LINE_PATTERN.match(line)
    if match is None:
        return None
    return ParsedAuditLine(
        timestamp=match["timestamp"],
        status=match["status"].strip().lower(),
        action=match["action"].strip().lower(),
        host=match["host"] or host,
        message=(match["message"] or "").strip(),
        raw=line,
    )


@dataclass(frozen=True)
class AuditFilter:
    """Filters applied to parsed audit lines."""

    action: str | None = None
    status: str | None = None
    since: datetime | None = None
    until: datetime | None = None

    def matches(self, entry: ParsedAuditLine | None) -> bool:
        if entry is None:
            return False
        if self.action and self.action.lower() not in entry.action:
            return False
        if self.status and entry.status != self.status.lower():
            return False
        if self.since or self.until:
            when = entry.time
            if when is None:
                return False
            if self.since and when < self.since:
                return False
            if self.until and when > self.until:
                return False
        return True


@dataclass
class HostEntries:
    """Raw audit lines read from one host, oldest first."""

    host: str
    lines: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


def aggregate_entries(
    host_entries: Sequence[HostEntries], audit_filter: AuditFilter | None = None
) -> list[ParsedAuditLine]:
    """Merge entries from all hosts in ascending timestamp order.

    Lines that do not parse (details lines, garbage) are left out. The sort
    is stable, so entries with equal timestamps keep host order.
    """
    audit_filter = audit_filter or AuditFilter()
    merged: list[tuple[datetime, ParsedAuditLine]] = []
    for item in host_entries:
        for line in item.lines:
            parsed = parse_line(line, item.host)
            if parsed is None or parsed.time is None or not audit_filter.matches(parsed):
                continue
            merged.append((parsed.time, parsed))
    merged.sort(key=lambda pair: pair[0])
    return [parsed for _, parsed in merged]


def group_by_host(entries: Sequence[ParsedAuditLine]) -> dict[str, list[ParsedAuditLine]]:
    grouped: dict[str, list[ParsedAuditLine]] = {}
    for entry in entries:
        grouped.setdefault(entry.host, []).append(entry)
    return grouped


def entries_to_json(entries: Sequence[ParsedAuditLine]) -> dict[str, Any]:
    """JSON document for ``convoy audit --json``."""
    return {"total": len(entries), "entries": [e.to_dict() for e in entries]}


class AuditTrail:
    """Writes and reads the audit file on every host of the fleet."""

    def __init__(
        self,
        executors: Sequence[RemoteExecutor],
        project: str,
        pool: ConcurrencyPool | None = None,
        local_root: Path | None = None,
    ) -> None:
        self.executors = list(executors)
        self.project = project
        self.pool = pool or ConcurrencyPool()
        self.local_root = local_root or Path.cwd()

    @property
    def path(self) -> str:
        return audit_path(self.project)

    @property
    def local_path(self) -> Path:
        return self.local_root / self.path

    def _append_command(self, text: str) -> str:
        path = shlex.quote(self.path)
        directory = shlex.quote(str(Path(self.path).parent))
        header = shlex.quote(_FILE_HEADER.format(project=self.project))
        return (
            f"mkdir -p {directory} && "
            f"{{ test -f {path} || printf '%s' {header} > {path}; }} && "
            f"printf '%s\\n' {shlex.quote(text)} >> {path}"
        )

    async def _append(self, executor: RemoteExecutor, entry: AuditEntry) -> None:
        text = format_entry(entry)
        result = await executor.execute(self._append_command(text))
        if not result.success:
            raise RemoteExecutionError(
                executor.host, f"audit write failed: {result.stderr.strip() or result.exit_code}"
            )

    def _append_local(self, entry: AuditEntry) -> None:
        path = self.local_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if not path.exists():
            path.write_text(_FILE_HEADER.format(project=self.project))
        with open(path, "a") as f:
            f.write(format_entry(entry) + "\n")

    async def log(
        self, entry: AuditEntry, hosts: Sequence[str] | None = None
    ) -> list[Outcome[None]]:
        """Append an entry to the audit file of each host.

        Args:
            entry: Entry to write; its host tag is set per host
            hosts: Restrict the write to these hosts

        Returns:
            One outcome per written host. Failures are logged, never raised.
        """
        if not self.executors:
            try:
                self._append_local(entry)
            except OSError as e:
                logger.warning(f"Failed to write local audit entry: {e}")
                return [Err(LOCAL_HOST, e)]
            return [Ok(LOCAL_HOST, None)]

        targets = [
            ex for ex in self.executors if hosts is None or ex.host in hosts
        ]
        outcomes = await self.pool.execute_host_operations(
            [
                (
                    ex.host,
                    lambda ex=ex: self._append(ex, entry.model_copy(update={"host": ex.host})),
                )
                for ex in targets
            ]
        )
        for outcome in outcomes:
            if isinstance(outcome, Err):
                logger.warning(f"Failed to write audit entry on {outcome.host}: {outcome.message}")
        return outcomes

    async def _read(self, executor: RemoteExecutor, lines: int) -> list[str]:
        path = shlex.quote(self.path)
        # Header, blank and details lines do not count against the budget
        command = (
            f"tail -n {lines * 3} {path} 2>/dev/null"
            f" | grep -v -e '^#' -e '^$' -e '^{_DETAILS_PREFIX}' | tail -n {lines}"
        )
        result = await executor.execute(command)
        if not result.success:
            raise RemoteExecutionError(
                executor.host, f"audit read failed: {result.stderr.strip() or result.exit_code}"
            )
        return [line for line in result.stdout.splitlines() if line]

    def _read_local(self, lines: int) -> list[str]:
        if not self.local_path.exists():
            return []
        content = self.local_path.read_text().splitlines()
        return [
            line
            for line in content
            if line and not line.startswith(("#", _DETAILS_PREFIX))
        ][-lines:]

    async def get_recent_entries(self, lines: int) -> list[HostEntries]:
        """Last ``lines`` audit lines of each host, in host order.

        A host that cannot be read yields an empty list with its error set.
        """
        if not self.executors:
            return [HostEntries(LOCAL_HOST, self._read_local(lines))]

        outcomes = await self.pool.execute_host_operations(
            [(ex.host, lambda ex=ex: self._read(ex, lines)) for ex in self.executors]
        )
        entries: list[HostEntries] = []
        for outcome in outcomes:
            if isinstance(outcome, Ok):
                entries.append(HostEntries(outcome.host, outcome.value))
            else:
                logger.warning(f"Failed to read audit trail on {outcome.host}: {outcome.message}")
                entries.append(HostEntries(outcome.host, [], outcome.message))
        return entries


K = TypeVar("K", bound=Hashable)


class AuditFollower(Generic[K]):
    """Polls a source periodically and streams items not seen before.

    Usage:
        follower = AuditFollower(fetch_lines, interval=2.0)
        async for item in follower.stream():
            show(item)
        # elsewhere: follower.stop()
    """

    def __init__(
        self,
        source: Callable[[], Awaitable[Sequence[K]]],
        interval: float = AUDIT_FOLLOW_INTERVAL,
    ) -> None:
        self.source = source
        self.interval = interval
        self._stopped = asyncio.Event()

    def restart(self) -> None:
        """Allow a stopped follower to stream again."""
        self._stopped.clear()

    def stop(self) -> None:
        """End the current stream; a sleeping poll wakes immediately."""
        self._stopped.set()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    async def stream(self) -> AsyncIterator[K]:
        seen: set[K] = set()
        while not self._stopped.is_set():
            for item in await self.source():
                if item in seen:
                    continue
                seen.add(item)
                yield item
                if self._stopped.is_set():
                    return
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except TimeoutError:
                continue
