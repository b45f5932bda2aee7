"""Tests for the audit trail."""

import asyncio
from datetime import UTC, datetime
from pathlib import Path

import pytest
from conftest import FailingExecutor

from convoy.core.audit_trail import (
    AuditFilter,
    AuditFollower,
    AuditTrail,
    HostEntries,
    aggregate_entries,
    entries_to_json,
    format_entry,
    group_by_host,
    parse_line,
)
from convoy.models import AuditEntry, AuditStatus
from convoy.services.ssh import LocalShellExecutor

T0 = datetime(2026, 1, 2, 10, 0, 0, tzinfo=UTC)


def line(ts: str, status: str, action: str, host: str, message: str) -> str:
    return f"[{ts}] [{status.upper():<8}] {action} [{host}] - {message}"


class TestFormatAndParse:
    """Tests for format_entry and parse_line."""

    @pytest.mark.unit
    def test_format_entry(self) -> None:
        entry = AuditEntry(
            timestamp=T0, status=AuditStatus.SUCCESS, action="deployment_lock", host="web1",
            message="Deployment lock acquired",
        )
        assert format_entry(entry) == (
            "[2026-01-02T10:00:00+00:00] [SUCCESS ] deployment_lock [web1]"
            " - Deployment lock acquired"
        )

    @pytest.mark.unit
    def test_format_entry_with_details(self) -> None:
        entry = AuditEntry(
            timestamp=T0, status=AuditStatus.FAILED, action="service_deploy", message="boom",
            details={"service": "web"},
        )
        text = format_entry(entry)
        assert text.splitlines()[1] == '    Details: {"service":"web"}'
        assert "[FAILED  ]" in text

    @pytest.mark.unit
    def test_parse_formatted_line(self) -> None:
        entry = AuditEntry(
            timestamp=T0, status=AuditStatus.STARTED, action="service_deploy", host="web2",
            message="Deploying web",
        )
        parsed = parse_line(format_entry(entry), "other")
        assert parsed is not None
        assert parsed.status == "started"
        assert parsed.action == "service_deploy"
        assert parsed.host == "web2"
        assert parsed.message == "Deploying web"
        assert parsed.time == T0

    @pytest.mark.unit
    def test_parse_line_without_host_tag_uses_source_host(self) -> None:
        parsed = parse_line("[2026-01-02T10:00:00Z] [SUCCESS ] image_prune - Removed 2", "web3")
        assert parsed is not None
        assert parsed.host == "web3"
        assert parsed.action == "image_prune"

    @pytest.mark.unit
    @pytest.mark.parametrize("text", ["    Details: {}", "# header", "garbage"])
    def test_non_entry_lines(self, text: str) -> None:
        assert parse_line(text, "web1") is None


class TestFilterAndMerge:
    """Tests for AuditFilter, aggregate_entries and friends."""

    @pytest.fixture
    def host_entries(self) -> list[HostEntries]:
        return [
            HostEntries(
                "web1",
                [
                    line("2026-01-02T10:00:03+00:00", "success", "service_deploy", "web1", "c"),
                    "    Details: {}",
                    line("2026-01-02T10:00:05+00:00", "failed", "proxy_deploy", "web1", "e"),
                ],
            ),
            HostEntries(
                "web2",
                [
                    line("2026-01-02T10:00:01+00:00", "started", "service_deploy", "web2", "a"),
                    line("2026-01-02T10:00:04+00:00", "success", "deployment_lock", "web2", "d"),
                ],
            ),
            HostEntries("web3", [], error="connection refused"),
        ]

    @pytest.mark.unit
    def test_aggregate_sorts_by_timestamp(self, host_entries) -> None:
        merged = aggregate_entries(host_entries)
        assert [e.message for e in merged] == ["a", "c", "d", "e"]

    @pytest.mark.unit
    def test_aggregate_is_stable_for_equal_timestamps(self) -> None:
        ts = "2026-01-02T10:00:00+00:00"
        merged = aggregate_entries(
            [
                HostEntries("web1", [line(ts, "success", "x", "web1", "first")]),
                HostEntries("web2", [line(ts, "success", "x", "web2", "second")]),
            ]
        )
        assert [e.message for e in merged] == ["first", "second"]

    @pytest.mark.unit
    def test_filter_by_action_substring(self, host_entries) -> None:
        merged = aggregate_entries(host_entries, AuditFilter(action="SERVICE"))
        assert [e.message for e in merged] == ["a", "c"]

    @pytest.mark.unit
    def test_filter_by_status(self, host_entries) -> None:
        merged = aggregate_entries(host_entries, AuditFilter(status="failed"))
        assert [e.message for e in merged] == ["e"]

    @pytest.mark.unit
    def test_filter_by_time_window(self, host_entries) -> None:
        window = AuditFilter(
            since=datetime(2026, 1, 2, 10, 0, 2, tzinfo=UTC),
            until=datetime(2026, 1, 2, 10, 0, 4, tzinfo=UTC),
        )
        assert [e.message for e in aggregate_entries(host_entries, window)] == ["c", "d"]

    @pytest.mark.unit
    def test_group_by_host(self, host_entries) -> None:
        grouped = group_by_host(aggregate_entries(host_entries))
        assert [e.message for e in grouped["web1"]] == ["c", "e"]
        assert [e.message for e in grouped["web2"]] == ["a", "d"]

    @pytest.mark.unit
    def test_entries_to_json(self, host_entries) -> None:
        data = entries_to_json(aggregate_entries(host_entries))
        assert data["total"] == 4
        assert data["entries"][0]["host"] == "web2"
        assert data["entries"][0]["status"] == "started"


class TestAuditTrail:
    """Tests for AuditTrail against local host directories."""

    @pytest.mark.asyncio
    async def test_log_then_read_back(self, local_fleet, host_roots) -> None:
        trail = AuditTrail(local_fleet, "shop")
        entry = AuditEntry(status=AuditStatus.SUCCESS, action="image_prune", message="it's done")
        outcomes = await trail.log(entry)
        assert all(o.success for o in outcomes)

        recent = await trail.get_recent_entries(10)
        assert [r.host for r in recent] == ["web1", "web2", "web3"]
        parsed = parse_line(recent[0].lines[-1], "web1")
        assert parsed is not None
        assert parsed.message == "it's done"
        assert parsed.host == "web1"
        header = (host_roots["web1"] / ".convoy" / "shop" / "audit.txt").read_text()
        assert header.startswith("# convoy audit trail for shop")

    @pytest.mark.asyncio
    async def test_log_restricted_to_hosts(self, local_fleet, host_roots) -> None:
        trail = AuditTrail(local_fleet, "shop")
        await trail.log(AuditEntry(status=AuditStatus.WARNING, action="x"), hosts=["web2"])
        assert not (host_roots["web1"] / ".convoy").exists()
        assert (host_roots["web2"] / ".convoy" / "shop" / "audit.txt").exists()

    @pytest.mark.asyncio
    async def test_read_returns_last_n_lines(self, local_fleet) -> None:
        trail = AuditTrail(local_fleet[:1], "shop")
        for i in range(5):
            await trail.log(AuditEntry(status=AuditStatus.SUCCESS, action="x", message=str(i)))
        recent = await trail.get_recent_entries(2)
        assert [parse_line(text, "web1").message for text in recent[0].lines] == ["3", "4"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("remote", [True, False])
    async def test_details_lines_do_not_use_budget(self, local_fleet, tmp_path, remote) -> None:
        executors = local_fleet[:1] if remote else []
        trail = AuditTrail(executors, "shop", local_root=tmp_path)
        for i in range(4):
            entry = AuditEntry(
                status=AuditStatus.SUCCESS, action="x", message=str(i), details={"n": i}
            )
            await trail.log(entry)
        lines = (await trail.get_recent_entries(3))[0].lines
        assert [parse_line(text, "h").message for text in lines] == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_missing_file_reads_empty(self, local_fleet) -> None:
        recent = await AuditTrail(local_fleet, "shop").get_recent_entries(5)
        assert all(r.lines == [] and r.success for r in recent)

    @pytest.mark.asyncio
    async def test_write_failure_returned_not_raised(self, host_roots) -> None:
        executors = [
            LocalShellExecutor("web1", host_roots["web1"]),
            FailingExecutor("web2", host_roots["web2"], "printf"),
        ]
        outcomes = await AuditTrail(executors, "shop").log(
            AuditEntry(status=AuditStatus.SUCCESS, action="x")
        )
        assert [o.success for o in outcomes] == [True, False]

    @pytest.mark.asyncio
    async def test_read_failure_yields_empty_host(self, host_roots) -> None:
        executors = [FailingExecutor("web1", host_roots["web1"], "tail", unreachable=True)]
        recent = await AuditTrail(executors, "shop").get_recent_entries(5)
        assert recent[0].lines == []
        assert "connection refused" in (recent[0].error or "")

    @pytest.mark.asyncio
    async def test_no_executors_writes_locally(self, tmp_path: Path) -> None:
        trail = AuditTrail([], "shop", local_root=tmp_path)
        await trail.log(AuditEntry(status=AuditStatus.SUCCESS, action="x", message="local"))
        recent = await trail.get_recent_entries(5)
        assert recent[0].host == "local"
        assert parse_line(recent[0].lines[0], "local").message == "local"


class TestAuditFollower:
    """Tests for AuditFollower."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_emits_only_new_items_and_stops(self) -> None:
        batches = [["a", "b"], ["a", "b", "c"], ["b", "c", "d"]]
        calls = 0

        async def source() -> list[str]:
            nonlocal calls
            batch = batches[min(calls, len(batches) - 1)]
            calls += 1
            return batch

        follower = AuditFollower(source, interval=0.01)
        seen: list[str] = []
        async for item in follower.stream():
            seen.append(item)
            if item == "d":
                follower.stop()
        assert seen == ["a", "b", "c", "d"]
        assert follower.stopped

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stop_wakes_sleeping_poll(self) -> None:
        async def source() -> list[str]:
            return ["only"]

        follower = AuditFollower(source, interval=60)
        seen: list[str] = []

        async def consume() -> None:
            async for item in follower.stream():
                seen.append(item)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.05)
        follower.stop()
        await asyncio.wait_for(task, timeout=1)
        assert seen == ["only"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stream_restarts(self) -> None:
        async def source() -> list[str]:
            return ["x"]

        follower = AuditFollower(source, interval=0.01)
        for _ in range(2):
            follower.restart()
            async for item in follower.stream():
                assert item == "x"
                follower.stop()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stop_before_first_poll(self) -> None:
        calls = 0

        async def source() -> list[str]:
            nonlocal calls
            calls += 1
            return ["x"]

        follower = AuditFollower(source, interval=0.01)
        follower.stop()
        seen = [item async for item in follower.stream()]
        assert seen == []
        assert calls == 0
