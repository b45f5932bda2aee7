"""CLI integration tests for convoy."""

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import ScriptedExecutor, fake_open_fleet
from typer.testing import CliRunner

from convoy.cli import app
from convoy.services.ssh import CommandResult

OPEN_FLEET = "convoy.commands.common.open_fleet"


@pytest.fixture
def fleet(project_dir: Path, host_roots: dict[str, Path]):
    """Patch host connections to local directories."""
    with patch(OPEN_FLEET, fake_open_fleet(host_roots)):
        yield host_roots


def invoke(runner: CliRunner, *args: str):
    return runner.invoke(app, ["--no-color", *args])


class TestVersionCommand:
    """Tests for --version flag."""

    def test_version_shows_version(self, runner: CliRunner) -> None:
        """--version should display version string."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "convoy" in result.stdout
        assert "0.1.0" in result.stdout

    def test_version_short_flag(self, runner: CliRunner) -> None:
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert "convoy" in result.stdout


class TestHelpCommand:
    """Tests for --help flag."""

    def test_help_shows_commands(self, runner: CliRunner) -> None:
        """--help should list all available commands."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("init", "deploy", "audit", "lock"):
            assert command in result.stdout

    def test_no_args_shows_help(self, runner: CliRunner) -> None:
        """Running with no args should show help (exit code 2 for no_args_is_help)."""
        result = runner.invoke(app, [])
        assert result.exit_code == 2
        assert "Usage:" in result.output

    def test_lock_help_lists_subcommands(self, runner: CliRunner) -> None:
        result = runner.invoke(app, ["lock", "--help"])
        assert result.exit_code == 0
        for command in ("acquire", "release", "status", "show"):
            assert command in result.stdout


class TestGlobalOptions:
    """Tests for global CLI options."""

    @pytest.mark.parametrize("flag", ["-v", "-q", "--json", "--no-color"])
    def test_flag_accepted(self, runner: CliRunner, flag: str) -> None:
        result = runner.invoke(app, [flag, "--help"])
        assert result.exit_code == 0

    def test_missing_config_exits_1(self, runner: CliRunner, tmp_path: Path) -> None:
        result = invoke(runner, "--config", str(tmp_path / "nope.toml"), "lock", "status")
        assert result.exit_code == 1
        assert "Config file not found" in result.output

    def test_unmatched_hosts_filter_exits_1(self, runner: CliRunner, fleet) -> None:
        result = invoke(runner, "--hosts", "db*", "lock", "status")
        assert result.exit_code == 1
        assert "No hosts match" in result.output


class TestInitCommand:
    """Tests for convoy init command."""

    def test_init_creates_config(self, runner: CliRunner, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.chdir(tmp_path)
        with patch("convoy.commands.init.shutil.which", return_value="/usr/bin/tool"):
            result = invoke(runner, "init")
        assert result.exit_code == 0
        assert (tmp_path / ".convoy" / "config.toml").exists()
        assert "initialized successfully" in result.output

    def test_init_keeps_existing_config(self, runner: CliRunner, project_dir: Path) -> None:
        config = project_dir / ".convoy" / "config.toml"
        before = config.read_text()
        with patch("convoy.commands.init.shutil.which", return_value="/usr/bin/tool"):
            result = invoke(runner, "init")
        assert result.exit_code == 0
        assert "Config already exists" in result.output
        assert config.read_text() == before

    def test_init_missing_tools_exits_2(
        self, runner: CliRunner, tmp_path: Path, monkeypatch
    ) -> None:
        monkeypatch.chdir(tmp_path)
        with patch("convoy.commands.init.shutil.which", return_value=None):
            result = invoke(runner, "init")
        assert result.exit_code == 2
        assert "not found in PATH" in result.output


class TestLockCommands:
    """Tests for convoy lock subcommands."""

    def test_acquire_status_release(self, runner: CliRunner, fleet) -> None:
        result = invoke(runner, "lock", "acquire", "hotfix 12")
        assert result.exit_code == 0, result.output
        assert "acquired on 3 host(s)" in result.output
        for root in fleet.values():
            assert (root / ".convoy" / "shop" / "deploy.lock").exists()

        result = invoke(runner, "lock", "status")
        assert result.exit_code == 0
        assert "3 locked" in result.output

        result = invoke(runner, "lock", "release")
        assert result.exit_code == 0
        assert "released on 3 host(s)" in result.output
        for root in fleet.values():
            assert not (root / ".convoy" / "shop" / "deploy.lock").exists()

    def test_acquire_conflict_exits_1(self, runner: CliRunner, fleet) -> None:
        assert invoke(runner, "lock", "acquire", "first").exit_code == 0
        result = invoke(runner, "lock", "acquire", "second")
        assert result.exit_code == 1
        assert "already held" in result.output
        assert "--force" in result.output

    def test_acquire_force_overrides(self, runner: CliRunner, fleet) -> None:
        invoke(runner, "lock", "acquire", "first")
        result = invoke(runner, "lock", "acquire", "second", "--force")
        assert result.exit_code == 0

    def test_release_without_lock(self, runner: CliRunner, fleet) -> None:
        result = invoke(runner, "lock", "release")
        assert result.exit_code == 0
        assert "No deployment lock is held" in result.output

    def test_status_json(self, runner: CliRunner, fleet) -> None:
        invoke(runner, "--hosts", "web2", "lock", "acquire", "partial")
        result = invoke(runner, "-q", "lock", "status", "--json")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["summary"] == {"total": 3, "locked": 1, "unlocked": 2}
        locked = [h for h in data["hosts"] if h["locked"]]
        assert [h["host"] for h in locked] == ["web2"]
        assert locked[0]["message"] == "partial"

    def test_show_details(self, runner: CliRunner, fleet) -> None:
        invoke(runner, "lock", "acquire", "maintenance")
        result = invoke(runner, "--hosts", "web1", "lock", "show")
        assert result.exit_code == 0
        assert "web1" in result.output
        assert "maintenance" in result.output
        assert "web2" not in result.output

    def test_unreachable_host_fails_acquire(self, runner: CliRunner, project_dir: Path) -> None:
        @asynccontextmanager
        async def broken_fleet(config, hosts) -> AsyncIterator[list]:
            down = CommandResult("", "connection refused", 255)
            yield [
                ScriptedExecutor(h, {"CONVOY_LOCK_EOF": down} if h == "web3" else None)
                for h in hosts
            ]

        with patch(OPEN_FLEET, broken_fleet):
            result = invoke(runner, "lock", "acquire", "release")
        assert result.exit_code == 1
        assert "web3" in result.output


class TestAuditCommand:
    """Tests for convoy audit."""

    def test_audit_after_lock_cycle(self, runner: CliRunner, fleet) -> None:
        invoke(runner, "lock", "acquire", "audit me")
        invoke(runner, "lock", "release")
        result = invoke(runner, "audit")
        assert result.exit_code == 0
        assert "deployment_lock" in result.output
        assert "deployment_unlock" in result.output
        assert "Total: 6 entries" in result.output

    def test_audit_json_with_filter(self, runner: CliRunner, fleet) -> None:
        invoke(runner, "lock", "acquire", "audit me")
        invoke(runner, "lock", "release")
        result = invoke(runner, "-q", "audit", "--json", "--filter", "unlock")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["total"] == 3
        assert {e["host"] for e in data["entries"]} == {"web1", "web2", "web3"}

    def test_audit_by_host(self, runner: CliRunner, fleet) -> None:
        invoke(runner, "--hosts", "web1", "lock", "acquire", "one host")
        result = invoke(runner, "audit", "--by-host")
        assert result.exit_code == 0
        assert "No audit entries found" in result.output

    def test_audit_empty(self, runner: CliRunner, fleet) -> None:
        result = invoke(runner, "audit")
        assert result.exit_code == 0
        assert "No audit entries found" in result.output

    def test_invalid_status_rejected(self, runner: CliRunner, fleet) -> None:
        result = invoke(runner, "audit", "--status", "bogus")
        assert result.exit_code == 2

    def test_invalid_since_rejected(self, runner: CliRunner, fleet) -> None:
        result = invoke(runner, "audit", "--since", "yesterday")
        assert result.exit_code == 2


class ScriptedFleet:
    """open_fleet replacement backed by scripted executors."""

    def __init__(self) -> None:
        self.executors: dict[str, ScriptedExecutor] = {}

    @asynccontextmanager
    async def __call__(self, config, hosts) -> AsyncIterator[list]:
        executors = [self.executors.setdefault(h, ScriptedExecutor(h)) for h in hosts]
        yield executors


class TestDeployCommand:
    """Tests for convoy deploy."""

    def test_deploy_without_lock(self, runner: CliRunner, project_dir: Path) -> None:
        scripted = ScriptedFleet()
        with patch(OPEN_FLEET, scripted):
            result = invoke(runner, "deploy", "-y", "--no-lock")
        assert result.exit_code == 0, result.output
        assert "Deployed latest successfully" in result.output
        assert scripted.executors["web1"].ran("docker pull nginx:1.27")
        assert not scripted.executors["web1"].ran("CONVOY_LOCK_EOF")

    def test_deploy_takes_and_releases_lock(self, runner: CliRunner, project_dir: Path) -> None:
        scripted = ScriptedFleet()
        with patch(OPEN_FLEET, scripted):
            result = invoke(runner, "deploy", "-y", "--services", "worker")
        assert result.exit_code == 0, result.output
        web3 = scripted.executors["web3"]
        assert web3.ran("CONVOY_LOCK_EOF")
        assert web3.ran("docker pull shop/worker:1")
        assert not scripted.executors["web1"].ran("docker pull")

    def test_deploy_blocked_by_lock(self, runner: CliRunner, fleet) -> None:
        invoke(runner, "lock", "acquire", "frozen")
        result = invoke(runner, "deploy", "-y")
        assert result.exit_code == 1
        assert "Deployment lock held on" in result.output

    def test_deploy_declined(self, runner: CliRunner, project_dir: Path) -> None:
        scripted = ScriptedFleet()
        with patch(OPEN_FLEET, scripted):
            result = runner.invoke(app, ["--no-color", "deploy", "--no-lock"], input="n\n")
        assert result.exit_code == 0
        assert "Deployment cancelled" in result.output
        assert scripted.executors == {}

    def test_deploy_partial_failure_exits_1(self, runner: CliRunner, project_dir: Path) -> None:
        scripted = ScriptedFleet()
        scripted.executors["web2"] = ScriptedExecutor(
            "web2", {"docker pull nginx": CommandResult("", "manifest unknown", 1)}
        )
        with patch(OPEN_FLEET, scripted):
            result = invoke(runner, "deploy", "-y", "--no-lock")
        assert result.exit_code == 1
        assert "host failure" in result.output
        assert "manifest unknown" in result.output

    def test_deploy_json(self, runner: CliRunner, project_dir: Path) -> None:
        with patch(OPEN_FLEET, ScriptedFleet()):
            result = invoke(runner, "-q", "--json", "deploy", "-y", "--no-lock")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["outcome"] == "succeeded"
        assert data["version"] == "latest"


def image_listing(count: int) -> CommandResult:
    lines = [
        f"registry.example.com/shop-web:v{i}|id{i}|2026-01-0{i} 10:00:00 +0000 UTC"
        for i in range(1, count + 1)
    ]
    return CommandResult("\n".join(lines), "", 0)


class TestServicesCommands:
    """Tests for convoy services."""

    def test_help_lists_subcommands(self, runner: CliRunner) -> None:
        result = invoke(runner, "services", "--help")
        assert result.exit_code == 0
        for command in ("prune", "remove", "logs"):
            assert command in result.output

    def test_prune_uses_configured_retain(self, runner: CliRunner, project_dir: Path) -> None:
        scripted = ScriptedFleet()
        scripted.executors["web1"] = ScriptedExecutor("web1", {"images --format": image_listing(5)})
        with patch(OPEN_FLEET, scripted):
            result = invoke(runner, "services", "prune")
        assert result.exit_code == 0, result.output
        removed = [c for c in scripted.executors["web1"].commands if c.startswith("docker rmi")]
        assert removed == ["docker rmi id2", "docker rmi id1"]
        assert "Pruned 2 image(s) on 3 host(s)" in result.output

    def test_prune_json_with_retain(self, runner: CliRunner, project_dir: Path) -> None:
        scripted = ScriptedFleet()
        scripted.executors["web1"] = ScriptedExecutor("web1", {"images --format": image_listing(5)})
        with patch(OPEN_FLEET, scripted):
            result = invoke(runner, "-q", "--json", "services", "prune", "--retain", "4")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["retain"] == 4
        assert data["removed"]["web1"] == ["registry.example.com/shop-web:v1"]
        assert data["failed"] == {}

    def test_prune_failure_exits_1(self, runner: CliRunner, project_dir: Path) -> None:
        scripted = ScriptedFleet()
        scripted.executors["web2"] = ScriptedExecutor(
            "web2", {"images --format": CommandResult("", "daemon down", 1)}
        )
        with patch(OPEN_FLEET, scripted):
            result = invoke(runner, "services", "prune")
        assert result.exit_code == 1
        assert "Prune failed on" in result.output
        assert "daemon down" in result.output

    def test_remove_under_lock(self, runner: CliRunner, project_dir: Path) -> None:
        scripted = ScriptedFleet()
        listed = CommandResult("shop-web\n", "", 0)
        for host in ("web1", "web2"):
            scripted.executors[host] = ScriptedExecutor(host, {"ps -a --filter": listed})
        with patch(OPEN_FLEET, scripted):
            result = invoke(runner, "services", "remove", "web", "-y")
        assert result.exit_code == 0, result.output
        assert "web: removed from 2 host(s)" in result.output
        web1 = scripted.executors["web1"]
        assert web1.ran("CONVOY_LOCK_EOF")
        assert web1.ran("kamal-proxy remove shop-web")
        assert web1.ran("docker rm -f shop-web")
        assert not scripted.executors["web3"].ran("docker rm")

    def test_remove_absent_container(self, runner: CliRunner, project_dir: Path) -> None:
        scripted = ScriptedFleet()
        with patch(OPEN_FLEET, scripted):
            result = invoke(
                runner, "-q", "--json", "services", "remove", "worker", "--no-lock", "-y"
            )
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["services"]["worker"] == {"removed": [], "absent": ["web3"], "failed": {}}
        assert not scripted.executors["web3"].ran("CONVOY_LOCK_EOF")

    def test_remove_declined(self, runner: CliRunner, project_dir: Path) -> None:
        scripted = ScriptedFleet()
        with patch(OPEN_FLEET, scripted):
            result = runner.invoke(app, ["--no-color", "services", "remove", "web"], input="n\n")
        assert result.exit_code == 0
        assert "Removal cancelled" in result.output
        assert scripted.executors == {}

    def test_remove_unknown_service_exits_1(self, runner: CliRunner, project_dir: Path) -> None:
        result = invoke(runner, "services", "remove", "db", "-y")
        assert result.exit_code == 1
        assert "No services or hosts match" in result.output

    def test_logs_per_host(self, runner: CliRunner, project_dir: Path) -> None:
        scripted = ScriptedFleet()
        logs = CommandResult("GET /up 200\n", "", 0)
        scripted.executors["web1"] = ScriptedExecutor("web1", {"logs --tail 5 shop-web": logs})
        with patch(OPEN_FLEET, scripted):
            result = invoke(runner, "services", "logs", "web", "-n", "5")
        assert result.exit_code == 0, result.output
        assert "shop-web on web1" in result.output
        assert "GET /up 200" in result.output
        assert sorted(scripted.executors) == ["web1", "web2"]

    def test_logs_unknown_service_exits_1(self, runner: CliRunner, project_dir: Path) -> None:
        result = invoke(runner, "services", "logs", "db")
        assert result.exit_code == 1
        assert "Unknown service: db" in result.output


class TestProxyCommands:
    """Tests for convoy proxy."""

    def test_logs_on_proxy_hosts(self, runner: CliRunner, project_dir: Path) -> None:
        scripted = ScriptedFleet()
        with patch(OPEN_FLEET, scripted):
            result = invoke(runner, "-q", "--json", "proxy", "logs", "-n", "5")
        assert result.exit_code == 0
        assert sorted(json.loads(result.stdout)["logs"]) == ["web1", "web2"]
        assert scripted.executors["web1"].ran("docker logs --tail 5 convoy-proxy")
        assert "web3" not in scripted.executors

    def test_logs_without_proxy_hosts_exits_1(self, runner: CliRunner, project_dir: Path) -> None:
        result = invoke(runner, "--hosts", "web3", "proxy", "logs")
        assert result.exit_code == 1
        assert "proxied service" in result.output
