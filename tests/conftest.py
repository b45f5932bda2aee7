"""Shared test fixtures for convoy tests."""

import logging
import os
from collections.abc import AsyncIterator, Generator
from contextlib import asynccontextmanager
from pathlib import Path

import pytest
from rich.logging import RichHandler
from typer.testing import CliRunner

from convoy.config import ConvoyConfig
from convoy.errors import RemoteExecutionError
from convoy.services.identity import StaticIdentity
from convoy.services.ssh import CommandResult, LocalShellExecutor, PortForward

HOSTS = ["web1", "web2", "web3"]


@pytest.fixture
def runner() -> CliRunner:
    """Create CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def reset_logging() -> Generator[None, None, None]:
    """Drop handlers installed by configure_logging (their streams close with the test)."""
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)


@pytest.fixture
def identity() -> StaticIdentity:
    return StaticIdentity("alice", 4242)


class FailingExecutor(LocalShellExecutor):
    """Local executor that fails commands containing ``fail_on``.

    With ``unreachable=True`` the failure is a transport error, otherwise a
    non-zero exit.
    """

    def __init__(self, host: str, root: Path, fail_on: str, unreachable: bool = False) -> None:
        super().__init__(host, root)
        self.fail_on = fail_on
        self.unreachable = unreachable

    async def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        if self.fail_on in command:
            if self.unreachable:
                raise RemoteExecutionError(self.host, "ssh failed: connection refused")
            return CommandResult("", "permission denied", 1)
        return await super().execute(command, timeout)


class ClosingForward:
    """Port forward that records being closed."""

    def __init__(self, log: list[str], host: str) -> None:
        self.log = log
        self.host = host

    async def close(self) -> None:
        self.log.append(f"close-forward:{self.host}")


class ScriptedExecutor:
    """Fake executor returning canned results and recording commands.

    Responses are matched by substring in insertion order; unmatched commands
    succeed with empty output, and ``inspect`` polls report ``running``.
    """

    def __init__(self, host: str, responses: dict[str, CommandResult] | None = None) -> None:
        self._host = host
        self.responses = responses or {}
        self.commands: list[str] = []
        self.events: list[str] = []
        self.closed = False

    @property
    def host(self) -> str:
        return self._host

    async def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        self.commands.append(command)
        for needle, result in self.responses.items():
            if needle in command:
                return result
        if "inspect" in command and "State.Status" in command:
            return CommandResult("running\n", "", 0)
        return CommandResult("", "", 0)

    async def start_interactive_session(self, command: str) -> int:
        self.commands.append(command)
        return 0

    async def open_reverse_forward(self, local_port: int, remote_port: int) -> PortForward:
        self.events.append(f"open-forward:{remote_port}")
        return ClosingForward(self.events, self._host)

    async def close(self) -> None:
        self.closed = True

    def ran(self, needle: str) -> bool:
        return any(needle in c for c in self.commands)


@pytest.fixture
def host_roots(tmp_path: Path) -> dict[str, Path]:
    """One directory per host, standing in for its login directory."""
    roots = {}
    for host in HOSTS:
        root = tmp_path / "hosts" / host
        root.mkdir(parents=True)
        roots[host] = root
    return roots


@pytest.fixture
def local_fleet(host_roots: dict[str, Path]) -> list[LocalShellExecutor]:
    return [LocalShellExecutor(host, root) for host, root in host_roots.items()]


def fake_open_fleet(host_roots: dict[str, Path]):
    """Replacement for ``open_fleet`` that connects to local host dirs."""

    @asynccontextmanager
    async def open_fleet(config: ConvoyConfig, hosts: list[str]) -> AsyncIterator[list]:
        yield [LocalShellExecutor(host, host_roots[host]) for host in hosts]

    return open_fleet


CONFIG_TOML = """\
[project]
name = "shop"

[builder]
engine = "docker"

[builder.registry]
type = "remote"
server = "registry.example.com"

[services.web]
image = "nginx:1.27"
hosts = ["web1", "web2"]
ports = ["8080:80"]

[services.web.proxy]
enabled = true
hosts = ["shop.example.com"]

[services.worker]
image = "shop/worker:1"
hosts = ["web3"]
"""


@pytest.fixture
def project_dir(tmp_path: Path) -> Generator[Path, None, None]:
    """Project directory with a config file; cwd is changed into it."""
    project = tmp_path / "project"
    convoy_dir = project / ".convoy"
    convoy_dir.mkdir(parents=True)
    (convoy_dir / "config.toml").write_text(CONFIG_TOML)

    original_cwd = os.getcwd()
    os.chdir(project)
    try:
        yield project
    finally:
        os.chdir(original_cwd)
