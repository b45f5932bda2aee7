"""Remote command execution over the system ssh client.

Every host in the fleet is reached through a ``RemoteExecutor``. The SSH
implementation shells out to ``ssh`` with asyncio subprocesses and
multiplexes commands over one ControlMaster connection per host. Hosts named
``localhost`` run commands with a local ``sh`` instead.
"""

import asyncio
import logging
import os
import tempfile
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ..config import ConvoyConfig, SSHConfig
from ..constants import (
    GRACEFUL_SHUTDOWN_TIMEOUT,
    PORT_FORWARD_SETTLE_SECONDS,
    TIMEOUT_EXIT_CODE,
)
from ..errors import PortForwardError, RemoteExecutionError

logger = logging.getLogger(__name__)

LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})

# ssh exits with 255 when the connection itself failed
SSH_CONNECTION_FAILED = 255


@dataclass(frozen=True)
class CommandResult:
    """Result of one command run on a host."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class PortForward(Protocol):
    """An open port forward that must be closed by its owner."""

    async def close(self) -> None: ...


class RemoteExecutor(Protocol):
    """Command channel to one host."""

    @property
    def host(self) -> str: ...

    async def execute(self, command: str, timeout: float | None = None) -> CommandResult: ...

    async def start_interactive_session(self, command: str) -> int: ...

    async def open_reverse_forward(self, local_port: int, remote_port: int) -> PortForward: ...

    async def close(self) -> None: ...


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    """Stop a subprocess: SIGTERM, then SIGKILL after a grace period."""
    if proc.returncode is not None:
        return
    proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=GRACEFUL_SHUTDOWN_TIMEOUT)
    except TimeoutError:
        proc.kill()
        await proc.wait()


async def run_process(
    args: list[str],
    host: str,
    timeout: float | None = None,
    cwd: Path | None = None,
) -> CommandResult:
    """Run a subprocess to completion and capture its output.

    Args:
        args: Program and arguments
        host: Host the command targets (for error messages)
        timeout: Seconds before the process is killed
        cwd: Working directory

    Returns:
        CommandResult; a timed out process yields exit code 124

    Raises:
        RemoteExecutionError: If the program cannot be started
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise RemoteExecutionError(host, f"failed to start {args[0]}: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        await _terminate(proc)
        return CommandResult("", f"command timed out after {timeout}s", TIMEOUT_EXIT_CODE)
    except asyncio.CancelledError:
        await _terminate(proc)
        raise

    return CommandResult(
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
        exit_code=proc.returncode if proc.returncode is not None else 0,
    )


async def run_checked(
    executor: "RemoteExecutor",
    command: str,
    what: str,
    error_cls: type[Exception] = RemoteExecutionError,
    timeout: float | None = None,
) -> CommandResult:
    """Run a command and raise ``error_cls`` if it exits non-zero."""
    result = await executor.execute(command, timeout=timeout)
    if not result.success:
        detail = (result.stderr or result.stdout).strip() or f"exit code {result.exit_code}"
        if error_cls is RemoteExecutionError:
            raise RemoteExecutionError(executor.host, f"{what} failed: {detail}")
        raise error_cls(f"{executor.host}: {what} failed: {detail}")
    return result


class NullForward:
    """Forward placeholder for hosts that share the local network."""

    async def close(self) -> None:
        return None


class SSHReverseForward:
    """Reverse tunnel: remote ``localhost:remote_port`` -> local ``localhost:local_port``."""

    def __init__(self, executor: "SSHExecutor", local_port: int, remote_port: int) -> None:
        self.executor = executor
        self.local_port = local_port
        self.remote_port = remote_port
        self._process: asyncio.subprocess.Process | None = None

    async def start(self) -> None:
        """Open the tunnel.

        The ssh process is considered established when it is still alive
        after a short settle period (``ExitOnForwardFailure`` makes it exit
        early when the remote port cannot be bound).

        Raises:
            PortForwardError: If ssh exits or cannot be started
        """
        host = self.executor.host
        args = [
            *self.executor.ssh_args(multiplex=False),
            "-N",
            "-o",
            "ExitOnForwardFailure=yes",
            "-R",
            f"{self.remote_port}:localhost:{self.local_port}",
            self.executor.target,
        ]
        logger.debug(f"{host}: opening reverse forward {self.remote_port} -> {self.local_port}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise PortForwardError(f"{host}: failed to start ssh: {e}") from e

        try:
            await asyncio.wait_for(proc.wait(), timeout=PORT_FORWARD_SETTLE_SECONDS)
        except TimeoutError:
            self._process = proc
            logger.info(f"{host}: reverse forward established on port {self.remote_port}")
            return

        stderr = (await proc.stderr.read()).decode(errors="replace") if proc.stderr else ""
        raise PortForwardError(f"{host}: port forward exited: {stderr.strip() or proc.returncode}")

    async def close(self) -> None:
        if self._process is None:
            return
        proc, self._process = self._process, None
        await _terminate(proc)
        logger.debug(f"{self.executor.host}: reverse forward on port {self.remote_port} closed")


class SSHExecutor:
    """Runs commands on a remote host through the ssh client."""

    def __init__(self, host: str, settings: SSHConfig, control_dir: Path | None = None) -> None:
        self._host = host
        self.settings = settings
        self.control_dir = control_dir

    @property
    def host(self) -> str:
        return self._host

    @property
    def target(self) -> str:
        return f"{self.settings.user}@{self._host}" if self.settings.user else self._host

    def ssh_args(self, multiplex: bool = True) -> list[str]:
        """Common ssh arguments (everything before the destination)."""
        args = [
            "ssh",
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={self.settings.connect_timeout}",
            "-p",
            str(self.settings.port),
        ]
        if self.settings.key:
            args += ["-i", os.path.expanduser(self.settings.key)]
        if multiplex and self.control_dir is not None:
            args += [
                "-o",
                "ControlMaster=auto",
                "-o",
                f"ControlPath={self.control_dir / '%C'}",
                "-o",
                "ControlPersist=60",
            ]
        elif not multiplex:
            args += ["-o", "ControlMaster=no", "-o", "ControlPath=none"]
        for option in self.settings.options:
            args += ["-o", option]
        return args

    async def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        """Run a shell command on the host.

        Raises:
            RemoteExecutionError: If ssh cannot be started or cannot connect
        """
        effective_timeout = timeout if timeout is not None else self.settings.command_timeout
        logger.debug(f"{self._host}$ {command}")
        result = await run_process(
            [*self.ssh_args(), self.target, command], self._host, timeout=effective_timeout
        )
        if result.exit_code == SSH_CONNECTION_FAILED:
            raise RemoteExecutionError(self._host, f"ssh failed: {result.stderr.strip()}")
        return result

    async def start_interactive_session(self, command: str) -> int:
        """Run a command with a TTY attached to the operator's terminal."""
        proc = await asyncio.create_subprocess_exec(*self.ssh_args(), "-t", self.target, command)
        return await proc.wait()

    async def open_reverse_forward(self, local_port: int, remote_port: int) -> PortForward:
        forward = SSHReverseForward(self, local_port, remote_port)
        await forward.start()
        return forward

    async def close(self) -> None:
        """Shut down the multiplexed master connection, if any."""
        if self.control_dir is None:
            return
        result = await run_process(
            [*self.ssh_args(), "-O", "exit", self.target], self._host, timeout=5
        )
        if not result.success:
            logger.debug(f"{self._host}: no control master to close ({result.stderr.strip()})")


class LocalShellExecutor:
    """Runs commands with ``sh -c`` in a local directory.

    Used for fleet entries that point at this machine; the directory plays
    the role of the remote login directory.
    """

    def __init__(self, host: str = "localhost", root: Path | None = None) -> None:
        self._host = host
        self.root = root or Path.home()

    @property
    def host(self) -> str:
        return self._host

    async def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        logger.debug(f"{self._host}$ {command}")
        return await run_process(["sh", "-c", command], self._host, timeout=timeout, cwd=self.root)

    async def start_interactive_session(self, command: str) -> int:
        proc = await asyncio.create_subprocess_exec("sh", "-c", command, cwd=self.root)
        return await proc.wait()

    async def open_reverse_forward(self, local_port: int, remote_port: int) -> PortForward:
        if local_port != remote_port:
            raise PortForwardError(
                f"{self._host}: cannot map local port {local_port} to {remote_port}"
                " on the same machine"
            )
        return NullForward()

    async def close(self) -> None:
        return None


def connect_hosts(
    config: ConvoyConfig,
    hosts: Iterable[str],
    control_dir: Path | None = None,
) -> list[RemoteExecutor]:
    """Create one executor per host (no network traffic happens here)."""
    executors: list[RemoteExecutor] = []
    for host in hosts:
        if host in LOCAL_HOSTS:
            executors.append(LocalShellExecutor(host))
        else:
            executors.append(SSHExecutor(host, config.ssh, control_dir))
    return executors


async def close_all(executors: Iterable[RemoteExecutor]) -> None:
    """Close executors, logging (not raising) individual failures."""
    for executor in executors:
        try:
            await executor.close()
        except Exception as e:
            logger.debug(f"{executor.host}: failed to close connection: {e}")


@asynccontextmanager
async def open_fleet(
    config: ConvoyConfig, hosts: Iterable[str]
) -> AsyncIterator[list[RemoteExecutor]]:
    """Executors for the given hosts, closed on exit."""
    with tempfile.TemporaryDirectory(prefix="convoy-ssh-") as control_dir:
        executors = connect_hosts(config, hosts, Path(control_dir))
        try:
            yield executors
        finally:
            await close_all(executors)
