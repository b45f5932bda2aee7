"""Helpers shared by fleet commands."""

from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass

import typer

from ..config import ConvoyConfig, filter_by_patterns, load_config
from ..core.audit_trail import AuditTrail
from ..core.lock_manager import DeploymentLock
from ..core.pool import ConcurrencyPool
from ..errors import ConfigError
from ..output import OutputContext
from ..services.ssh import RemoteExecutor, open_fleet


def load_config_or_exit(ctx: OutputContext) -> ConvoyConfig:
    """Load config, printing the error and exiting 1 on failure."""
    try:
        return load_config(ctx.config_path)
    except ConfigError as e:
        ctx.error(str(e))
        raise typer.Exit(1) from None


def select_hosts(config: ConvoyConfig, ctx: OutputContext) -> list[str]:
    """Fleet hosts matching the global ``--hosts`` filter; exits 1 if none."""
    hosts = filter_by_patterns(config.all_hosts(), ctx.host_patterns)
    if not hosts:
        ctx.error("No hosts match the configuration and --hosts filter")
        raise typer.Exit(1)
    return hosts


@dataclass
class FleetSession:
    """Open host connections plus the pool and audit trail over them."""

    executors: list[RemoteExecutor]
    pool: ConcurrencyPool
    audit: AuditTrail

    def executor(self, host: str) -> RemoteExecutor:
        return next(ex for ex in self.executors if ex.host == host)

    def lock(self) -> DeploymentLock:
        return DeploymentLock(self.executors, self.audit.project, pool=self.pool, audit=self.audit)


@asynccontextmanager
async def fleet_session(config: ConvoyConfig, hosts: list[str]) -> AsyncIterator[FleetSession]:
    """Connections to ``hosts`` for the duration of the block."""
    pool = ConcurrencyPool(config.pool.max_concurrent)
    async with open_fleet(config, hosts) as executors:
        executors = list(executors)
        yield FleetSession(executors, pool, AuditTrail(executors, config.project.name, pool))


@asynccontextmanager
async def fleet_lock(config: ConvoyConfig, hosts: list[str]) -> AsyncIterator[DeploymentLock]:
    """Deployment lock over freshly opened host connections."""
    async with fleet_session(config, hosts) as session:
        yield session.lock()


@asynccontextmanager
async def fleet_audit(config: ConvoyConfig, hosts: list[str]) -> AsyncIterator[AuditTrail]:
    """Audit trail over freshly opened host connections."""
    async with fleet_session(config, hosts) as session:
        yield session.audit


def connect_fleet(
    config: ConvoyConfig, hosts: list[str]
) -> AbstractAsyncContextManager[list[RemoteExecutor]]:
    """Connection factory handed to the deployment pipeline."""
    return open_fleet(config, hosts)
