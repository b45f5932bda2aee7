"""Deployment pipeline.

Stages, in order:

1. configuration: load and validate config (fatal)
2. plan: select services x hosts, ask for confirmation (fatal / cancel)
3. version + build: resolve the tag, build and push images (fatal)
4. connect: open host connections and registry port forwards
5. proxy: boot the proxy on hosts serving proxied services
6. rollout: replace service containers host by host
7. routing: point the proxy at the new containers
8. prune: remove old images (warnings only)

Fatal stages stop the run. Host failures in later stages are collected and
make the run ``partial``; they never stop sibling hosts. Connections and port
forwards are released on every exit path.
"""

import logging
from collections.abc import Callable, Sequence
from contextlib import AbstractAsyncContextManager, AsyncExitStack
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ..config import ConvoyConfig
from ..constants import CONTAINER_START_RETRY_DELAY
from ..errors import ConvoyError
from ..models import AuditEntry, AuditStatus, Err, Ok, Outcome, partition
from ..services.containers import ContainerDeployer, container_name
from ..services.engine import ImageBuilder, LocalEngine
from ..services.git import GitError
from ..services.prune import ImagePruner, PruneResult
from ..services.proxy import ProxyCommands
from ..services.ssh import PortForward, RemoteExecutor
from .audit_trail import AuditTrail
from .plan import DeploymentPlan, build_plan
from .pool import ConcurrencyPool
from .version import resolve_version_tag

logger = logging.getLogger(__name__)

ConnectFactory = Callable[
    [ConvoyConfig, list[str]], AbstractAsyncContextManager[list[RemoteExecutor]]
]


class PipelineOutcome(str, Enum):
    """Overall result of a deployment."""

    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Stage(str, Enum):
    CONFIGURATION = "configuration"
    PLAN = "plan"
    VERSION = "version"
    BUILD = "build"
    CONNECT = "connect"
    PROXY = "proxy"
    ROLLOUT = "rollout"
    ROUTING = "routing"
    PRUNE = "prune"


@dataclass
class DeployOptions:
    """Options of one ``convoy deploy`` invocation."""

    build: bool = False
    no_cache: bool = False
    yes: bool = False
    version: str | None = None
    service_patterns: str | None = None
    host_patterns: str | None = None


@dataclass
class StageOutcomes:
    """Per-host outcomes of one host-level stage."""

    stage: Stage
    label: str
    outcomes: list[Outcome[Any]] = field(default_factory=list)

    @property
    def failures(self) -> list[Err]:
        return partition(self.outcomes)[1]


@dataclass
class PipelineResult:
    """Everything a caller needs to report a deployment."""

    outcome: PipelineOutcome = PipelineOutcome.SUCCEEDED
    version: str | None = None
    plan: DeploymentPlan | None = None
    failed_stage: Stage | None = None
    stages: list[StageOutcomes] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    suppressed_errors: list[str] = field(default_factory=list)

    @property
    def host_failures(self) -> list[tuple[StageOutcomes, Err]]:
        return [(stage, err) for stage in self.stages for err in stage.failures]

    @property
    def exit_code(self) -> int:
        return 0 if self.outcome in (PipelineOutcome.SUCCEEDED, PipelineOutcome.CANCELLED) else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "version": self.version,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "stages": [
                {
                    "stage": s.stage.value,
                    "label": s.label,
                    "succeeded": [o.host for o in s.outcomes if isinstance(o, Ok)],
                    "failed": {e.host: e.message for e in s.failures},
                }
                for s in self.stages
            ],
            "warnings": self.warnings,
            "errors": self.errors,
        }


class DeploymentPipeline:
    """Runs a deployment end to end.

    Collaborators are injected so the pipeline can run against scripted
    executors and builders.

    Args:
        load_config: Returns the validated configuration
        connect: Async context manager factory yielding one executor per host
        engine_factory: Builds the local image builder for a config
        confirm: Called with the plan; returning False cancels the run
        pool: Concurrency pool for fan-outs (default sized from config)
        project_root: Directory of the project (git and build context root)
        retry_delay: Delay between container readiness polls
    """

    def __init__(
        self,
        load_config: Callable[[], ConvoyConfig],
        connect: ConnectFactory,
        *,
        engine_factory: Callable[[ConvoyConfig], ImageBuilder] | None = None,
        confirm: Callable[[DeploymentPlan], bool] | None = None,
        pool: ConcurrencyPool | None = None,
        project_root: Path | None = None,
        retry_delay: float = CONTAINER_START_RETRY_DELAY,
    ) -> None:
        self.load_config = load_config
        self.connect = connect
        self.engine_factory = engine_factory or (
            lambda config: LocalEngine(config.builder, project_root)
        )
        self.confirm = confirm
        self.pool = pool
        self.project_root = project_root
        self.retry_delay = retry_delay

    def _fail(
        self, result: PipelineResult, stage: Stage, error: BaseException | str
    ) -> PipelineResult:
        logger.error(f"Deployment failed at {stage.value}: {error}")
        result.outcome = PipelineOutcome.FAILED
        result.failed_stage = stage
        result.errors.append(str(error))
        return result

    async def run(self, options: DeployOptions) -> PipelineResult:
        result = PipelineResult()

        try:
            config = self.load_config()
        except ConvoyError as e:
            return self._fail(result, Stage.CONFIGURATION, e)
        pool = self.pool or ConcurrencyPool(config.pool.max_concurrent)

        plan = build_plan(config, options.service_patterns, options.host_patterns)
        result.plan = plan
        if plan.empty:
            return self._fail(result, Stage.PLAN, "No services or hosts match the given filters")
        if not options.yes and self.confirm is not None and not self.confirm(plan):
            logger.info("Deployment cancelled by operator")
            result.outcome = PipelineOutcome.CANCELLED
            return result

        try:
            if options.build:
                version = resolve_version_tag(options.version, self.project_root)
            else:
                version = options.version or "latest"
            images = {s.name: config.image_for(s.name, version) for s in plan.services}
        except (ConvoyError, GitError) as e:
            return self._fail(result, Stage.VERSION, e)
        result.version = version

        if options.build and plan.needs_build:
            try:
                await self._build(config, plan, version, options.no_cache)
            except ConvoyError as e:
                return self._fail(result, Stage.BUILD, e)

        async with AsyncExitStack() as stack:
            try:
                executors = await stack.enter_async_context(self.connect(config, plan.hosts))
            except ConvoyError as e:
                return self._fail(result, Stage.CONNECT, e)
            by_host = {ex.host: ex for ex in executors}
            audit = AuditTrail(executors, config.project.name, pool, self.project_root)

            if plan.needs_build and config.builder.registry.is_local():
                await self._open_forwards(config, executors, pool, stack, result)

            proxy_ok = await self._boot_proxies(config, plan, by_host, pool, audit, result)
            for service in plan.services:
                image = images[service.name]
                deployed = await self._rollout(
                    config, service.name, service.hosts, image, by_host, pool, audit, result
                )
                if service.proxied:
                    routable = [h for h in deployed if h in proxy_ok]
                    await self._route(config, service.name, routable, by_host, pool, audit, result)
            await self._prune(config, plan, executors, pool, audit, result)

        if result.host_failures:
            result.outcome = PipelineOutcome.PARTIAL
        return result

    async def _build(
        self, config: ConvoyConfig, plan: DeploymentPlan, version: str, no_cache: bool
    ) -> None:
        engine = self.engine_factory(config)
        await engine.ensure_registry()
        for service in plan.services:
            build = config.services[service.name].build
            if build is None:
                continue
            tags = [config.image_for(service.name, tag) for tag in (version, "latest")]
            await engine.build(tags, build, no_cache=no_cache)
            for tag in tags:
                await engine.push(tag)

    async def _open_forwards(
        self,
        config: ConvoyConfig,
        executors: Sequence[RemoteExecutor],
        pool: ConcurrencyPool,
        stack: AsyncExitStack,
        result: PipelineResult,
    ) -> None:
        port = config.builder.registry.port
        outcomes = await pool.execute_host_operations(
            [(ex.host, lambda ex=ex: ex.open_reverse_forward(port, port)) for ex in executors]
        )
        for outcome in outcomes:
            if isinstance(outcome, Ok):
                stack.push_async_callback(
                    self._release_forward, outcome.host, outcome.value, result
                )
            else:
                warning = f"{outcome.host}: registry port forward failed: {outcome.message}"
                logger.warning(warning)
                result.warnings.append(warning)

    async def _release_forward(
        self, host: str, forward: PortForward, result: PipelineResult
    ) -> None:
        try:
            await forward.close()
        except Exception as e:
            logger.warning(f"{host}: failed to close registry port forward: {e}")
            result.suppressed_errors.append(f"{host}: {e}")

    async def _boot_proxies(
        self,
        config: ConvoyConfig,
        plan: DeploymentPlan,
        by_host: dict[str, RemoteExecutor],
        pool: ConcurrencyPool,
        audit: AuditTrail,
        result: PipelineResult,
    ) -> set[str]:
        hosts = plan.proxy_hosts
        if not hosts:
            return set()
        engine = config.builder.engine

        async def boot(host: str) -> str:
            return await ProxyCommands(by_host[host], engine, config.proxy, self.retry_delay).boot()

        outcomes = await pool.execute_host_operations([(h, lambda h=h: boot(h)) for h in hosts])
        result.stages.append(StageOutcomes(Stage.PROXY, "proxy", outcomes))
        oks, errs = partition(outcomes)
        if oks:
            await audit.log(
                AuditEntry(
                    status=AuditStatus.SUCCESS, action="proxy_boot", message="Proxy running"
                ),
                hosts=[o.host for o in oks],
            )
        for err in errs:
            await audit.log(
                AuditEntry(status=AuditStatus.FAILED, action="proxy_boot", message=err.message),
                hosts=[err.host],
            )
        return {o.host for o in oks}

    async def _rollout(
        self,
        config: ConvoyConfig,
        name: str,
        hosts: list[str],
        image: str,
        by_host: dict[str, RemoteExecutor],
        pool: ConcurrencyPool,
        audit: AuditTrail,
        result: PipelineResult,
    ) -> list[str]:
        """Deploy one service to its hosts; returns the hosts that succeeded."""
        service = config.services[name]
        await audit.log(
            AuditEntry(
                status=AuditStatus.STARTED,
                action="service_deploy",
                message=f"Deploying {name}",
                details={"service": name, "image": image},
            ),
            hosts=hosts,
        )

        async def deploy(host: str) -> str:
            deployer = ContainerDeployer(
                by_host[host], config.builder.engine, retry_delay=self.retry_delay
            )
            return await deployer.deploy(config.project.name, name, service, image)

        outcomes = await pool.execute_host_operations([(h, lambda h=h: deploy(h)) for h in hosts])
        result.stages.append(StageOutcomes(Stage.ROLLOUT, name, outcomes))
        oks, errs = partition(outcomes)
        if oks:
            await audit.log(
                AuditEntry(
                    status=AuditStatus.SUCCESS,
                    action="service_deploy",
                    message=f"Deployed {name}",
                    details={"service": name, "image": image},
                ),
                hosts=[o.host for o in oks],
            )
        for err in errs:
            logger.error(f"{err.host}: deployment of {name} failed: {err.message}")
            await audit.log(
                AuditEntry(
                    status=AuditStatus.FAILED,
                    action="service_deploy",
                    message=f"Deployment of {name} failed: {err.message}",
                    details={"service": name, "image": image},
                ),
                hosts=[err.host],
            )
        return [o.host for o in oks]

    async def _route(
        self,
        config: ConvoyConfig,
        name: str,
        hosts: list[str],
        by_host: dict[str, RemoteExecutor],
        pool: ConcurrencyPool,
        audit: AuditTrail,
        result: PipelineResult,
    ) -> None:
        if not hosts:
            return
        service = config.services[name]
        port = service.app_port()
        if port is None:
            warning = f"{name}: proxy enabled but no app port configured; routing skipped"
            logger.warning(warning)
            result.warnings.append(warning)
            return
        container = container_name(config.project.name, name)
        target = f"{container}:{port}"

        async def route(host: str) -> None:
            proxy = ProxyCommands(
                by_host[host], config.builder.engine, config.proxy, self.retry_delay
            )
            await proxy.deploy_service(container, target, service.proxy)

        outcomes = await pool.execute_host_operations([(h, lambda h=h: route(h)) for h in hosts])
        result.stages.append(StageOutcomes(Stage.ROUTING, name, outcomes))
        oks, errs = partition(outcomes)
        if oks:
            await audit.log(
                AuditEntry(
                    status=AuditStatus.SUCCESS,
                    action="proxy_deploy",
                    message=f"Routed {', '.join(service.proxy.hosts) or name} to {target}",
                ),
                hosts=[o.host for o in oks],
            )
        for err in errs:
            await audit.log(
                AuditEntry(status=AuditStatus.FAILED, action="proxy_deploy", message=err.message),
                hosts=[err.host],
            )

    async def _prune(
        self,
        config: ConvoyConfig,
        plan: DeploymentPlan,
        executors: Sequence[RemoteExecutor],
        pool: ConcurrencyPool,
        audit: AuditTrail,
        result: PipelineResult,
    ) -> None:
        retain = plan.retain
        engine = config.builder.engine
        outcomes: list[Outcome[PruneResult]] = await pool.execute_host_operations(
            [
                (ex.host, lambda ex=ex: ImagePruner(ex, engine, config.project.name).prune(retain))
                for ex in executors
            ]
        )
        for outcome in outcomes:
            if isinstance(outcome, Err):
                warning = f"{outcome.host}: image prune failed: {outcome.message}"
                logger.warning(warning)
                result.warnings.append(warning)
            elif outcome.value.removed:
                await audit.log(
                    AuditEntry(
                        status=AuditStatus.SUCCESS,
                        action="image_prune",
                        message=f"Removed {len(outcome.value.removed)} old image(s)",
                        details={"retain": retain},
                    ),
                    hosts=[outcome.host],
                )

