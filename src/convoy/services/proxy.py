"""Reverse proxy management on a host.

Each host that serves a proxied service runs one kamal-proxy container on the
convoy network. Services are routed by executing ``kamal-proxy deploy`` inside
that container.
"""

import asyncio
import logging
import shlex

from ..config import ContainerEngine, ProxyDefaults, ServiceProxyConfig
from ..constants import (
    CONTAINER_LOG_TAIL_LINES,
    NETWORK_NAME,
    PROXY_CONTAINER_NAME,
    PROXY_READY_MAX_ATTEMPTS,
)
from ..errors import DeploymentError
from .containers import ensure_network
from .ssh import RemoteExecutor, run_checked

logger = logging.getLogger(__name__)

# Ports kamal-proxy listens on inside its container
INTERNAL_HTTP_PORT = 80
INTERNAL_HTTPS_PORT = 443
CONFIG_VOLUME = "convoy-proxy-config"


def deploy_args(target: str, settings: ServiceProxyConfig) -> list[str]:
    """Arguments for ``kamal-proxy deploy``."""
    args = [f"--target={target}"]
    args += [f"--host={host}" for host in settings.hosts]
    if settings.ssl:
        args.append("--tls")
    if settings.healthcheck_path:
        args.append(f"--health-check-path={settings.healthcheck_path}")
    return args


class ProxyCommands:
    """kamal-proxy operations on one host."""

    def __init__(
        self,
        executor: RemoteExecutor,
        engine: ContainerEngine,
        settings: ProxyDefaults | None = None,
        retry_delay: float = 1.0,
    ) -> None:
        self.executor = executor
        self.engine_type = engine
        self.engine = engine.value
        self.settings = settings or ProxyDefaults()
        self.retry_delay = retry_delay

    async def is_running(self) -> bool:
        result = await self.executor.execute(
            f'{self.engine} ps --filter "name=^{PROXY_CONTAINER_NAME}$" --format "{{{{.Names}}}}"'
            f' | grep -q "{PROXY_CONTAINER_NAME}"'
        )
        return result.success

    async def running_image(self) -> str | None:
        """Image reference of the proxy container, if any."""
        result = await self.executor.execute(
            f"{self.engine} inspect {PROXY_CONTAINER_NAME}"
            " --format '{{.Config.Image}}' 2>/dev/null"
        )
        image = result.stdout.strip()
        if not result.success or not image:
            return None
        return image

    async def _run(self) -> None:
        await run_checked(
            self.executor,
            f"{self.engine} pull {self.settings.image}",
            "proxy pull",
            DeploymentError,
        )
        await self.executor.execute(
            f"{self.engine} rm -f {PROXY_CONTAINER_NAME} 2>/dev/null || true"
        )
        command = (
            f"{self.engine} run --name {PROXY_CONTAINER_NAME} --network {NETWORK_NAME}"
            f" --detach --restart unless-stopped"
            f" --volume {CONFIG_VOLUME}:/home/kamal-proxy/.config/kamal-proxy"
            f" -p {self.settings.http_port}:{INTERNAL_HTTP_PORT}"
            f" -p {self.settings.https_port}:{INTERNAL_HTTPS_PORT}"
            f" {self.settings.image}"
            f" kamal-proxy run --http-port {INTERNAL_HTTP_PORT} --https-port {INTERNAL_HTTPS_PORT}"
        )
        await run_checked(self.executor, command, "proxy run", DeploymentError)

    async def _wait_ready(self) -> None:
        host = self.executor.host
        for attempt in range(PROXY_READY_MAX_ATTEMPTS):
            result = await self.executor.execute(
                f"{self.engine} inspect {PROXY_CONTAINER_NAME} --format '{{{{.State.Status}}}}'"
            )
            status = result.stdout.strip()
            if result.success and status == "running":
                return
            if attempt % 5 == 0:
                logger.info(f"{host}: waiting for proxy (status: {status or 'unknown'})")
            await asyncio.sleep(self.retry_delay)

        logs = await self.executor.execute(
            f"{self.engine} logs --tail {CONTAINER_LOG_TAIL_LINES} {PROXY_CONTAINER_NAME} 2>&1"
        )
        raise DeploymentError(f"{host}: proxy did not become ready. Logs: {logs.stdout.strip()}")

    async def boot(self) -> str:
        """Make sure the proxy is running; start or (re)create it as needed.

        Returns:
            "running" if it already ran with the configured image, "refreshed"
            if it was recreated with a new image, otherwise "started"
        """
        await ensure_network(self.executor, self.engine_type)
        if await self.is_running():
            image = await self.running_image()
            if image is None or image == self.settings.image:
                logger.debug(f"{self.executor.host}: proxy already running")
                return "running"
            logger.info(f"{self.executor.host}: refreshing proxy {image} -> {self.settings.image}")
            await self._run()
            await self._wait_ready()
            return "refreshed"

        started = await self.executor.execute(f"{self.engine} start {PROXY_CONTAINER_NAME}")
        if not started.success:
            await self._run()
        await self._wait_ready()
        logger.info(f"{self.executor.host}: proxy started")
        return "started"

    async def deploy_service(self, service: str, target: str, settings: ServiceProxyConfig) -> None:
        """Route the service's hosts to ``target`` (container:port)."""
        args = " ".join(shlex.quote(a) for a in [service, *deploy_args(target, settings)])
        await run_checked(
            self.executor,
            f"{self.engine} exec {PROXY_CONTAINER_NAME} kamal-proxy deploy {args}",
            f"proxy deploy of {service}",
            DeploymentError,
        )


    async def logs(self, lines: int = CONTAINER_LOG_TAIL_LINES) -> str:
        result = await run_checked(
            self.executor,
            f"{self.engine} logs --tail {lines} {PROXY_CONTAINER_NAME} 2>&1",
            "proxy logs",
        )
        return result.stdout

    async def remove_service(self, service: str) -> None:
        """Stop routing ``service``; a missing route or proxy is ignored."""
        result = await self.executor.execute(
            f"{self.engine} exec {PROXY_CONTAINER_NAME} kamal-proxy remove {shlex.quote(service)}"
        )
        if not result.success:
            logger.debug(f"{self.executor.host}: no route removed for {service}")
