"""Container rollout on a single host."""

import asyncio
import logging
import shlex

from ..config import ContainerEngine, ServiceConfig
from ..constants import (
    CONTAINER_LOG_TAIL_LINES,
    CONTAINER_START_MAX_ATTEMPTS,
    CONTAINER_START_RETRY_DELAY,
    NETWORK_NAME,
)
from ..errors import DeploymentError
from .ssh import RemoteExecutor, run_checked

logger = logging.getLogger(__name__)


def container_name(project: str, service: str) -> str:
    return f"{project}-{service}"


async def ensure_network(executor: RemoteExecutor, engine: ContainerEngine) -> None:
    """Create the shared container network if the host lacks it."""
    await executor.execute(f"{engine.value} network create {NETWORK_NAME} 2>/dev/null || true")


def is_local_registry_image(image: str) -> bool:
    """Return True for images served by the forwarded local registry."""
    return image.startswith(("localhost:", "127.0.0.1:"))


class ContainerDeployer:
    """Pulls an image and replaces a service container on one host."""

    def __init__(
        self,
        executor: RemoteExecutor,
        engine: ContainerEngine,
        max_attempts: int = CONTAINER_START_MAX_ATTEMPTS,
        retry_delay: float = CONTAINER_START_RETRY_DELAY,
    ) -> None:
        self.executor = executor
        self.engine = engine
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    def pull_command(self, image: str) -> str:
        # The forwarded registry speaks plain HTTP
        plain_http = self.engine == ContainerEngine.PODMAN and is_local_registry_image(image)
        tls = " --tls-verify=false" if plain_http else ""
        return f"{self.engine.value} pull{tls} {shlex.quote(image)}"

    def run_command(self, name: str, service: ServiceConfig, image: str) -> str:
        parts = [
            self.engine.value,
            "run",
            "--detach",
            "--name",
            name,
            "--network",
            NETWORK_NAME,
            "--restart",
            "unless-stopped",
        ]
        for port in service.ports:
            parts += ["-p", port]
        for volume in service.volumes:
            parts += ["-v", volume]
        for key, value in service.environment.items():
            parts += ["-e", f"{key}={value}"]
        parts.append(image)
        command = " ".join(shlex.quote(p) for p in parts)
        if service.command:
            command += f" {service.command}"
        return command

    async def _wait_running(self, name: str) -> None:
        engine = self.engine.value
        host = self.executor.host
        status = ""
        for _ in range(self.max_attempts):
            result = await self.executor.execute(
                f"{engine} inspect {name} --format '{{{{.State.Status}}}}'"
            )
            status = result.stdout.strip()
            if result.success and status == "running":
                return
            await asyncio.sleep(self.retry_delay)

        logs = await self.executor.execute(
            f"{engine} logs --tail {CONTAINER_LOG_TAIL_LINES} {name} 2>&1"
        )
        raise DeploymentError(
            f"{host}: container {name} is not running (status: {status or 'unknown'})."
            f" Logs: {logs.stdout.strip()}"
        )

    async def deploy(
        self, project: str, service_name: str, service: ServiceConfig, image: str
    ) -> str:
        """Roll out one service container.

        Args:
            project: Project name (container names are ``<project>-<service>``)
            service_name: Service being deployed
            service: Service configuration
            image: Full image reference to run

        Returns:
            Name of the running container

        Raises:
            DeploymentError: If a step fails or the container does not start
        """
        name = container_name(project, service_name)
        host = self.executor.host
        logger.info(f"{host}: deploying {service_name} ({image})")
        await run_checked(
            self.executor, self.pull_command(image), f"pull of {image}", DeploymentError
        )
        await self.executor.execute(f"{self.engine.value} rm -f {name} 2>/dev/null || true")
        await ensure_network(self.executor, self.engine)
        await run_checked(
            self.executor,
            self.run_command(name, service, image),
            f"start of {name}",
            DeploymentError,
        )
        await self._wait_running(name)
        logger.info(f"{host}: {name} is running")
        return name

    async def remove(self, name: str) -> bool:
        """Stop and remove a container.

        Returns:
            False if the host had no such container
        """
        engine = self.engine.value
        listed = await run_checked(
            self.executor,
            f'{engine} ps -a --filter "name=^{name}$" --format "{{{{.Names}}}}"',
            "container listing",
        )
        if name not in listed.stdout.split():
            return False
        await self.executor.execute(f"{engine} stop {name} 2>/dev/null || true")
        await run_checked(
            self.executor, f"{engine} rm -f {name}", f"removal of {name}", DeploymentError
        )
        logger.info(f"{self.executor.host}: removed {name}")
        return True

    async def logs(self, name: str, lines: int = CONTAINER_LOG_TAIL_LINES) -> str:
        result = await run_checked(
            self.executor, f"{self.engine.value} logs --tail {lines} {name} 2>&1", f"logs of {name}"
        )
        return result.stdout
