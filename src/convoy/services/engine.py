"""Local container engine: image builds, pushes and the local registry."""

import logging
from pathlib import Path
from typing import Protocol

from ..config import BuildConfig, BuilderConfig
from ..constants import REGISTRY_CONTAINER_NAME
from ..errors import BuildError, RemoteExecutionError
from .ssh import CommandResult, run_process

logger = logging.getLogger(__name__)

LOCAL = "local"
REGISTRY_IMAGE = "registry:2"
BUILD_TIMEOUT = 3600


class ImageBuilder(Protocol):
    """Builds and publishes images from the operator machine."""

    async def ensure_registry(self) -> None: ...

    async def build(
        self, images: list[str], build: BuildConfig, no_cache: bool = False
    ) -> None: ...

    async def push(self, image: str) -> None: ...


class LocalEngine:
    """Drives the local ``docker``/``podman`` CLI."""

    def __init__(self, settings: BuilderConfig, project_root: Path | None = None) -> None:
        self.settings = settings
        self.binary = settings.engine.value
        self.project_root = project_root or Path.cwd()

    async def _run(self, *args: str, timeout: float | None = None) -> CommandResult:
        try:
            return await run_process(
                [self.binary, *args], LOCAL, timeout=timeout, cwd=self.project_root
            )
        except RemoteExecutionError as e:
            raise BuildError(str(e)) from e

    async def registry_running(self) -> bool:
        result = await self._run(
            "ps", "--filter", f"name=^{REGISTRY_CONTAINER_NAME}$", "--format", "{{.Names}}"
        )
        return result.success and REGISTRY_CONTAINER_NAME in result.stdout

    async def ensure_registry(self) -> None:
        """Start the local registry container unless it already runs.

        Remote registries are assumed reachable; nothing is started for them.
        """
        registry = self.settings.registry
        if not registry.is_local():
            return
        if await self.registry_running():
            logger.debug("Local registry already running")
            return

        await self._run("rm", "-f", REGISTRY_CONTAINER_NAME)
        result = await self._run(
            "run",
            "--detach",
            "--name",
            REGISTRY_CONTAINER_NAME,
            "--restart",
            "unless-stopped",
            "-p",
            f"{registry.port}:5000",
            REGISTRY_IMAGE,
        )
        if not result.success:
            raise BuildError(f"Failed to start local registry: {result.stderr.strip()}")
        logger.info(f"Local registry started on port {registry.port}")

    def build_args(
        self, images: list[str], build: BuildConfig, no_cache: bool = False
    ) -> list[str]:
        args = ["build"]
        for image in images:
            args += ["-t", image]
        args += ["-f", str(Path(build.context) / build.dockerfile)]
        for key, value in build.args.items():
            args += ["--build-arg", f"{key}={value}"]
        if build.target:
            args += ["--target", build.target]
        if no_cache or not self.settings.cache:
            args.append("--no-cache")
        args.append(build.context)
        return args

    async def build(self, images: list[str], build: BuildConfig, no_cache: bool = False) -> None:
        """Build one image under several tags.

        Raises:
            BuildError: If the build fails
        """
        logger.info(f"Building {images[0]}")
        result = await self._run(*self.build_args(images, build, no_cache), timeout=BUILD_TIMEOUT)
        if not result.success:
            raise BuildError(f"Build of {images[0]} failed: {result.stderr.strip()[-500:]}")

    async def push(self, image: str) -> None:
        args = ["push"]
        if self.binary == "podman" and self.settings.registry.is_local():
            args.append("--tls-verify=false")
        result = await self._run(*args, image, timeout=BUILD_TIMEOUT)
        if not result.success:
            message = f"Push of {image} failed: {result.stderr.strip()}"
            registry = self.settings.registry
            if not registry.is_local():
                message += f" (is {registry.url()} reachable and logged in?)"
            raise BuildError(message)
        logger.info(f"Pushed {image}")
