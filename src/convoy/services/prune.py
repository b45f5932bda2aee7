"""Old image cleanup on a host.

Keeps the newest ``retain`` images of each project service and removes the
rest, never touching images used by a container.
"""

import logging
from dataclasses import dataclass, field

from ..config import ContainerEngine
from .ssh import RemoteExecutor, run_checked

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageInfo:
    """One line of ``images --format``."""

    reference: str
    image_id: str
    created_at: str

    @property
    def repository(self) -> str:
        return self.reference.rsplit(":", 1)[0]


@dataclass
class PruneResult:
    """Images removed from a host."""

    removed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def parse_images(output: str) -> list[ImageInfo]:
    """Parse ``repository:tag|id|created`` lines, skipping dangling images."""
    images: list[ImageInfo] = []
    for line in output.splitlines():
        parts = line.strip().split("|")
        if len(parts) != 3 or "<none>" in parts[0]:
            continue
        images.append(ImageInfo(*parts))
    return images


def select_for_removal(images: list[ImageInfo], retain: int, active: set[str]) -> list[ImageInfo]:
    """Images beyond the newest ``retain`` per repository, minus active ones."""
    by_repository: dict[str, list[ImageInfo]] = {}
    for image in images:
        by_repository.setdefault(image.repository, []).append(image)

    doomed: list[ImageInfo] = []
    for group in by_repository.values():
        group.sort(key=lambda i: i.created_at, reverse=True)
        for image in group[retain:]:
            if image.reference in active or image.image_id in active:
                continue
            doomed.append(image)
    return doomed


class ImagePruner:
    """Removes old project images on one host."""

    def __init__(self, executor: RemoteExecutor, engine: ContainerEngine, project: str) -> None:
        self.executor = executor
        self.engine = engine.value
        self.project = project

    async def _list_images(self) -> list[ImageInfo]:
        result = await run_checked(
            self.executor,
            f"{self.engine} images"
            " --format '{{.Repository}}:{{.Tag}}|{{.ID}}|{{.CreatedAt}}'"
            f" --filter 'reference=*/{self.project}-*'",
            "image listing",
        )
        return parse_images(result.stdout)

    async def _active_images(self) -> set[str]:
        result = await run_checked(
            self.executor, f"{self.engine} ps -a --format '{{{{.Image}}}}'", "container listing"
        )
        return {line.strip() for line in result.stdout.splitlines() if line.strip()}

    async def prune(self, retain: int) -> PruneResult:
        """Remove old images, keeping ``retain`` per service.

        Raises:
            RemoteExecutionError: If images or containers cannot be listed
        """
        host = self.executor.host
        images = await self._list_images()
        active = await self._active_images()
        result = PruneResult()
        for image in select_for_removal(images, retain, active):
            removed = await self.executor.execute(f"{self.engine} rmi {image.image_id}")
            if removed.success:
                result.removed.append(image.reference)
            else:
                logger.debug(
                    f"{host}: could not remove {image.reference}: {removed.stderr.strip()}"
                )
                result.failed.append(image.reference)

        await self.executor.execute(
            f"{self.engine} image prune --force"
            f" --filter label=project={self.project} 2>/dev/null || true"
        )
        logger.info(f"{host}: removed {len(result.removed)} old image(s)")
        return result
