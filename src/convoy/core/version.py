"""Image version tag resolution.

Precedence: explicit tag, then the git short SHA of the working tree, then a
timestamp with a random suffix when not in a git repository.
"""

import logging
import uuid
from datetime import UTC, datetime
from pathlib import Path

from ..services.git import GitError, get_short_sha, has_uncommitted_changes, is_git_repo

logger = logging.getLogger(__name__)


def generate_unique_tag() -> str:
    """Sortable unique tag, e.g. ``20260102-101500-3f9a1c2b``."""
    stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    return f"{stamp}-{uuid.uuid4().hex[:8]}"


def resolve_version_tag(explicit: str | None = None, cwd: Path | None = None) -> str:
    """Pick the version tag for built images."""
    if explicit:
        return explicit

    if is_git_repo(cwd):
        try:
            sha = get_short_sha(cwd)
            if has_uncommitted_changes(cwd):
                logger.warning(
                    f"Uncommitted changes present; image tagged {sha} may not match the commit"
                )
            return sha
        except GitError as e:
            logger.debug(f"Could not read git revision: {e}")

    return generate_unique_tag()
