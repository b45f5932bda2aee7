"""Git queries used to derive image version tags."""

import subprocess
from pathlib import Path

from ..constants import GIT_TIMEOUT


class GitError(Exception):
    """Git command failed."""


def run_git(*args: str, cwd: Path | None = None, check: bool = True) -> str:
    """Run git command and return stdout.

    Args:
        *args: Git arguments
        cwd: Working directory
        check: Raise on non-zero exit

    Returns:
        Stripped stdout

    Raises:
        GitError: If git is missing, times out, or (with check) exits non-zero
    """
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT,
        )
    except subprocess.TimeoutExpired as e:
        raise GitError(f"git {args[0]} timed out after {GIT_TIMEOUT} seconds") from e
    except FileNotFoundError:
        raise GitError("git not found in PATH") from None

    if check and result.returncode != 0:
        raise GitError(f"git {' '.join(args)} failed: {result.stderr.strip()}")
    return result.stdout.strip()


def is_git_repo(cwd: Path | None = None) -> bool:
    try:
        return run_git("rev-parse", "--is-inside-work-tree", cwd=cwd) == "true"
    except GitError:
        return False


def get_short_sha(cwd: Path | None = None) -> str:
    return run_git("rev-parse", "--short", "HEAD", cwd=cwd)


def has_uncommitted_changes(cwd: Path | None = None) -> bool:
    return bool(run_git("status", "--porcelain", cwd=cwd))
