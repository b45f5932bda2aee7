"""External tool integrations for convoy.

This package wraps the programs convoy drives:
- ssh: remote command execution and port forwards
- engine: local docker/podman builds, pushes and registry
- containers: container rollout on a host
- proxy: kamal-proxy management on a host
- prune: old image cleanup on a host
- git: revision lookups
- identity: operator identity
"""

from .git import GitError, run_git
from .identity import IdentityProvider, StaticIdentity, SystemIdentity
from .ssh import (
    CommandResult,
    LocalShellExecutor,
    RemoteExecutor,
    SSHExecutor,
    connect_hosts,
    open_fleet,
)

__all__ = [
    "CommandResult",
    "GitError",
    "IdentityProvider",
    "LocalShellExecutor",
    "RemoteExecutor",
    "SSHExecutor",
    "StaticIdentity",
    "SystemIdentity",
    "connect_hosts",
    "open_fleet",
    "run_git",
]
