"""Operator identity lookups.

Lock records name the principal and process that acquired them. The lookups
sit behind a small provider so tests can pin deterministic values.
"""

import getpass
import os
from dataclasses import dataclass
from typing import Protocol


class IdentityProvider(Protocol):
    """Source of the current principal and process id."""

    def user(self) -> str: ...

    def pid(self) -> int: ...


class SystemIdentity:
    """Identity of the operator running this process."""

    def user(self) -> str:
        try:
            return getpass.getuser()
        except (KeyError, OSError):
            # No passwd entry and no USER/LOGNAME (e.g. minimal containers)
            return "unknown"

    def pid(self) -> int:
        return os.getpid()


@dataclass(frozen=True)
class StaticIdentity:
    """Fixed identity, used by tests and automation."""

    name: str
    process_id: int = 0

    def user(self) -> str:
        return self.name

    def pid(self) -> int:
        return self.process_id
