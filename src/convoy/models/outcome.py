"""Tagged per-host operation outcomes.

Every fan-out across the fleet produces one outcome per host: ``Ok`` carrying
the operation's value, or ``Err`` carrying the exception it raised. Call
sites branch on the type instead of probing optional fields.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful operation on a host."""

    host: str
    value: T

    @property
    def success(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    """Failed operation on a host."""

    host: str
    error: BaseException

    @property
    def success(self) -> bool:
        return False

    @property
    def message(self) -> str:
        """Human readable error message."""
        return str(self.error) or type(self.error).__name__


Outcome = Ok[T] | Err


def partition(outcomes: Iterable["Ok[T] | Err"]) -> tuple[list[Ok[T]], list[Err]]:
    """Split outcomes into (successes, failures), preserving order."""
    oks: list[Ok[T]] = []
    errs: list[Err] = []
    for outcome in outcomes:
        if isinstance(outcome, Ok):
            oks.append(outcome)
        else:
            errs.append(outcome)
    return oks, errs
