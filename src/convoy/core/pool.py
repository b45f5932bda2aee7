"""Bounded concurrency pool for fleet operations.

Fan-outs across a large fleet would otherwise open one ssh process per host
at once. The pool admits at most ``max_concurrent`` operations at a time and
offers three ways to wait on them:

- ``execute_concurrent``: all results, or the first failure once everything settled
- ``execute_batched``: sequential chunks, chunk k settles before chunk k+1 starts
- ``execute_with_error_collection`` / ``execute_host_operations``: never raise,
  every outcome is collected

Usage:
    pool = ConcurrencyPool(max_concurrent=10)
    outcomes = await pool.execute_host_operations(
        [(ex.host, lambda ex=ex: ex.execute("uptime")) for ex in executors]
    )
"""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from ..constants import DEFAULT_MAX_CONCURRENT
from ..models import Err, Ok, Outcome

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]


class Semaphore:
    """Counting semaphore with a FIFO wait queue.

    ``release`` hands a freed permit straight to the oldest waiter, so a
    newly arriving ``acquire`` can never overtake a queued one.
    """

    def __init__(self, permits: int) -> None:
        if permits < 1:
            raise ValueError("permits must be >= 1")
        self._permits = permits
        self._waiters: deque[asyncio.Future[None]] = deque()

    async def acquire(self) -> None:
        if self._permits > 0 and not self._waiters:
            self._permits -= 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Permit was handed over just before cancellation; pass it on
                self.release()
            else:
                self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        self._permits += 1
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                self._permits -= 1
                waiter.set_result(None)
                break

    def available(self) -> int:
        """Number of free permits."""
        return self._permits

    def queued(self) -> int:
        """Number of operations waiting for a permit."""
        return len(self._waiters)

    async def __aenter__(self) -> None:
        await self.acquire()

    async def __aexit__(self, *exc_info: object) -> None:
        self.release()


@dataclass
class CollectedResults(Generic[T]):
    """Values and errors from an error-collecting run, each in input order."""

    results: list[T] = field(default_factory=list)
    errors: list[BaseException] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.results)

    @property
    def error_count(self) -> int:
        return len(self.errors)


@dataclass(frozen=True)
class PoolStats:
    """Snapshot of pool utilisation."""

    max_concurrent: int
    available: int
    queued: int


class ConcurrencyPool:
    """Runs async operations with at most ``max_concurrent`` in flight."""

    def __init__(self, max_concurrent: int = DEFAULT_MAX_CONCURRENT) -> None:
        self.max_concurrent = max_concurrent
        self._semaphore = Semaphore(max_concurrent)

    async def _guarded(self, op: Operation[T]) -> T:
        async with self._semaphore:
            return await op()

    async def _settle(self, ops: Sequence[Operation[T]]) -> list[T | BaseException]:
        """Run ops under the permit bound and wait until every one settled."""
        return await asyncio.gather(*(self._guarded(op) for op in ops), return_exceptions=True)

    async def execute_concurrent(self, ops: Sequence[Operation[T]]) -> list[T]:
        """Run all operations, at most ``max_concurrent`` at a time.

        Siblings of a failing operation are not cancelled; once every
        operation settled, the first failure (in input order) is raised.

        Returns:
            Results in input order
        """
        settled = await self._settle(ops)
        for item in settled:
            if isinstance(item, BaseException):
                raise item
        return settled  # type: ignore[return-value]

    async def execute_batched(
        self, ops: Sequence[Operation[T]], batch_size: int | None = None
    ) -> list[T]:
        """Run operations in sequential batches.

        Every operation of batch k completes before any operation of batch
        k+1 starts. A failing batch raises once it settled; later batches
        do not run.
        """
        size = batch_size or self.max_concurrent
        results: list[T] = []
        for start in range(0, len(ops), size):
            batch = ops[start : start + size]
            settled = await asyncio.gather(*(op() for op in batch), return_exceptions=True)
            for item in settled:
                if isinstance(item, BaseException):
                    raise item
            results.extend(settled)  # type: ignore[arg-type]
        return results

    async def execute_with_error_collection(
        self, ops: Sequence[Operation[T]]
    ) -> CollectedResults[T]:
        """Run all operations and collect values and errors; never raises."""
        collected: CollectedResults[T] = CollectedResults()
        for item in await self._settle(ops):
            if isinstance(item, asyncio.CancelledError):
                raise item
            if isinstance(item, BaseException):
                collected.errors.append(item)
            else:
                collected.results.append(item)
        return collected

    async def execute_host_operations(
        self, host_ops: Sequence[tuple[str, Operation[T]]]
    ) -> list[Outcome[T]]:
        """Run one operation per host and return an outcome per host.

        Outcomes keep the order of ``host_ops`` so failures print in stable
        host order.
        """
        settled = await self._settle([op for _, op in host_ops])
        outcomes: list[Outcome[T]] = []
        for (host, _), item in zip(host_ops, settled, strict=True):
            if isinstance(item, asyncio.CancelledError):
                raise item
            if isinstance(item, BaseException):
                logger.debug(f"{host}: {type(item).__name__}: {item}")
                outcomes.append(Err(host, item))
            else:
                outcomes.append(Ok(host, item))
        return outcomes

    def stats(self) -> PoolStats:
        return PoolStats(
            max_concurrent=self.max_concurrent,
            available=self._semaphore.available(),
            queued=self._semaphore.queued(),
        )
