"""Executor interfaces for distributing per-unit build jobs."""

from __future__ import annotations

import concurrent.futures
from typing import Callable, List, Protocol, Sequence, TypeVar

from .task import UnitJob

T = TypeVar("T")


class Executor(Protocol):
    """Abstract execution backend."""

    def submit(self, jobs: Sequence[UnitJob], fn: Callable[[UnitJob], T]) -> List[T]:
        """Run ``fn`` for every job and return the outcomes in job order."""

    def barrier(self) -> None:
        """Wait until all enqueued work is finished."""

    def shutdown(self) -> None:
        """Tear down resources allocated by the executor."""


class SequentialExecutor:
    """Deterministic executor processing jobs serially in declaration order."""

    def submit(self, jobs: Sequence[UnitJob], fn: Callable[[UnitJob], T]) -> List[T]:
        results: List[T] = []
        for job in jobs:
            results.append(fn(job))
        return results

    def barrier(self) -> None:
        return None

    def shutdown(self) -> None:
        return None


class PoolExecutor:
    """Bounded thread pool; each job owns its unit exclusively.

    Units have no data dependency on each other, so the only ordering
    guarantee is the join performed by :meth:`submit`/:meth:`barrier`
    before the caller moves on to linking.
    """

    def __init__(self, max_workers: int) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="sepcomp"
        )
        self._pending: List[concurrent.futures.Future] = []

    def submit(self, jobs: Sequence[UnitJob], fn: Callable[[UnitJob], T]) -> List[T]:
        futures = [self._pool.submit(fn, job) for job in jobs]
        self._pending.extend(futures)
        try:
            return [future.result() for future in futures]
        except KeyboardInterrupt:
            for future in futures:
                future.cancel()
            raise
        finally:
            self._pending = [future for future in self._pending if not future.done()]

    def barrier(self) -> None:
        concurrent.futures.wait(self._pending)
        self._pending = []

    def shutdown(self) -> None:
        self._pool.shutdown(wait=True, cancel_futures=True)


def make_executor(jobs: int) -> Executor:
    return SequentialExecutor() if jobs <= 1 else PoolExecutor(jobs)


__all__ = ["Executor", "SequentialExecutor", "PoolExecutor", "make_executor"]
