"""Stage planning: which stage edges each unit walks for a requested target."""

from __future__ import annotations

from typing import Callable, List, Sequence, Tuple, TypeVar

from .errors import UsageError
from .executor import Executor, SequentialExecutor
from .task import (
    STAGE_ASSEMBLE,
    STAGE_PREPROCESS,
    STAGE_TO_ASSEMBLY,
    STAGE_TO_OBJECT,
    SourceUnit,
    UnitJob,
)

T = TypeVar("T")

TARGET_PREPROCESS = "preprocess"
TARGET_ASM = "asm"
TARGET_OBJECT = "object"
TARGET_LINK = "link"
TARGETS = (TARGET_PREPROCESS, TARGET_ASM, TARGET_OBJECT, TARGET_LINK)

ROUTE_STAGED = "staged"
ROUTE_DIRECT = "direct"
ROUTES = (ROUTE_STAGED, ROUTE_DIRECT)


def stages_for(target: str, route: str = ROUTE_STAGED) -> Tuple[str, ...]:
    """Return the stage sequence that takes a declared unit to ``target``.

    The ``direct`` route replaces preprocess/to-assembly/assemble with the
    single compile-to-object edge and only applies to object-producing
    targets.
    """

    if target not in TARGETS:
        raise UsageError(f"unknown target stage '{target}' (expected one of {', '.join(TARGETS)})")
    if route not in ROUTES:
        raise UsageError(f"unknown route '{route}' (expected one of {', '.join(ROUTES)})")

    if target == TARGET_PREPROCESS:
        return (STAGE_PREPROCESS,)
    if target == TARGET_ASM:
        return (STAGE_PREPROCESS, STAGE_TO_ASSEMBLY)
    if route == ROUTE_DIRECT:
        return (STAGE_TO_OBJECT,)
    return (STAGE_PREPROCESS, STAGE_TO_ASSEMBLY, STAGE_ASSEMBLE)


class Scheduler:
    """Deterministic job planner with sequential execution by default."""

    def __init__(self, executor: Executor | None = None) -> None:
        self.executor = executor or SequentialExecutor()

    def build_task_graph(
        self, units: Sequence[SourceUnit], target: str, route: str = ROUTE_STAGED
    ) -> List[UnitJob]:
        """Construct the per-unit job list, in declaration order."""

        stages = stages_for(target, route)
        return [UnitJob(unit=unit, stages=stages) for unit in units]

    def submit(self, jobs: Sequence[UnitJob], fn: Callable[[UnitJob], T]) -> List[T]:
        """Submit jobs to the underlying executor."""

        return self.executor.submit(list(jobs), fn)

    def barrier(self) -> None:
        self.executor.barrier()

    def shutdown(self) -> None:
        self.executor.shutdown()


__all__ = [
    "ROUTES",
    "ROUTE_DIRECT",
    "ROUTE_STAGED",
    "Scheduler",
    "TARGETS",
    "TARGET_ASM",
    "TARGET_LINK",
    "TARGET_OBJECT",
    "TARGET_PREPROCESS",
    "UnitJob",
    "stages_for",
]
