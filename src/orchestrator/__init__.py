"""Separate-compilation pipeline: stage runner, link planner and executors."""

from .errors import (
    BuildError,
    ConfigError,
    LinkFailure,
    MissingObjectError,
    StageFailure,
    ToolInvocationError,
    UsageError,
)
from .executor import Executor, PoolExecutor, SequentialExecutor
from .link_planner import LinkOptions, LinkPlan, LinkPlanner
from .scheduler import Scheduler
from .stage_runner import StageRunner
from .task import SourceUnit, StageResult, UnitJob

__all__ = [
    "BuildError",
    "ConfigError",
    "Executor",
    "LinkFailure",
    "LinkOptions",
    "LinkPlan",
    "LinkPlanner",
    "MissingObjectError",
    "PoolExecutor",
    "Scheduler",
    "SequentialExecutor",
    "SourceUnit",
    "StageFailure",
    "StageResult",
    "StageRunner",
    "ToolInvocationError",
    "UnitJob",
    "UsageError",
]
