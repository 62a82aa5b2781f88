"""Error taxonomy shared by the stage runner, link planner and orchestrator."""

from __future__ import annotations

from typing import Optional, Sequence, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .task import StageResult


class BuildError(RuntimeError):
    """Base class for every build failure surfaced to callers."""

    code = "build-error"

    def __init__(self, detail: Optional[str] = None) -> None:
        self.detail = detail
        message = self.code if detail is None else f"{self.code}:{detail}"
        super().__init__(message)


class UsageError(BuildError):
    """Malformed request: unknown stage, missing declared file, bad options."""

    code = "usage-error"


class ConfigError(UsageError):
    """Configuration file or override could not be turned into settings."""

    code = "config-error"


class ToolInvocationError(BuildError):
    """External tool could not be started at all."""

    code = "tool-invocation"

    def __init__(self, tool: str, detail: Optional[str] = None) -> None:
        self.tool = tool
        super().__init__(f"{tool}: {detail}" if detail else tool)


class StageFailure(BuildError):
    """External tool ran and exited with a non-zero status."""

    code = "stage-failure"

    def __init__(self, result: "StageResult") -> None:
        self.result = result
        super().__init__(f"{result.unit}:{result.stage}:exit={result.exit_status}")


class MissingObjectError(BuildError):
    """Link requested while some declared units have no object file."""

    code = "missing-object"

    def __init__(self, units: Sequence[str]) -> None:
        self.units = tuple(units)
        super().__init__(", ".join(self.units))


class LinkFailure(BuildError):
    """External linker exited non-zero; its output is kept verbatim."""

    code = "link-failure"

    def __init__(self, result: "StageResult") -> None:
        self.result = result
        super().__init__(f"exit={result.exit_status}")


__all__ = [
    "BuildError",
    "UsageError",
    "ConfigError",
    "ToolInvocationError",
    "StageFailure",
    "MissingObjectError",
    "LinkFailure",
]
