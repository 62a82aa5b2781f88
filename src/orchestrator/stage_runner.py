"""Run one compilation stage of one translation unit through an external tool."""

from __future__ import annotations

import subprocess
import time
from pathlib import Path
from typing import Optional, Tuple, TYPE_CHECKING

from .errors import ToolInvocationError, UsageError
from .task import STAGE_EDGES, SourceUnit, StageResult

if TYPE_CHECKING:  # pragma: no cover
    from project_config import ToolchainConfig

__all__ = ["StageRunner", "run_tool"]


def _text(stream: str | bytes | None) -> str:
    if stream is None:
        return ""
    if isinstance(stream, bytes):
        return stream.decode("utf-8", errors="replace")
    return stream


def run_tool(
    argv: Tuple[str, ...],
    *,
    unit: str,
    stage: str,
    output: Path,
    timeout_s: Optional[float],
) -> StageResult:
    """Execute ``argv`` synchronously and describe what happened.

    The result carries ``output`` as its artifact only when the tool exited
    with status zero and the file exists afterwards.  A tool that cannot be
    started raises :class:`ToolInvocationError`; a timeout kills the child
    and yields a failed result.
    """

    started = time.perf_counter()
    try:
        completed = subprocess.run(
            list(argv),
            capture_output=True,
            text=True,
            timeout=timeout_s,
            check=False,
        )
    except FileNotFoundError as exc:
        raise ToolInvocationError(argv[0], "not found") from exc
    except PermissionError as exc:
        raise ToolInvocationError(argv[0], "not executable") from exc
    except subprocess.TimeoutExpired as exc:
        elapsed = int((time.perf_counter() - started) * 1000)
        stderr = _text(exc.stderr)
        stderr += f"{argv[0]}: timed out after {timeout_s}s\n"
        return StageResult(
            unit=unit,
            stage=stage,
            command=tuple(argv),
            exit_status=None,
            stdout=_text(exc.stdout),
            stderr=stderr,
            artifact=None,
            duration_ms=elapsed,
            timed_out=True,
        )

    elapsed = int((time.perf_counter() - started) * 1000)
    stderr = completed.stderr or ""
    artifact: Optional[Path] = None
    if completed.returncode == 0:
        if output.is_file():
            artifact = output
        else:
            stderr += f"{argv[0]}: exited 0 but did not write {output}\n"

    return StageResult(
        unit=unit,
        stage=stage,
        command=tuple(argv),
        exit_status=completed.returncode,
        stdout=completed.stdout or "",
        stderr=stderr,
        artifact=artifact,
        duration_ms=elapsed,
    )


class StageRunner:
    """Drive a :class:`SourceUnit` across a single stage edge.

    The runner owns no state besides its configuration; everything it learns
    is written onto the unit (on success) and into the returned result.
    Prior-stage artifacts are never removed so every intermediate file stays
    available for inspection.
    """

    def __init__(self, toolchain: "ToolchainConfig", build_dir: str | Path) -> None:
        self.toolchain = toolchain
        self.build_dir = Path(build_dir)

    def command_for(self, unit: SourceUnit, stage: str) -> Tuple[Tuple[str, ...], Path]:
        """Return the argv for ``stage`` on ``unit`` and the path it will write."""

        if stage not in STAGE_EDGES:
            raise UsageError(f"unknown stage '{stage}'")
        required, target = STAGE_EDGES[stage]
        if unit.state != required:
            raise UsageError(
                f"{unit.name}: stage '{stage}' requires state '{required}', unit is '{unit.state}'"
            )

        source = unit.artifacts.get(required)
        if source is None or not Path(source).is_file():
            raise UsageError(f"{unit.name}: input for stage '{stage}' is missing ({source})")

        output = unit.artifact_path(self.build_dir, target)
        argv = (
            *self.toolchain.tool_for(stage),
            *self.toolchain.flags_for(stage),
            str(source),
            "-o",
            str(output),
        )
        return argv, output

    def run(self, unit: SourceUnit, stage: str) -> StageResult:
        argv, output = self.command_for(unit, stage)
        self.build_dir.mkdir(parents=True, exist_ok=True)
        # a leftover file from an earlier run must not pass for fresh output
        if output.exists():
            output.unlink()

        result = run_tool(
            argv,
            unit=unit.name,
            stage=stage,
            output=output,
            timeout_s=self.toolchain.timeout_s,
        )
        if result.ok:
            unit.advance(STAGE_EDGES[stage][1], output)
        return result
