"""Separate-compilation pipeline orchestrator (preprocess → asm → object → link)."""

from __future__ import annotations

import argparse
import os
import sys
import threading
import uuid
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from artifacts.manifest import digest_artifacts, write_manifest
from contracts import assert_valid
from project_config import (
    BuildSettings,
    ToolchainConfig,
    build_settings_from_config,
    get_section,
    load_config,
    toolchain_from_config,
)

from . import log
from .errors import (
    BuildError,
    LinkFailure,
    MissingObjectError,
    StageFailure,
    ToolInvocationError,
    UsageError,
)
from .executor import Executor, make_executor
from .link_planner import (
    RUNTIME_AUTO,
    RUNTIME_EXPLICIT,
    LinkOptions,
    LinkPlanner,
    discover_runtime_objects,
)
from .scheduler import (
    ROUTE_DIRECT,
    TARGET_LINK,
    TARGETS,
    Scheduler,
    stages_for,
)
from .stage_runner import StageRunner
from .task import (
    STAGE_LINK,
    STATE_DECLARED,
    SourceUnit,
    StageResult,
    UnitJob,
)

EXIT_OK = 0
EXIT_STAGE_FAILURE = 1
EXIT_USAGE = 2
EXIT_LINK_FAILURE = 3
EXIT_INTERRUPTED = 130

_HALTED = "halted"


def declare_units(sources: Sequence[str | Path | SourceUnit]) -> List[SourceUnit]:
    """Turn the declared inputs into fresh :class:`SourceUnit` records.

    Every source must exist and every unit name (the file stem) must be
    unique, since artifact paths are derived from it.
    """

    if not sources:
        raise UsageError("no source files were declared")

    units: List[SourceUnit] = []
    seen: Dict[str, Path] = {}
    for entry in sources:
        unit = entry if isinstance(entry, SourceUnit) else SourceUnit(source=Path(entry))
        if not unit.source.is_file():
            raise UsageError(f"declared source '{unit.source}' does not exist")
        if unit.name in seen:
            raise UsageError(
                f"sources '{seen[unit.name]}' and '{unit.source}' both map to unit '{unit.name}'"
            )
        seen[unit.name] = unit.source
        units.append(unit)
    return units


class PipelineState:
    """Run-scoped table of units, their stage results and their failures.

    Entries are created up front, so a worker only ever mutates the records
    of the unit it owns; cross-unit reads happen after the join.
    """

    def __init__(self, units: Sequence[SourceUnit]) -> None:
        self.units: Dict[str, SourceUnit] = {unit.name: unit for unit in units}
        self.results: Dict[str, List[StageResult]] = {unit.name: [] for unit in units}
        self.errors: Dict[str, Optional[BuildError]] = {unit.name: None for unit in units}
        self.halted: Dict[str, bool] = {unit.name: False for unit in units}
        self.finished: Dict[str, bool] = {unit.name: False for unit in units}
        self.stop = threading.Event()
        self.interrupted = threading.Event()

    def interrupt(self) -> None:
        self.interrupted.set()
        self.stop.set()

    def settle(self) -> None:
        """After an interrupt, mark every unit that neither finished nor failed as halted."""

        for name in self.units:
            if not self.finished[name] and self.errors[name] is None:
                self.halted[name] = True

    def record(self, result: StageResult) -> None:
        self.results[result.unit].append(result)

    def fail(self, name: str, error: BuildError) -> None:
        self.errors[name] = error

    def halt(self, name: str) -> None:
        self.halted[name] = True

    def furthest(self, name: str) -> str:
        return self.units[name].state

    def failed_units(self) -> List[str]:
        return [name for name, error in self.errors.items() if error is not None]


def _error_code(error: Optional[BuildError], halted: bool) -> Optional[str]:
    if error is not None:
        return error.code
    return _HALTED if halted else None


def _interrupted_result(unit: str, stage: str, ran: Optional[StageResult] = None) -> StageResult:
    if ran is None:
        return StageResult(
            unit=unit,
            stage=stage,
            command=(),
            exit_status=None,
            stderr="interrupted\n",
            interrupted=True,
        )
    return replace(ran, exit_status=None, artifact=None, stderr=ran.stderr + "interrupted\n", interrupted=True)


def _diagnostic(error: Optional[BuildError]) -> str:
    if isinstance(error, (StageFailure, LinkFailure)):
        return error.result.stderr
    if error is not None:
        return str(error)
    return ""


@dataclass(frozen=True)
class UnitReport:
    name: str
    source: Path
    state: str
    history: Tuple[str, ...]
    artifacts: Mapping[str, Path]
    results: Tuple[StageResult, ...]
    error: Optional[BuildError] = None
    halted: bool = False

    @property
    def error_code(self) -> Optional[str]:
        return _error_code(self.error, self.halted)

    @property
    def diagnostic(self) -> str:
        return _diagnostic(self.error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "source": str(self.source),
            "state": self.state,
            "history": list(self.history),
            "artifacts": {state: str(path) for state, path in self.artifacts.items()},
            "error": self.error_code,
            "results": [result.to_dict() for result in self.results],
        }


@dataclass(frozen=True)
class BuildResult:
    """Per-unit outcome of a build plus the link step, if one was attempted."""

    target: str
    route: str
    units: Tuple[UnitReport, ...]
    link: Optional[StageResult] = None
    link_error: Optional[BuildError] = None
    executable: Optional[Path] = None
    interrupted: bool = False
    output: Optional[str] = None

    def unit(self, name: str) -> UnitReport:
        for report in self.units:
            if report.name == name:
                return report
        raise KeyError(name)

    @property
    def failed_units(self) -> List[str]:
        return [report.name for report in self.units if report.error_code is not None]

    @property
    def exit_code(self) -> int:
        if self.interrupted:
            return EXIT_INTERRUPTED
        if self.failed_units:
            return EXIT_STAGE_FAILURE
        if self.link_error is not None:
            return EXIT_LINK_FAILURE
        return EXIT_OK

    @property
    def ok(self) -> bool:
        return self.exit_code == EXIT_OK

    def artifact_paths(self) -> List[Path]:
        paths: List[Path] = []
        for report in self.units:
            paths.extend(path for state, path in report.artifacts.items() if state != STATE_DECLARED)
        if self.executable is not None:
            paths.append(self.executable)
        return paths

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "exit_code": self.exit_code,
            "target": self.target,
            "route": self.route,
            "interrupted": self.interrupted,
            "units": [report.to_dict() for report in self.units],
            "link": self.link.to_dict() if self.link is not None else None,
            "link_error": str(self.link_error) if self.link_error is not None else None,
            "executable": str(self.executable) if self.executable is not None else None,
        }

    def render(self) -> str:
        """Per-unit status table."""

        width = max([len(report.name) for report in self.units] + [len("unit")])
        lines = [f"{'unit'.ljust(width)}  {'stage reached'.ljust(13)}  status"]
        for report in self.units:
            status = "ok"
            if report.error is not None:
                last = report.results[-1] if report.results else None
                if last is not None and not last.ok:
                    status = f"{report.error_code} ({last.stage}, exit {last.exit_status})"
                else:
                    status = str(report.error)
            elif report.halted:
                status = _HALTED
            lines.append(f"{report.name.ljust(width)}  {report.state.ljust(13)}  {status}")

        if self.target == TARGET_LINK:
            if self.executable is not None:
                link_status = f"ok -> {self.executable}"
            elif self.link_error is not None:
                link_status = str(self.link_error)
            else:
                link_status = "not attempted"
            lines.append(f"{'link'.ljust(width)}  {(self.output or '-').ljust(13)}  {link_status}")
        if self.interrupted:
            lines.append("build interrupted")
        return "\n".join(lines)

    def diagnostics(self) -> str:
        """Raw text of every failing tool, unabridged."""

        blocks: List[str] = []
        failing = [report.results[-1] for report in self.units if report.results and not report.results[-1].ok]
        if self.link is not None and not self.link.ok:
            failing.append(self.link)
        for result in failing:
            header = f"--- {result.unit}: {result.stage} (exit {result.exit_status})"
            command = "$ " + " ".join(result.command) if result.command else ""
            blocks.append("\n".join(part for part in (header, command, result.stderr.rstrip("\n")) if part))
        for report in self.units:
            if report.error is not None and not isinstance(report.error, StageFailure):
                blocks.append(f"--- {report.name}: {report.error}")
        return "\n".join(blocks)


class PipelineOrchestrator:
    """Drive declared units through their stages, then link.

    The orchestrator is configured once with an explicit toolchain and
    build settings; :meth:`build` starts from a fresh :class:`PipelineState`
    on every call.
    """

    def __init__(
        self,
        toolchain: ToolchainConfig,
        settings: BuildSettings | None = None,
        *,
        runner: StageRunner | None = None,
        planner: LinkPlanner | None = None,
        executor: Executor | None = None,
        verbose: bool = False,
    ) -> None:
        self.toolchain = toolchain
        self.settings = settings or BuildSettings()
        self.runner = runner or StageRunner(toolchain, self.settings.build_dir)
        self.planner = planner or LinkPlanner(toolchain, self.settings.build_dir)
        self.executor = executor
        self.verbose = verbose

    def _echo(self, message: str) -> None:
        if self.verbose:
            print(f"[build] {message}")

    def _drive(self, job: UnitJob, state: PipelineState, fail_fast: bool) -> None:
        unit = job.unit
        for stage in job.stages:
            if state.stop.is_set():
                state.halt(unit.name)
                return
            try:
                result = self.runner.run(unit, stage)
            except ToolInvocationError as exc:
                state.fail(unit.name, exc)
                log.append_event({"event": "build.stage.error", "unit": unit.name, "stage": stage, "error": str(exc)})
                self._echo(f"{unit.name}: {stage} could not start: {exc}")
                if fail_fast:
                    state.stop.set()
                return
            except KeyboardInterrupt:
                interrupted = _interrupted_result(unit.name, stage)
                state.record(interrupted)
                state.fail(unit.name, StageFailure(interrupted))
                state.interrupt()
                raise

            if state.interrupted.is_set():
                # the stage was in flight when the build was interrupted
                interrupted = _interrupted_result(unit.name, stage, result)
                state.record(interrupted)
                state.fail(unit.name, StageFailure(interrupted))
                return

            state.record(result)
            log.append_event(
                {
                    "event": "build.stage.completed",
                    "unit": unit.name,
                    "stage": stage,
                    "ok": result.ok,
                    "exit_status": result.exit_status,
                    "duration_ms": result.duration_ms,
                    "timed_out": result.timed_out,
                    "state": unit.state,
                }
            )
            if not result.ok:
                state.fail(unit.name, StageFailure(result))
                self._echo(f"{unit.name}: {stage} failed (exit {result.exit_status})")
                if fail_fast:
                    state.stop.set()
                return
            self._echo(f"{unit.name}: {stage} ok ({result.duration_ms} ms)")
        state.finished[unit.name] = True

    def _run_units(self, scheduler: Scheduler, jobs: Sequence[UnitJob], state: PipelineState, fail_fast: bool) -> bool:
        """Drive every job to completion; returns ``True`` when interrupted.

        On interrupt, no new stage starts, in-flight workers are joined and
        units that never finished are marked halted before returning.
        """

        try:
            try:
                scheduler.submit(jobs, lambda job: self._drive(job, state, fail_fast))
                scheduler.barrier()
            except KeyboardInterrupt:
                state.interrupt()
                scheduler.barrier()
                state.settle()
                return True
            return False
        finally:
            if self.executor is None:
                scheduler.shutdown()

    def _link(
        self, units: Sequence[SourceUnit], output: str, options: LinkOptions
    ) -> Tuple[Optional[StageResult], Optional[BuildError], Optional[Path]]:
        try:
            plan = self.planner.plan(units, output, options)
        except MissingObjectError as exc:
            log.append_event({"event": "build.link.skipped", "missing": list(exc.units)})
            self._echo(f"link skipped: missing objects for {', '.join(exc.units)}")
            return None, exc, None

        try:
            link_result = self.planner.execute(plan)
        except ToolInvocationError as exc:
            log.append_event({"event": "build.stage.error", "unit": plan.output.name, "stage": STAGE_LINK, "error": str(exc)})
            return None, exc, None

        log.append_event(
            {
                "event": "build.link.completed",
                "output": str(plan.output),
                "ok": link_result.ok,
                "exit_status": link_result.exit_status,
                "duration_ms": link_result.duration_ms,
            }
        )
        if link_result.ok:
            return link_result, None, plan.output
        return link_result, LinkFailure(link_result), None

    def build(
        self,
        units: Sequence[str | Path | SourceUnit],
        final_stage: str,
        link_options: LinkOptions | None = None,
        *,
        output: str | None = None,
        route: str | None = None,
        fail_fast: bool | None = None,
    ) -> BuildResult:
        """Build ``units`` up to ``final_stage`` and link when it is ``link``.

        Usage errors (unknown stage, missing or clashing sources, unusable
        link options) are raised before any tool runs.  Stage failures are
        isolated per unit unless ``fail_fast`` is set.
        """

        route = route or self.settings.route
        fail_fast = self.settings.fail_fast if fail_fast is None else fail_fast
        output = output or self.settings.output

        stages_for(final_stage, route)
        declared = declare_units(units)
        options: Optional[LinkOptions] = None
        if final_stage == TARGET_LINK:
            options = link_options or LinkOptions()
            self.planner.validate(options, output)

        scheduler = Scheduler(self.executor or make_executor(self.settings.jobs))
        jobs = scheduler.build_task_graph(declared, final_stage, route)
        state = PipelineState(declared)

        log.bind(build_id=uuid.uuid4().hex[:12], profile=self.settings.profile)
        log.append_event(
            {
                "event": "build.started",
                "target": final_stage,
                "route": route,
                "units": [unit.name for unit in declared],
                "fail_fast": fail_fast,
                "jobs": self.settings.jobs,
            }
        )

        result: Optional[BuildResult] = None
        try:
            interrupted = self._run_units(scheduler, jobs, state, fail_fast)

            link_result: Optional[StageResult] = None
            link_error: Optional[BuildError] = None
            executable: Optional[Path] = None
            if options is not None and not interrupted:
                link_result, link_error, executable = self._link(declared, output, options)

            reports = tuple(
                UnitReport(
                    name=unit.name,
                    source=unit.source,
                    state=unit.state,
                    history=tuple(unit.history),
                    artifacts=dict(unit.artifacts),
                    results=tuple(state.results[unit.name]),
                    error=state.errors[unit.name],
                    halted=state.halted[unit.name],
                )
                for unit in declared
            )
            result = BuildResult(
                target=final_stage,
                route=route,
                units=reports,
                link=link_result,
                link_error=link_error,
                executable=executable,
                interrupted=interrupted,
                output=output if final_stage == TARGET_LINK else None,
            )
            return result
        finally:
            log.append_event(
                {
                    "event": "build.finished",
                    "ok": result is not None and result.ok,
                    "exit_code": result.exit_code if result is not None else None,
                    "failed": result.failed_units if result is not None else [],
                }
            )
            log.unbind()


def write_report(result: BuildResult, path: str | Path) -> Dict[str, Any]:
    """Write a schema-checked canonical manifest of ``result`` to ``path``."""

    payload = result.to_dict()
    payload["digests"] = digest_artifacts(result.artifact_paths())
    assert_valid(payload, "build_report")
    write_manifest(payload, path)
    return payload


def _merge_env(overrides: Mapping[str, str] | None = None) -> Dict[str, str]:
    env: Dict[str, str] = {str(k): str(v) for k, v in os.environ.items()}
    if overrides:
        env.update({str(k): str(v) for k, v in overrides.items()})
    return env


def _cli_settings(settings: BuildSettings, args: argparse.Namespace) -> BuildSettings:
    changes: Dict[str, Any] = {}
    if getattr(args, "build_dir", None):
        changes["build_dir"] = Path(args.build_dir)
    if getattr(args, "jobs", None) is not None:
        if args.jobs < 1:
            raise UsageError("--jobs must be at least 1")
        changes["jobs"] = args.jobs
    if getattr(args, "fail_fast", None) is not None:
        changes["fail_fast"] = args.fail_fast
    if getattr(args, "direct", False):
        changes["route"] = ROUTE_DIRECT
    if getattr(args, "output", None):
        changes["output"] = args.output
    return replace(settings, **changes) if changes else settings


def _cli_link_options(
    config: Mapping[str, Any],
    env: Mapping[str, str],
    toolchain: ToolchainConfig,
    args: argparse.Namespace,
) -> LinkOptions:
    options = LinkOptions.from_config(config, env)
    changes: Dict[str, Any] = {}
    if getattr(args, "static", None) is not None:
        changes["static"] = args.static
    if getattr(args, "runtime", None):
        changes["runtime"] = args.runtime
    if getattr(args, "dynamic_linker", None):
        changes["dynamic_linker"] = args.dynamic_linker
    if getattr(args, "start_objects", None):
        changes["start_objects"] = tuple(args.start_objects)
    if getattr(args, "end_objects", None):
        changes["end_objects"] = tuple(args.end_objects)
    if getattr(args, "libraries", None):
        changes["libraries"] = tuple(args.libraries)
    if changes:
        options = replace(options, **changes)

    if getattr(args, "discover_runtime", False):
        names = get_section(config, "link.runtime_object_names")
        try:
            start, end = discover_runtime_objects(toolchain, names.get("start", ()), names.get("end", ()))
        except ToolInvocationError as exc:
            raise UsageError(f"runtime discovery failed: {exc}") from exc
        options = replace(options, runtime=RUNTIME_EXPLICIT, start_objects=start, end_objects=end)
    return options


def run_build(args: argparse.Namespace, env_overrides: Mapping[str, str] | None = None) -> BuildResult:
    """Resolve configuration for ``args`` and execute the build."""

    env_map = _merge_env(env_overrides)
    config = load_config(args.config, profile=args.profile, env=env_map)

    toolchain = toolchain_from_config(config, env_map)
    if args.timeout is not None:
        if args.timeout < 0:
            raise UsageError("--timeout must not be negative")
        toolchain = replace(toolchain, timeout_s=args.timeout or None)

    settings = _cli_settings(build_settings_from_config(config, env_map, profile=args.profile), args)
    log.configure(settings.log_dir, max_bytes=settings.log_max_bytes, enabled=settings.log_enabled)

    link_options = None
    if args.stage == TARGET_LINK:
        link_options = _cli_link_options(config, env_map, toolchain, args)

    orchestrator = PipelineOrchestrator(toolchain, settings, verbose=args.verbose)
    return orchestrator.build(args.sources, args.stage, link_options)


def report_result(result: BuildResult, report_path: str | None = None) -> int:
    print(result.render())
    diagnostics = result.diagnostics()
    if diagnostics:
        print(diagnostics, file=sys.stderr)
    if report_path:
        write_report(result, report_path)
    return result.exit_code


def add_build_arguments(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    parser.add_argument("sources", nargs="+", help="Translation units to build, in link order.")
    parser.add_argument(
        "--stage",
        choices=TARGETS,
        default=TARGET_LINK,
        help="Last stage to run for every unit. Defaults to 'link'.",
    )
    parser.add_argument("-o", "--output", help="Name of the linked executable.")
    parser.add_argument(
        "--fail-fast",
        dest="fail_fast",
        action="store_true",
        help="Stop starting new stages after the first failure.",
    )
    parser.add_argument(
        "--keep-going",
        dest="fail_fast",
        action="store_false",
        help="Keep building independent units after a failure.",
    )
    parser.set_defaults(fail_fast=None)
    parser.add_argument("-j", "--jobs", type=int, help="Number of units built in parallel.")
    parser.add_argument(
        "--direct",
        action="store_true",
        help="Produce objects with the single compile-to-object stage.",
    )
    parser.add_argument("--build-dir", help="Directory receiving every intermediate artifact.")
    parser.add_argument("--static", dest="static", action="store_true", help="Link statically.")
    parser.add_argument("--dynamic", dest="static", action="store_false", help="Link dynamically.")
    parser.set_defaults(static=None)
    parser.add_argument(
        "--runtime",
        choices=(RUNTIME_EXPLICIT, RUNTIME_AUTO),
        help="'explicit' links with the raw linker and listed runtime objects; "
        "'auto' lets the compiler driver supply them.",
    )
    parser.add_argument("--dynamic-linker", help="Runtime loader path embedded in the executable.")
    parser.add_argument(
        "--start-object",
        dest="start_objects",
        action="append",
        help="Runtime start object, repeatable, kept in the given order.",
    )
    parser.add_argument(
        "--end-object",
        dest="end_objects",
        action="append",
        help="Runtime end object, repeatable, kept in the given order.",
    )
    parser.add_argument("-l", "--lib", dest="libraries", action="append", help="Library argument, e.g. -lc.")
    parser.add_argument(
        "--discover-runtime",
        action="store_true",
        help="Ask the compiler driver for the configured runtime objects and link explicitly.",
    )
    parser.add_argument("--timeout", type=float, help="Per-invocation timeout in seconds (0 disables).")
    parser.add_argument("--report", help="Write a JSON build manifest to this path.")
    parser.add_argument("--config", help="Path to a sepcomp.toml file.")
    parser.add_argument("--profile", help="Configuration profile (defaults to SEPCOMP_PROFILE or 'dev').")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print per-stage progress.")
    return parser


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Drive C/C++ sources through preprocess, assembly, object and link stages.",
    )
    return add_build_arguments(parser)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        result = run_build(args)
    except UsageError as exc:
        parser.error(str(exc))
    return report_result(result, args.report)


__all__ = [
    "EXIT_INTERRUPTED",
    "EXIT_LINK_FAILURE",
    "EXIT_OK",
    "EXIT_STAGE_FAILURE",
    "EXIT_USAGE",
    "BuildResult",
    "PipelineOrchestrator",
    "PipelineState",
    "UnitReport",
    "add_build_arguments",
    "build_parser",
    "declare_units",
    "main",
    "report_result",
    "run_build",
    "write_report",
]


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
