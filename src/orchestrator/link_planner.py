"""Link planning: order runtime and unit objects, then invoke the linker.

The planner never resolves symbols itself.  It only guarantees the object
order the platform ABI expects (start objects, unit objects, libraries, end
objects) and reports whatever the external linker says, verbatim.
"""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence, Tuple, TYPE_CHECKING

from .errors import MissingObjectError, ToolInvocationError, UsageError
from .stage_runner import run_tool
from .task import STAGE_LINK, STATE_OBJECT, SourceUnit, StageResult

if TYPE_CHECKING:  # pragma: no cover
    from project_config import ToolchainConfig

__all__ = [
    "RUNTIME_AUTO",
    "RUNTIME_EXPLICIT",
    "LinkOptions",
    "LinkPlan",
    "LinkPlanner",
    "discover_runtime_objects",
]

RUNTIME_EXPLICIT = "explicit"
RUNTIME_AUTO = "auto"


@dataclass(frozen=True)
class LinkOptions:
    """How the final executable should be linked.

    With ``runtime="explicit"`` the raw linker is used and the caller lists
    the start and end objects.  With ``runtime="auto"`` the compiler driver
    links and supplies its own runtime objects, so the lists are ignored.
    """

    static: bool = False
    dynamic_linker: Optional[str] = None
    runtime: str = RUNTIME_AUTO
    start_objects: Tuple[str, ...] = ()
    end_objects: Tuple[str, ...] = ()
    libraries: Tuple[str, ...] = ()
    flags: Tuple[str, ...] = ()

    @classmethod
    def from_config(cls, config: Mapping[str, Any], env: Mapping[str, str] | None = None) -> "LinkOptions":
        env_map = os.environ if env is None else env
        section = config.get("link", {})
        dynamic_linker = env_map.get("SEPCOMP_DYNAMIC_LINKER") or section.get("dynamic_linker") or None
        return cls(
            static=bool(section.get("static", False)),
            dynamic_linker=dynamic_linker,
            runtime=str(section.get("runtime", RUNTIME_AUTO)),
            start_objects=tuple(section.get("start_objects", ())),
            end_objects=tuple(section.get("end_objects", ())),
            libraries=tuple(section.get("libraries", ())),
            flags=tuple(section.get("flags", ())),
        )


@dataclass(frozen=True)
class LinkPlan:
    output: Path
    start_objects: Tuple[Path, ...]
    unit_objects: Tuple[Path, ...]
    end_objects: Tuple[Path, ...]
    libraries: Tuple[str, ...] = ()
    dynamic_linker: Optional[str] = None
    static: bool = False
    runtime: str = RUNTIME_AUTO
    flags: Tuple[str, ...] = ()

    @property
    def objects(self) -> Tuple[Path, ...]:
        return self.start_objects + self.unit_objects + self.end_objects

    def arguments(self) -> Tuple[str, ...]:
        """Render the linker arguments, objects last and in plan order."""

        args = list(self.flags)
        if self.static:
            args.append("-static")
        elif self.dynamic_linker:
            if self.runtime == RUNTIME_EXPLICIT:
                args.extend(["-dynamic-linker", self.dynamic_linker])
            else:
                args.append(f"-Wl,-dynamic-linker,{self.dynamic_linker}")
        args.extend(["-o", str(self.output)])
        args.extend(str(path) for path in self.start_objects)
        args.extend(str(path) for path in self.unit_objects)
        args.extend(self.libraries)
        args.extend(str(path) for path in self.end_objects)
        return tuple(args)


class LinkPlanner:
    def __init__(self, toolchain: "ToolchainConfig", build_dir: str | Path) -> None:
        self.toolchain = toolchain
        self.build_dir = Path(build_dir)

    def _output_path(self, output_name: str) -> Path:
        output = Path(output_name)
        if output.is_absolute() or output.parent != Path("."):
            return output
        return self.build_dir / output

    def validate(self, options: LinkOptions, output_name: str) -> None:
        """Reject link requests that can never succeed, before any unit is built."""

        if not output_name:
            raise UsageError("an output name is required for linking")
        if options.runtime not in (RUNTIME_EXPLICIT, RUNTIME_AUTO):
            raise UsageError(f"unknown runtime mode '{options.runtime}'")
        if not options.static and not options.dynamic_linker:
            raise UsageError("dynamically linked output needs a dynamic linker path")
        if options.runtime == RUNTIME_EXPLICIT and not options.start_objects:
            raise UsageError(
                "explicit runtime linking needs start objects; list them or use runtime discovery"
            )

    def plan(self, units: Sequence[SourceUnit], output_name: str, options: LinkOptions) -> LinkPlan:
        """Compose the ordered link plan for ``units``.

        Raises :class:`MissingObjectError` when any unit has not reached the
        object state; a partial link is never planned.
        """

        if not units:
            raise UsageError("nothing to link: no units were declared")
        missing = [unit.name for unit in units if not unit.reached(STATE_OBJECT)]
        if missing:
            raise MissingObjectError(missing)
        self.validate(options, output_name)

        if options.runtime == RUNTIME_EXPLICIT:
            start = tuple(Path(path) for path in options.start_objects)
            end = tuple(Path(path) for path in options.end_objects)
        else:
            start = end = ()

        return LinkPlan(
            output=self._output_path(output_name),
            start_objects=start,
            unit_objects=tuple(Path(unit.artifacts[STATE_OBJECT]) for unit in units),
            end_objects=end,
            libraries=tuple(options.libraries),
            dynamic_linker=None if options.static else options.dynamic_linker,
            static=options.static,
            runtime=options.runtime,
            flags=tuple(options.flags),
        )

    def command_for(self, plan: LinkPlan) -> Tuple[str, ...]:
        tool = self.toolchain.linker if plan.runtime == RUNTIME_EXPLICIT else self.toolchain.driver
        return (*tool, *self.toolchain.flags_for(STAGE_LINK), *plan.arguments())

    def execute(self, plan: LinkPlan) -> StageResult:
        """Run the linker for ``plan``; a stale executable is removed first."""

        plan.output.parent.mkdir(parents=True, exist_ok=True)
        if plan.output.exists():
            plan.output.unlink()
        return run_tool(
            self.command_for(plan),
            unit=plan.output.name,
            stage=STAGE_LINK,
            output=plan.output,
            timeout_s=self.toolchain.timeout_s,
        )


def discover_runtime_objects(
    toolchain: "ToolchainConfig",
    start_names: Sequence[str],
    end_names: Sequence[str],
) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
    """Ask the compiler driver where the named runtime objects live.

    ``<driver> -print-file-name=NAME`` echoes ``NAME`` unchanged when the
    driver does not know the file; that case is a usage error rather than a
    guess.
    """

    def locate(name: str) -> str:
        argv = [*toolchain.driver, f"-print-file-name={name}"]
        try:
            completed = subprocess.run(argv, capture_output=True, text=True, check=False)
        except FileNotFoundError as exc:
            raise ToolInvocationError(argv[0], "not found") from exc
        except PermissionError as exc:
            raise ToolInvocationError(argv[0], "not executable") from exc
        located = completed.stdout.strip()
        if completed.returncode != 0 or not os.path.isabs(located) or not os.path.exists(located):
            raise UsageError(f"compiler driver cannot locate runtime object '{name}'")
        return located

    return tuple(locate(name) for name in start_names), tuple(locate(name) for name in end_names)
