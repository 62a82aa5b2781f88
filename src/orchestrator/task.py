"""Stage, unit and result definitions for the build pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

__all__ = [
    "STAGE_PREPROCESS",
    "STAGE_TO_ASSEMBLY",
    "STAGE_ASSEMBLE",
    "STAGE_TO_OBJECT",
    "STAGE_LINK",
    "COMPILE_STAGES",
    "STATE_DECLARED",
    "STATE_PREPROCESSED",
    "STATE_ASSEMBLY",
    "STATE_OBJECT",
    "UNIT_STATES",
    "STAGE_EDGES",
    "CXX_SUFFIXES",
    "SourceUnit",
    "StageResult",
    "UnitJob",
    "state_rank",
]

STAGE_PREPROCESS = "preprocess"
STAGE_TO_ASSEMBLY = "to-assembly"
STAGE_ASSEMBLE = "assemble"
STAGE_TO_OBJECT = "to-object"
STAGE_LINK = "link"

COMPILE_STAGES = (STAGE_PREPROCESS, STAGE_TO_ASSEMBLY, STAGE_ASSEMBLE, STAGE_TO_OBJECT)

STATE_DECLARED = "declared"
STATE_PREPROCESSED = "preprocessed"
STATE_ASSEMBLY = "assembly"
STATE_OBJECT = "object"

UNIT_STATES = (STATE_DECLARED, STATE_PREPROCESSED, STATE_ASSEMBLY, STATE_OBJECT)

# stage -> (required state, resulting state)
STAGE_EDGES: Dict[str, Tuple[str, str]] = {
    STAGE_PREPROCESS: (STATE_DECLARED, STATE_PREPROCESSED),
    STAGE_TO_ASSEMBLY: (STATE_PREPROCESSED, STATE_ASSEMBLY),
    STAGE_ASSEMBLE: (STATE_ASSEMBLY, STATE_OBJECT),
    STAGE_TO_OBJECT: (STATE_DECLARED, STATE_OBJECT),
}

CXX_SUFFIXES = frozenset({".cc", ".cpp", ".cxx", ".c++", ".C"})

_STATE_SUFFIX = {
    STATE_ASSEMBLY: ".s",
    STATE_OBJECT: ".o",
}


def state_rank(state: str) -> int:
    """Return the position of ``state`` in the forward-only unit lifecycle."""

    try:
        return UNIT_STATES.index(state)
    except ValueError:
        raise ValueError(f"Unknown unit state: {state!r}") from None


@dataclass
class SourceUnit:
    """One translation unit and the artifacts it has produced so far.

    ``artifacts`` maps a unit state to the file produced when the state was
    reached; the declared state points at the source itself.  ``history``
    records every state reached, in order, and never decreases.
    """

    source: Path
    name: str = ""
    state: str = STATE_DECLARED
    artifacts: Dict[str, Path] = field(default_factory=dict)
    history: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.source = Path(self.source)
        if not self.name:
            self.name = self.source.stem
        self.artifacts.setdefault(STATE_DECLARED, self.source)
        if not self.history:
            self.history.append(self.state)

    @property
    def is_cxx(self) -> bool:
        return self.source.suffix in CXX_SUFFIXES

    def artifact_path(self, build_dir: Path, state: str) -> Path:
        """Deterministic location of the artifact for ``state`` under ``build_dir``."""

        if state == STATE_DECLARED:
            return self.source
        if state == STATE_PREPROCESSED:
            suffix = ".ii" if self.is_cxx else ".i"
        else:
            suffix = _STATE_SUFFIX[state]
        return Path(build_dir) / f"{self.name}{suffix}"

    def reached(self, state: str) -> bool:
        return state_rank(self.state) >= state_rank(state)

    def advance(self, state: str, artifact: Path) -> None:
        """Move the unit forward to ``state``; moving backwards is rejected."""

        if state_rank(state) <= state_rank(self.state):
            raise ValueError(
                f"Unit '{self.name}' cannot move from '{self.state}' back to '{state}'"
            )
        self.state = state
        self.artifacts[state] = Path(artifact)
        self.history.append(state)


@dataclass(frozen=True)
class UnitJob:
    """A unit together with the ordered stages it must go through."""

    unit: SourceUnit
    stages: Tuple[str, ...]


@dataclass(frozen=True)
class StageResult:
    """Outcome of one external tool invocation."""

    unit: str
    stage: str
    command: Tuple[str, ...]
    exit_status: Optional[int]
    stdout: str = ""
    stderr: str = ""
    artifact: Optional[Path] = None
    duration_ms: int = 0
    timed_out: bool = False
    interrupted: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_status == 0 and self.artifact is not None

    def to_dict(self) -> Dict[str, object]:
        return {
            "unit": self.unit,
            "stage": self.stage,
            "command": list(self.command),
            "exit_status": self.exit_status,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "artifact": str(self.artifact) if self.artifact is not None else None,
            "duration_ms": self.duration_ms,
            "timed_out": self.timed_out,
            "interrupted": self.interrupted,
        }
