"""Thin wrapper around ``wget`` for mirroring a documentation page locally.

Nothing beyond parameter plumbing lives here: no retries, no caching and no
content negotiation besides wget's own extension allow-list.
"""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Tuple

from orchestrator.errors import ToolInvocationError, UsageError

__all__ = ["MirrorRequest", "build_command", "run_mirror", "clean_mirror"]


@dataclass(frozen=True)
class MirrorRequest:
    url: str
    folder: Path
    depth: int = 2
    accept: Tuple[str, ...] = ()


def build_command(request: MirrorRequest, wget: Sequence[str] = ("wget",)) -> List[str]:
    """Return the wget argv: mirror, page requisites, adjusted extensions, converted links."""

    if not request.url:
        raise UsageError("a page URL is required for mirroring")
    if request.depth < 0:
        raise UsageError("mirror depth must not be negative")

    argv = [*wget, "-mpEk", "-np", "-r", "-l", str(request.depth), "-P", str(request.folder)]
    if request.accept:
        argv.extend(["-A", ",".join(request.accept)])
    argv.append(request.url)
    return argv


def run_mirror(request: MirrorRequest, wget: Sequence[str] = ("wget",)) -> int:
    """Create the output folder, run wget in the foreground and return its exit code."""

    argv = build_command(request, wget)
    Path(request.folder).mkdir(parents=True, exist_ok=True)
    print(f"[mirror] {' '.join(argv)}")
    try:
        completed = subprocess.run(argv, check=False)
    except FileNotFoundError as exc:
        raise ToolInvocationError(argv[0], "not found") from exc
    except PermissionError as exc:
        raise ToolInvocationError(argv[0], "not executable") from exc
    return completed.returncode


def clean_mirror(folder: Path, stray_index: Path | None = Path("index.html")) -> List[Path]:
    """Remove the mirror tree and a stray top-level ``index.html``; return what was removed."""

    removed: List[Path] = []
    folder = Path(folder)
    if folder.is_dir():
        shutil.rmtree(folder)
        removed.append(folder)
    if stray_index is not None and Path(stray_index).is_file():
        Path(stray_index).unlink()
        removed.append(Path(stray_index))
    return removed
