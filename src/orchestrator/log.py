"""JSONL build event log.

Events land in ``<base_dir>/<YYYYMMDD>/build_NN.jsonl``; a file is rolled
over once it reaches ``max_bytes``.  Fields bound with :func:`bind` (the
build id and profile of the running build) are merged into every event
together with a per-build sequence number, so interleaved events from
worker threads can still be ordered and grouped by build.
"""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

__all__ = [
    "append_event",
    "bind",
    "configure",
    "current_log_path",
    "is_enabled",
    "unbind",
]

_DEFAULT_MAX_BYTES = 100 * 1024 * 1024
_FILE_PREFIX = "build"

_LOCK = threading.Lock()
_settings: Dict[str, Any] = {
    "dir": Path("logs/build"),
    "max_bytes": _DEFAULT_MAX_BYTES,
    "enabled": True,
}
_context: Dict[str, Any] = {}
_seq = 0
_current: Path | None = None


def configure(base_dir: str | Path, *, max_bytes: int | None = None, enabled: bool = True) -> None:
    """Point the log at ``base_dir``; ``enabled=False`` turns every append into a no-op."""

    global _current
    with _LOCK:
        _settings["dir"] = Path(base_dir)
        _settings["max_bytes"] = max_bytes or _DEFAULT_MAX_BYTES
        _settings["enabled"] = enabled
        _current = None


def is_enabled() -> bool:
    return bool(_settings["enabled"])


def bind(**fields: Any) -> None:
    """Attach ``fields`` to every following event and restart the sequence."""

    global _seq
    with _LOCK:
        _context.clear()
        _context.update(fields)
        _seq = 0


def unbind() -> None:
    with _LOCK:
        _context.clear()


def _rotate_target() -> Path:
    global _current
    day_dir = _settings["dir"] / datetime.now(timezone.utc).strftime("%Y%m%d")
    day_dir.mkdir(parents=True, exist_ok=True)
    limit = _settings["max_bytes"]

    if _current is not None and _current.parent == day_dir:
        if not _current.exists() or _current.stat().st_size < limit:
            return _current

    index = 0
    candidate = day_dir / f"{_FILE_PREFIX}_{index:02d}.jsonl"
    while candidate.exists() and candidate.stat().st_size >= limit:
        index += 1
        candidate = day_dir / f"{_FILE_PREFIX}_{index:02d}.jsonl"
    _current = candidate
    return candidate


def append_event(event: Dict[str, Any]) -> Path | None:
    """Write ``event`` as one JSON line; returns the file used, or ``None`` when disabled."""

    global _seq
    if not _settings["enabled"]:
        return None

    with _LOCK:
        _seq += 1
        payload = {**_context, **event, "seq": _seq}
        payload.setdefault("ts", datetime.now(timezone.utc).isoformat(timespec="milliseconds"))
        path = _rotate_target()
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str) + "\n")
    return path


def current_log_path() -> Path | None:
    return _current
