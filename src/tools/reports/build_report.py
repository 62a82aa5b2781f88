"""Aggregation helpers for JSONL build event logs."""

from __future__ import annotations

import json
from collections import Counter
from pathlib import Path
from typing import Iterable, Mapping

from artifacts.manifest import canonicalize

__all__ = ["aggregate"]


def _load_events(paths: Iterable[Path]) -> Iterable[Mapping[str, object]]:
    for path in paths:
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            yield json.loads(line)


def aggregate(paths: Iterable[Path], *, top: int = 5) -> Mapping[str, object]:
    builds = Counter()
    stages = Counter()
    failures = Counter()
    failing_units = Counter()
    links = Counter()
    for event in _load_events(paths):
        kind = event.get("event")
        if kind == "build.finished":
            builds["ok" if event.get("ok") else "failed"] += 1
        elif kind == "build.stage.completed":
            stage = str(event.get("stage", "unknown"))
            stages[stage] += 1
            if not event.get("ok"):
                failures[stage] += 1
                failing_units[str(event.get("unit", "unknown"))] += 1
        elif kind == "build.stage.error":
            failures[str(event.get("stage", "unknown"))] += 1
            failing_units[str(event.get("unit", "unknown"))] += 1
        elif kind == "build.link.completed":
            links["ok" if event.get("ok") else "failed"] += 1
        elif kind == "build.link.skipped":
            links["skipped"] += 1

    summary = {
        "builds": dict(builds),
        "stages": dict(stages),
        "stage_failures": dict(failures),
        "links": dict(links),
        "top_failing_units": failing_units.most_common(top),
    }
    # Canonicalise summary for deterministic snapshots
    summary["canonical"] = canonicalize(summary).decode("utf-8")
    return summary
