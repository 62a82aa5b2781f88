"""Canonical storage of build manifests and artifact digests."""

from __future__ import annotations

import copy
import hashlib
import json
import math
import unicodedata
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping

_CHUNK = 1 << 16


def _normalize(obj: Any) -> Any:
    """Return a deep-normalised structure suitable for canonical JSON."""

    if isinstance(obj, Mapping):
        return {str(k): _normalize(v) for k, v in sorted(obj.items(), key=lambda item: str(item[0]))}
    if isinstance(obj, (list, tuple)):
        return [_normalize(item) for item in obj]
    if isinstance(obj, str):
        return unicodedata.normalize("NFC", obj)
    if isinstance(obj, Path):
        return unicodedata.normalize("NFC", str(obj))
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise ValueError("Non-finite numbers are not allowed in manifests")
        return obj
    return obj


def canonicalize(obj: Mapping[str, Any]) -> bytes:
    """Serialise *obj* into canonical JSON bytes.

    Dictionaries are sorted lexicographically by key, strings are normalised to
    NFC, and the output does not contain insignificant whitespace.
    """

    normalised = _normalize(obj)
    return json.dumps(normalised, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def file_digest(path: str | Path) -> str:
    """Return the ``sha256-`` digest of the bytes stored at *path*."""

    digest = hashlib.sha256()
    with Path(path).open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK), b""):
            digest.update(chunk)
    return f"sha256-{digest.hexdigest()}"


def digest_artifacts(paths: Iterable[str | Path]) -> Dict[str, str]:
    """Map each existing file in *paths* to its digest; missing files are skipped."""

    digests: Dict[str, str] = {}
    for path in paths:
        candidate = Path(path)
        if candidate.is_file():
            digests[str(candidate)] = file_digest(candidate)
    return digests


def compute_manifest_id(obj: Mapping[str, Any]) -> str:
    """Hash the canonical form of *obj* with any ``manifest_id`` field removed."""

    base = dict(copy.deepcopy(obj))
    base.pop("manifest_id", None)
    return f"sha256-{hashlib.sha256(canonicalize(base)).hexdigest()}"


def write_manifest(obj: Dict[str, Any], path: str | Path) -> str:
    """Persist *obj* as canonical JSON at *path* and return its identifier.

    The identifier is written into the stored copy and into *obj* itself.
    """

    if not isinstance(obj, dict):
        raise TypeError("Manifest must be a mapping")

    manifest = copy.deepcopy(obj)
    manifest_id = compute_manifest_id(manifest)
    manifest["manifest_id"] = manifest_id

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(canonicalize(manifest))

    obj["manifest_id"] = manifest_id
    return manifest_id


def load_manifest(path: str | Path) -> Dict[str, Any]:
    return json.loads(Path(path).read_text("utf-8"))


__all__ = [
    "canonicalize",
    "compute_manifest_id",
    "digest_artifacts",
    "file_digest",
    "load_manifest",
    "write_manifest",
]
