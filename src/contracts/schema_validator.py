"""Offline JSON Schema validation for sepcomp configuration and build reports."""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, Dict, Iterator, List

import jsonschema

from .errors import ContractError, ContractIssue, make_issue

_SCHEMA_ROOT = Path(__file__).resolve().parent / "schemas"
_CATALOG_PATH = _SCHEMA_ROOT / "catalog.json"

_catalog_cache: Dict[str, str] | None = None
_schema_cache: Dict[str, Dict[str, Any]] = {}
_compiled_cache: Dict[str, Any] = {}


def _load_catalog() -> Dict[str, str]:
    global _catalog_cache
    if _catalog_cache is None:
        _catalog_cache = json.loads(_CATALOG_PATH.read_text("utf-8"))
    return _catalog_cache


def load_schema(kind: str) -> Dict[str, Any]:
    """Return a copy of the schema registered for ``kind`` in the catalog."""

    catalog = _load_catalog()
    if kind not in catalog:
        raise KeyError(f"Unknown contract kind: {kind}")

    if kind not in _schema_cache:
        resolved = (_SCHEMA_ROOT / catalog[kind]).resolve()
        if not str(resolved).startswith(str(_SCHEMA_ROOT)):
            raise ValueError("Schema path escapes the schema directory")
        _schema_cache[kind] = json.loads(resolved.read_text("utf-8"))
    return copy.deepcopy(_schema_cache[kind])


def _compiled(kind: str) -> Any:
    if kind not in _compiled_cache:
        schema = load_schema(kind)
        validator_cls = jsonschema.validators.validator_for(schema, default=jsonschema.Draft202012Validator)
        validator_cls.check_schema(schema)
        _compiled_cache[kind] = validator_cls(schema)
    return _compiled_cache[kind]


def _json_path(error: jsonschema.ValidationError) -> str:
    components: List[str] = ["$"]
    for part in error.absolute_path:
        if isinstance(part, int):
            components.append(f"[{part}]")
        else:
            components.append(f".{part}")
    return "".join(components)


def iter_issues(payload: Any, kind: str) -> Iterator[ContractIssue]:
    """Yield every schema finding for ``payload`` in a stable order."""

    validator = _compiled(kind)
    errors = sorted(validator.iter_errors(payload), key=lambda err: (list(map(str, err.absolute_path)), err.message))
    for error in errors:
        yield make_issue(f"schema.{error.validator}", error.message, _json_path(error))


def assert_valid(payload: Any, kind: str) -> None:
    """Raise :class:`ContractError` if ``payload`` does not satisfy ``kind``."""

    issues = list(iter_issues(payload, kind))
    if issues:
        raise ContractError(kind, issues)


__all__ = ["assert_valid", "iter_issues", "load_schema"]
