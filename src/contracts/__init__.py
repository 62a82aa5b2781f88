"""JSON Schema contracts for build configuration and build reports."""

from __future__ import annotations

from .errors import ContractError, ContractIssue
from .schema_validator import assert_valid, iter_issues, load_schema

__all__ = [
    "ContractError",
    "ContractIssue",
    "assert_valid",
    "iter_issues",
    "load_schema",
]
