"""Shared error types for configuration and report contracts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence


@dataclass(frozen=True)
class ContractIssue:
    """Single schema finding, addressed by a JSON path such as ``$.build.jobs``."""

    code: str
    msg: str
    path: str


class ContractError(RuntimeError):
    """Raised when a payload fails validation against its schema."""

    def __init__(self, kind: str, issues: Sequence[ContractIssue]) -> None:
        self.kind = kind
        self.issues: List[ContractIssue] = list(issues)
        detail = "; ".join(f"{issue.path}: {issue.msg}" for issue in self.issues)
        super().__init__(f"{kind} contract violated: {detail}")


def make_issue(code: str, msg: str, path: str) -> ContractIssue:
    """Construct a :class:`ContractIssue`."""

    return ContractIssue(code=code, msg=msg, path=path)


__all__ = ["ContractIssue", "ContractError", "make_issue"]
