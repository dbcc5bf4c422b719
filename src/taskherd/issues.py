from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Protocol

ISSUE_GROUP = "issues"


class IssueCloseError(RuntimeError):
    """Raised when an issue could not be closed on the tracker."""


class IssueCloser(Protocol):
    def close_issue(self, number: int, comment: str) -> None: ...


def parse_issue_number(task_name: str) -> int:
    """Leading issue number of a name like ``42-fix-bug``, or 0."""
    head = task_name.split("-", 1)[0]
    if not head.isdigit():
        return 0
    return int(head)


def is_issue_task(group: str | None) -> bool:
    return group == ISSUE_GROUP


class GitHubCLICloser:
    """Close issues with the ``gh`` command line from inside a repository checkout."""

    def __init__(self, repo_dir: Path, binary: str = "gh") -> None:
        self.repo_dir = repo_dir
        self.binary = binary

    def close_issue(self, number: int, comment: str) -> None:
        try:
            proc = subprocess.run(
                [self.binary, "issue", "close", str(number), "--comment", comment],
                cwd=self.repo_dir,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise IssueCloseError(f"{self.binary} binary not found") from exc
        if proc.returncode != 0:
            raise IssueCloseError(proc.stderr.strip() or proc.stdout.strip())
