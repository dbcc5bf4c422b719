from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from taskherd.state.tasks import Task, TaskState, branch_name
from taskherd.workspace.repo import GitError, GitRepo

logger = logging.getLogger(__name__)

RECONCILE_DIRNAME = "_reconcile"
VERIFY_DIRNAME = "_verify"
RESERVED_DIRNAMES = frozenset({RECONCILE_DIRNAME, VERIFY_DIRNAME})


class WorkspaceError(RuntimeError):
    """Raised when a workspace cannot be materialized."""


@dataclass(slots=True, frozen=True)
class WorkspaceBinding:
    """Where a task's working copy lives and which branch it works on."""

    path: Path
    branch: str
    group: str | None = None


class WorkspaceManager:
    def __init__(self, work_dir: Path, source_url: str, branch_prefix: str = "herd") -> None:
        self.work_dir = work_dir
        self.source_url = source_url
        self.branch_prefix = branch_prefix

    def _nested_group(self, name: str) -> str | None:
        if not self.work_dir.is_dir():
            return None
        groups = [
            child.name
            for child in sorted(self.work_dir.iterdir())
            if child.is_dir()
            and child.name not in RESERVED_DIRNAMES
            and GitRepo.is_repo(child / name)
        ]
        if len(groups) == 1:
            return groups[0]
        return None

    def bind(self, task: Task) -> WorkspaceBinding:
        group = task.group
        if group is None and task.state is not TaskState.PENDING:
            # Moved tasks drop their group; an existing nested workspace recovers it.
            if not GitRepo.is_repo(self.work_dir / task.name):
                group = self._nested_group(task.name)
        if group:
            path = self.work_dir / group / task.name
        else:
            path = self.work_dir / task.name
        return WorkspaceBinding(
            path=path,
            branch=branch_name(self.branch_prefix, task.name, group),
            group=group,
        )

    def prepare(self, path: Path) -> GitRepo:
        """Clone ``path`` fresh, or fetch it when it already is a repository.

        An existing repository is never reset or cleaned so uncommitted work
        left behind by an interrupted operation survives.
        """
        if GitRepo.is_repo(path):
            repo = GitRepo(path)
            try:
                repo.fetch()
                return repo
            except GitError as exc:
                logger.warning("sync of %s failed, re-cloning: %s", path, exc)
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()
        try:
            return GitRepo.clone(self.source_url, path)
        except GitError as exc:
            raise WorkspaceError(str(exc)) from exc
