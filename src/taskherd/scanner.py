from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from taskherd.commands import CommandError, TaskCommands
from taskherd.state.locks import LockManager
from taskherd.state.tasks import ACTIVE_STATES, Task, TaskState, TaskStore
from taskherd.workspace.manager import RESERVED_DIRNAMES, WorkspaceManager
from taskherd.workspace.repo import GitRepo

logger = logging.getLogger(__name__)

DuplicateChooser = Callable[[str, list[Task]], int | None]


@dataclass(slots=True)
class FixAction:
    description: str
    apply: Callable[[], None]


@dataclass(slots=True)
class ActionResult:
    action: FixAction
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class ScanReport:
    actions: list[FixAction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    resolved: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.actions and not self.warnings


def _collides(tasks: list[Task]) -> bool:
    # Moved tasks lose their group, so a missing group matches any group.
    groups = [task.group for task in tasks]
    if None in groups:
        return True
    return len(set(groups)) < len(groups)


class ConsistencyScanner:
    """Find and repair drift between tasks, locks and workspaces.

    Each check contributes fix actions or warnings. Duplicate tasks need an
    operator decision and are resolved during the scan through ``chooser``.
    """

    def __init__(
        self,
        store: TaskStore,
        locks: LockManager,
        workspaces: WorkspaceManager,
        commands: TaskCommands,
    ) -> None:
        self.store = store
        self.locks = locks
        self.workspaces = workspaces
        self.commands = commands

    def find_duplicates(self) -> dict[str, list[Task]]:
        by_name: dict[str, list[Task]] = {}
        for task in self.store.all_tasks():
            by_name.setdefault(task.name, []).append(task)
        return {
            name: tasks
            for name, tasks in sorted(by_name.items())
            if len(tasks) > 1 and _collides(tasks)
        }

    def resolve_duplicates(self, chooser: DuplicateChooser, report: ScanReport) -> None:
        for name, copies in self.find_duplicates().items():
            keep = chooser(name, copies)
            if keep is None or not 0 <= keep < len(copies):
                report.warnings.append(f"duplicate task {name!r} left unresolved")
                continue
            for index, task in enumerate(copies):
                if index != keep:
                    self.store.delete(task)
            survivor = copies[keep]
            report.resolved.append(f"kept {name!r} in {survivor.state.value} state")

    def scan(self, chooser: DuplicateChooser | None = None) -> ScanReport:
        report = ScanReport()
        if chooser is not None:
            self.resolve_duplicates(chooser, report)
        else:
            for name, copies in self.find_duplicates().items():
                states = ", ".join(task.state.value for task in copies)
                report.warnings.append(f"duplicate task {name!r} in states: {states}")
        self.check_stale_locks(report)
        self.check_branches(report)
        self.check_state_dirs(report)
        self.check_orphans(report)
        self.check_stuck_merges(report)
        self.check_remotes(report)
        return report

    def check_stale_locks(self, report: ScanReport) -> None:
        for path in self.locks.stale_markers():
            report.actions.append(
                FixAction(
                    description=f"remove stale lock {path.name}",
                    apply=lambda path=path: path.unlink(missing_ok=True),
                )
            )

    def check_branches(self, report: ScanReport) -> None:
        for task in self.store.all_tasks():
            if task.state not in ACTIVE_STATES:
                continue
            binding = self.workspaces.bind(task)
            if not GitRepo.is_repo(binding.path):
                continue
            repo = GitRepo(binding.path)
            current = repo.current_branch()
            if current == binding.branch:
                continue
            if repo.branch_exists(binding.branch):
                report.actions.append(
                    FixAction(
                        description=(
                            f"checkout {binding.branch} in {binding.path} (currently on {current})"
                        ),
                        apply=lambda repo=repo, branch=binding.branch: repo.checkout(branch),
                    )
                )
            else:
                report.warnings.append(
                    f"workspace {binding.path} is on {current} and branch "
                    f"{binding.branch} does not exist"
                )

    def check_state_dirs(self, report: ScanReport) -> None:
        for directory in self.store.expected_dirs():
            if directory.is_dir():
                continue
            report.actions.append(
                FixAction(
                    description=f"create missing directory {directory}",
                    apply=lambda directory=directory: directory.mkdir(parents=True, exist_ok=True),
                )
            )

    def _expected_workspaces(self) -> set[Path]:
        return {self.workspaces.bind(task).path for task in self.store.all_tasks()}

    def orphaned_workspaces(self) -> list[Path]:
        work_dir = self.workspaces.work_dir
        if not work_dir.is_dir():
            return []
        expected = self._expected_workspaces()
        orphans: list[Path] = []
        for child in sorted(work_dir.iterdir()):
            if not child.is_dir() or child.name in RESERVED_DIRNAMES or child in expected:
                continue
            if GitRepo.is_repo(child):
                orphans.append(child)
                continue
            nested_dirs = sorted(path for path in child.iterdir() if path.is_dir())
            if not nested_dirs:
                orphans.append(child)
                continue
            # A group directory holds one workspace per grouped task.
            orphans.extend(nested for nested in nested_dirs if nested not in expected)
        return orphans

    def _teardown(self, path: Path) -> None:
        if path.is_dir() and self.commands.has_command("clean", path):
            try:
                self.commands.run("clean", path)
            except CommandError as exc:
                logger.warning("clean command failed in %s: %s", path, exc)
        if path.exists():
            shutil.rmtree(path)

    def check_orphans(self, report: ScanReport) -> None:
        for path in self.orphaned_workspaces():
            report.actions.append(
                FixAction(
                    description=f"tear down and remove orphaned workspace {path}",
                    apply=lambda path=path: self._teardown(path),
                )
            )

    def check_stuck_merges(self, report: ScanReport) -> None:
        for task in self.store.tasks_by_state(TaskState.MERGE):
            if self.locks.is_held(f"merge:{task.label}"):
                continue
            report.actions.append(
                FixAction(
                    description=f"move interrupted merge {task.label!r} back to review",
                    apply=lambda task=task: self._return_to_review(task),
                )
            )

    def _return_to_review(self, task: Task) -> None:
        if task.file_path.exists():
            self.store.move(task, TaskState.REVIEW)

    def check_remotes(self, report: ScanReport) -> None:
        expected_url = self.workspaces.source_url.rstrip("/")
        paths = self._expected_workspaces()
        paths.update(self.workspaces.work_dir / name for name in RESERVED_DIRNAMES)
        for path in sorted(paths):
            if not GitRepo.is_repo(path):
                continue
            url = GitRepo(path).remote_url()
            if url is None:
                report.warnings.append(f"workspace {path} has no origin remote")
            elif url.rstrip("/") != expected_url:
                report.warnings.append(
                    f"workspace {path} points at {url}, expected {self.workspaces.source_url}"
                )

    @staticmethod
    def apply(actions: list[FixAction]) -> list[ActionResult]:
        results: list[ActionResult] = []
        for action in actions:
            try:
                action.apply()
            except (OSError, RuntimeError) as exc:
                logger.warning("fix failed: %s: %s", action.description, exc)
                results.append(ActionResult(action, exc))
            else:
                results.append(ActionResult(action))
        return results
