from __future__ import annotations

import os
import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

GROUP_DOCUMENT = "group.md"
OTHER_DIRNAME = "other"


class TaskStoreError(RuntimeError):
    """Raised when a task store operation cannot be applied."""


class TaskNotFoundError(TaskStoreError):
    """Raised when a task cannot be located in the requested states."""


class TaskState(str, Enum):
    PENDING = "pending"
    REVIEW = "review"
    MERGE = "merge"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


# Pending first so lookups across every state prefer the authoring area.
ALL_STATES: tuple[TaskState, ...] = (
    TaskState.PENDING,
    TaskState.REVIEW,
    TaskState.MERGE,
    TaskState.COMPLETED,
    TaskState.ABANDONED,
)
ACTIVE_STATES = frozenset({TaskState.PENDING, TaskState.REVIEW, TaskState.MERGE})


@dataclass(slots=True)
class Task:
    name: str
    state: TaskState
    file_path: Path
    group: str | None = None

    @property
    def label(self) -> str:
        if self.group:
            return f"{self.group}/{self.name}"
        return self.name

    def content(self) -> str:
        return self.file_path.read_text(encoding="utf-8")

    def matches(self, ref: str) -> bool:
        return ref in {self.name, self.label}


def branch_name(prefix: str, name: str, group: str | None = None) -> str:
    raw = f"{group}/{name}" if group else name
    normalized = re.sub(r"\s+", "-", raw.strip().lower())
    return f"{prefix}/{normalized}"


TaskTraversal = Callable[[Path, TaskState], list[Task]]


def _task_files(directory: Path) -> list[Path]:
    return sorted(
        path
        for path in directory.iterdir()
        if path.is_file() and path.suffix == ".md" and path.name != GROUP_DOCUMENT
    )


def flat_traversal(directory: Path, state: TaskState) -> list[Task]:
    """Tasks directly inside ``directory``; subdirectories are ignored."""
    if not directory.is_dir():
        return []
    return [Task(name=path.stem, state=state, file_path=path) for path in _task_files(directory)]


def grouped_traversal(directory: Path, state: TaskState) -> list[Task]:
    """Tasks inside ``directory`` plus one level of group subdirectories."""
    if not directory.is_dir():
        return []
    tasks = flat_traversal(directory, state)
    for group_dir in sorted(path for path in directory.iterdir() if path.is_dir()):
        for path in _task_files(group_dir):
            tasks.append(
                Task(name=path.stem, state=state, file_path=path, group=group_dir.name)
            )
    return tasks


TRAVERSALS: dict[TaskState, TaskTraversal] = {
    TaskState.PENDING: grouped_traversal,
    TaskState.REVIEW: flat_traversal,
    TaskState.MERGE: flat_traversal,
    TaskState.COMPLETED: flat_traversal,
    TaskState.ABANDONED: flat_traversal,
}


class TaskStore:
    """Task documents whose lifecycle state is their directory placement.

    Layout under the design directory::

        rules.md, lint.md, functional.md     shared context (all optional)
        tasks/<name>.md                      pending
        tasks/<group>/<name>.md              pending, grouped
        tasks/<group>/group.md               shared group context
        state/<review|merge|completed|abandoned>/<name>.md
        state/record.json                    record ledger
    """

    def __init__(self, design_dir: Path) -> None:
        self.design_dir = design_dir

    @property
    def tasks_dir(self) -> Path:
        return self.design_dir / "tasks"

    @property
    def state_root(self) -> Path:
        return self.design_dir / "state"

    @property
    def record_path(self) -> Path:
        return self.state_root / "record.json"

    def state_dir(self, state: TaskState) -> Path:
        if state is TaskState.PENDING:
            return self.tasks_dir
        return self.state_root / state.value

    def expected_dirs(self) -> list[Path]:
        return [self.state_dir(state) for state in ALL_STATES]

    def scaffold(self) -> None:
        for directory in self.expected_dirs():
            directory.mkdir(parents=True, exist_ok=True)
        for name in ("rules.md", "lint.md", "functional.md"):
            path = self.design_dir / name
            if not path.exists():
                path.write_text("", encoding="utf-8")
        if not self.record_path.exists():
            self.record_path.write_text("[]\n", encoding="utf-8")
        (self.design_dir / "milestone").mkdir(parents=True, exist_ok=True)

    def tasks_by_state(self, state: TaskState) -> list[Task]:
        return TRAVERSALS[state](self.state_dir(state), state)

    def pending_tasks(self) -> list[Task]:
        return self.tasks_by_state(TaskState.PENDING)

    def all_tasks(self) -> list[Task]:
        tasks: list[Task] = []
        for state in ALL_STATES:
            tasks.extend(self.tasks_by_state(state))
        return tasks

    def find(self, ref: str, *states: TaskState) -> Task:
        search = states or ALL_STATES
        for state in search:
            for task in self.tasks_by_state(state):
                if task.matches(ref):
                    return task
        if len(search) == 1:
            raise TaskNotFoundError(f"task {ref!r} not found in {search[0].value} state")
        joined = " or ".join(state.value for state in search)
        raise TaskNotFoundError(f"task {ref!r} not found in {joined} state")

    def groups(self) -> list[str]:
        return sorted({task.group for task in self.pending_tasks() if task.group})

    def group_tasks(self, group: str) -> list[Task]:
        tasks = [task for task in self.pending_tasks() if task.group == group]
        return sorted(tasks, key=lambda task: task.name)

    def move(self, task: Task, state: TaskState) -> Task:
        if state is TaskState.PENDING:
            raise TaskStoreError("cannot move a task back to pending")
        if task.state is state:
            return task
        destination_dir = self.state_dir(state)
        destination_dir.mkdir(parents=True, exist_ok=True)
        destination = destination_dir / task.file_path.name
        if destination.exists():
            raise TaskStoreError(
                f"task {task.name!r} already exists in {state.value} state: {destination}"
            )
        os.replace(task.file_path, destination)
        return Task(name=task.name, state=state, file_path=destination)

    def delete(self, task: Task) -> None:
        task.file_path.unlink()

    @property
    def other_dir(self) -> Path:
        return self.design_dir / OTHER_DIRNAME

    @staticmethod
    def _validate_other_name(name: str) -> None:
        if "/" in name:
            raise TaskStoreError("file name must not contain '/'")
        if ".." in name:
            raise TaskStoreError("file name must not contain '..'")
        if not name:
            raise TaskStoreError("file name must not be empty")

    def other_files(self) -> list[str]:
        """Names of the supporting documents kept next to the tasks."""
        if not self.other_dir.is_dir():
            return []
        return sorted(path.name for path in self.other_dir.iterdir() if path.is_file())

    def other_content(self, name: str) -> str:
        self._validate_other_name(name)
        path = self.other_dir / name
        if not path.is_file():
            raise TaskNotFoundError(f"other file {name!r} not found")
        return path.read_text(encoding="utf-8")

    def remove_other(self, name: str) -> None:
        self._validate_other_name(name)
        path = self.other_dir / name
        if not path.is_file():
            raise TaskNotFoundError(f"other file {name!r} not found")
        path.unlink()

    def _read_optional(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""

    def rules(self) -> str:
        return self._read_optional(self.design_dir / "rules.md")

    def lint(self) -> str:
        return self._read_optional(self.design_dir / "lint.md")

    def functional(self) -> str:
        return self._read_optional(self.design_dir / "functional.md")

    def group_content(self, group: str | None) -> str:
        if not group:
            return ""
        return self._read_optional(self.tasks_dir / group / GROUP_DOCUMENT)

    def assemble_document(self, content: str, group_content: str = "") -> str:
        sections: list[str] = []
        for heading, body in (
            ("Rules", self.rules()),
            ("Lint Rules", self.lint()),
            ("Group", group_content),
            ("Task", content),
            ("Functional Tests", self.functional()),
        ):
            if body.strip():
                sections.append(f"# {heading}\n\n{body.strip()}\n")
        return "\n".join(sections)
