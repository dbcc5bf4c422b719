from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskherd import prompts
from taskherd.backends.base import AgentBackend, AgentRequest, BackendExecutionError
from taskherd.commands import CommandError, DevOutcome, TaskCommands
from taskherd.config import AgentConfig
from taskherd.issues import IssueCloser
from taskherd.state.locks import LockManager
from taskherd.state.record import RecordLedger
from taskherd.state.tasks import ALL_STATES, Task, TaskNotFoundError, TaskState, TaskStore
from taskherd.workspace.manager import WorkspaceBinding, WorkspaceError, WorkspaceManager
from taskherd.workspace.repo import GitRepo

logger = logging.getLogger(__name__)

DocumentBuilder = Callable[[Task, WorkspaceBinding, dict[str, str], bool], str]
IssueCloserFactory = Callable[[Path], IssueCloser]


class NoChangesError(RuntimeError):
    """Raised when the agent finished without moving the branch head."""


@dataclass(slots=True, frozen=True)
class Phase:
    name: str
    lock_prefix: str
    source_states: tuple[TaskState, ...]
    requires_change: bool
    target_state: TaskState | None = None

    def qualify(self, label: str) -> str:
        return f"{self.lock_prefix}{label}"


RUN = Phase("run", "", (TaskState.PENDING,), requires_change=True, target_state=TaskState.REVIEW)
REVIEW = Phase("review", "review:", (TaskState.REVIEW,), requires_change=False)
TEST = Phase("test", "test:", (TaskState.REVIEW,), requires_change=False)


@dataclass(slots=True)
class PhaseResult:
    phase: str
    task: Task
    branch: str
    changed: bool
    sha: str | None = None


class Orchestrator:
    def __init__(
        self,
        store: TaskStore,
        ledger: RecordLedger,
        locks: LockManager,
        workspaces: WorkspaceManager,
        commands: TaskCommands,
        backend: AgentBackend,
        agent_config: AgentConfig | None = None,
        issue_closer: IssueCloserFactory | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.locks = locks
        self.workspaces = workspaces
        self.commands = commands
        self.backend = backend
        self.agent_config = agent_config or AgentConfig()
        self.issue_closer = issue_closer

    async def invoke_agent(self, work_dir: Path, document: str) -> BackendExecutionError | None:
        """Run the agent and hand back its error instead of raising it.

        Callers decide what the error means by looking at the branch history.
        """
        request = AgentRequest(
            working_directory=work_dir,
            document=document,
            model=self.agent_config.model or None,
            auto_accept=self.agent_config.auto_accept,
            plan_mode=self.agent_config.plan_mode,
        )
        try:
            await self.backend.invoke(request)
        except BackendExecutionError as exc:
            return exc
        return None

    @staticmethod
    def select_branch(repo: GitRepo, branch: str) -> None:
        if repo.has_changes():
            current = repo.current_branch()
            if current != branch:
                logger.warning(
                    "working tree on %s has uncommitted changes; not switching to %s",
                    current,
                    branch,
                )
            return
        repo.checkout_or_create(branch)

    def prepare(self, task: Task) -> tuple[WorkspaceBinding, GitRepo]:
        binding = self.workspaces.bind(task)
        repo = self.workspaces.prepare(binding.path)
        return binding, repo

    async def _execute(self, phase: Phase, ref: str, build: DocumentBuilder) -> PhaseResult:
        task = self.store.find(ref, *phase.source_states)
        with self.locks.hold(phase.qualify(task.label)):
            binding, repo = self.prepare(task)
            self.select_branch(repo, binding.branch)
            self.commands.run("before", binding.path)
            commands = self.commands.effective(binding.path)
            document = build(task, binding, commands, repo.has_signing_key())

            before_sha = repo.last_commit_sha()
            agent_error = await self.invoke_agent(binding.path, document)
            after_sha = repo.last_commit_sha()

            if after_sha is None or after_sha == before_sha:
                if agent_error is not None:
                    raise agent_error
                if phase.requires_change:
                    raise NoChangesError(f"agent produced no changes for task {task.label!r}")
                return PhaseResult(phase.name, task, binding.branch, changed=False)

            if agent_error is not None:
                logger.warning(
                    "agent reported an error after committing %s: %s", after_sha[:12], agent_error
                )
            self.ledger.add(after_sha, phase.qualify(task.label))
            repo.push_with_lease_fallback(binding.branch)
            if phase.target_state is not None:
                task = self.store.move(task, phase.target_state)
            return PhaseResult(phase.name, task, binding.branch, changed=True, sha=after_sha)

    async def run(self, ref: str) -> PhaseResult:
        def build(task: Task, binding: WorkspaceBinding, commands: dict[str, str], sign: bool) -> str:
            return prompts.run_document(
                self.store,
                task.content(),
                self.store.group_content(task.group),
                commands,
                sign=sign,
                timeout_seconds=float(self.agent_config.timeout_seconds),
            )

        return await self._execute(RUN, ref, build)

    async def review(self, ref: str) -> PhaseResult:
        def build(task: Task, binding: WorkspaceBinding, commands: dict[str, str], sign: bool) -> str:
            return prompts.review_document(self.store, task.content(), commands, sign=sign)

        return await self._execute(REVIEW, ref, build)

    async def test(self, ref: str) -> PhaseResult:
        def build(task: Task, binding: WorkspaceBinding, commands: dict[str, str], sign: bool) -> str:
            return prompts.testing_document(task.content(), commands, sign=sign)

        return await self._execute(TEST, ref, build)

    async def run_group(self, group: str) -> list[PhaseResult]:
        tasks = self.store.group_tasks(group)
        if not tasks:
            raise TaskNotFoundError(f"no pending tasks found in group {group!r}")
        results: list[PhaseResult] = []
        for task in tasks:
            results.append(await self.run(task.label))
        return results

    async def merge(self, ref: str) -> PhaseResult:
        from taskherd.merge import MergeWorkflow

        return await MergeWorkflow(self).merge(ref)

    async def merge_group(self, group: str) -> list[PhaseResult]:
        from taskherd.merge import MergeWorkflow

        return await MergeWorkflow(self).merge_group(group)

    def group_tasks(self, group: str) -> list[Task]:
        """Every task of ``group`` in any state, sorted by name.

        Moved tasks are matched through their group workspace.
        """
        tasks = [
            task for task in self.store.all_tasks() if self.workspaces.bind(task).group == group
        ]
        if not tasks:
            raise TaskNotFoundError(f"no tasks found in group {group!r}")
        return sorted(tasks, key=lambda task: (task.name, task.state.value))

    def list_tasks(self, state: TaskState) -> list[Task]:
        return self.store.tasks_by_state(state)

    def view(self, ref: str, *states: TaskState) -> str:
        return self.store.find(ref, *states).content()

    def remove(self, ref: str, *states: TaskState) -> Task:
        task = self.store.find(ref, *states)
        return self.store.move(task, TaskState.ABANDONED)

    def status(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        running = self.locks.read_all_live()
        if running:
            payload["running"] = {
                entry.label: {"action": entry.action, "name": entry.name, "pid": entry.pid}
                for entry in running
            }
        busy = {entry.name for entry in running if entry.action == "running"}
        for state in ALL_STATES:
            labels = [task.label for task in self.store.tasks_by_state(state)]
            if state is TaskState.PENDING:
                labels = [label for label in labels if label not in busy]
            if labels:
                payload[state.value] = labels
        return payload

    def clean(self, ref: str) -> Path:
        task = self.store.find(ref)
        binding = self.workspaces.bind(task)
        if not binding.path.is_dir():
            raise WorkspaceError(f"no workspace for task {task.label!r} at {binding.path}")
        if not self.commands.has_command("clean", binding.path):
            raise CommandError("no clean command configured and no clean target in Makefile")
        self.commands.run("clean", binding.path)
        return binding.path

    async def review_dev(self, ref: str, stop: asyncio.Event | None = None) -> DevOutcome:
        task = self.store.find(ref, TaskState.REVIEW)
        binding, repo = self.prepare(task)
        self.select_branch(repo, binding.branch)
        return await self.commands.run_dev(binding.path, stop)
