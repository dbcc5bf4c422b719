from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from taskherd import prompts
from taskherd.issues import IssueCloseError, is_issue_task, parse_issue_number
from taskherd.orchestrator import PhaseResult
from taskherd.state.tasks import Task, TaskNotFoundError, TaskState
from taskherd.workspace.manager import WorkspaceBinding
from taskherd.workspace.repo import GitError, GitRepo

if TYPE_CHECKING:
    from taskherd.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

MERGE_LOCK_PREFIX = "merge:"
UPSTREAM_LOG_LIMIT = 10


class MergeError(RuntimeError):
    """Raised when a merge attempt stops before finalizing."""


@dataclass(slots=True)
class RebaseOutcome:
    default_branch: str
    conflicts: list[str] = field(default_factory=list)
    upstream_log: list[str] = field(default_factory=list)


class MergeWorkflow:
    """Land a reviewed task branch on the default branch.

    The task sits in the merge state for the whole attempt. Any failure
    leaves it there with its lock released, and the next invocation starts
    again from the workspace as it is on disk.
    """

    def __init__(self, orchestrator: Orchestrator) -> None:
        self.orchestrator = orchestrator
        self.store = orchestrator.store

    def _locate(self, ref: str) -> Task:
        task = self.store.find(ref, TaskState.REVIEW, TaskState.MERGE)
        if task.state is not TaskState.MERGE:
            task = self.store.move(task, TaskState.MERGE)
        return task

    def _checkout_task_branch(self, repo: GitRepo, branch: str) -> None:
        if repo.rebase_in_progress():
            try:
                repo.rebase_abort()
            except GitError as exc:
                logger.warning("could not abort leftover rebase in %s: %s", repo.path, exc)
        if not repo.branch_exists(branch) and not repo.remote_branch_exists(branch):
            raise MergeError(f"task branch {branch!r} does not exist")
        if repo.has_changes():
            logger.info("working tree in %s is dirty; leaving it for the agent", repo.path)
            return
        repo.checkout(branch)

    def attempt_rebase(self, repo: GitRepo) -> RebaseOutcome:
        repo.fetch()
        default_branch = repo.default_branch()
        upstream = f"origin/{default_branch}"
        outcome = RebaseOutcome(default_branch=default_branch)
        if repo.has_changes() or repo.is_ancestor(upstream, "HEAD"):
            return outcome
        try:
            repo.rebase(upstream)
        except GitError:
            outcome.conflicts = repo.conflict_files()
            repo.rebase_abort()
            outcome.upstream_log = repo.log(upstream, UPSTREAM_LOG_LIMIT)
        return outcome

    def fast_forward(self, repo: GitRepo, branch: str, default_branch: str) -> str:
        repo.checkout(default_branch)
        repo.fetch()
        try:
            repo.rebase(f"origin/{default_branch}")
            repo.rebase(branch)
        except GitError:
            if repo.rebase_in_progress():
                repo.rebase_abort()
            raise
        repo.push(default_branch)
        sha = repo.last_commit_sha()
        if sha is None:
            raise MergeError(f"default branch {default_branch!r} has no commits")
        return sha

    def _close_issue(self, binding: WorkspaceBinding, task: Task, sha: str) -> None:
        if self.orchestrator.issue_closer is None or not is_issue_task(binding.group):
            return
        number = parse_issue_number(task.name)
        if number <= 0:
            return
        closer = self.orchestrator.issue_closer(binding.path)
        try:
            closer.close_issue(number, f"Closed by taskherd. Commit: {sha}")
        except IssueCloseError as exc:
            logger.warning("could not close issue #%d: %s", number, exc)

    async def merge(self, ref: str) -> PhaseResult:
        orchestrator = self.orchestrator
        task = self._locate(ref)
        with orchestrator.locks.hold(f"{MERGE_LOCK_PREFIX}{task.label}"):
            binding, repo = orchestrator.prepare(task)
            self._checkout_task_branch(repo, binding.branch)
            outcome = self.attempt_rebase(repo)

            commands = orchestrator.commands.effective(binding.path)
            orchestrator.commands.run("before", binding.path)
            document = prompts.merge_document(
                self.store,
                task.content(),
                commands,
                conflict_files=outcome.conflicts,
                default_branch=outcome.default_branch,
                upstream_log=outcome.upstream_log,
                sign=repo.has_signing_key(),
                timeout_seconds=float(orchestrator.agent_config.timeout_seconds),
            )
            before_sha = repo.last_commit_sha()
            agent_error = await orchestrator.invoke_agent(binding.path, document)
            after_sha = repo.last_commit_sha()
            if agent_error is not None:
                if after_sha == before_sha:
                    raise MergeError(f"agent failed: {agent_error}") from agent_error
                logger.warning("agent reported an error after committing: %s", agent_error)
            if repo.rebase_in_progress():
                raise MergeError("agent left a rebase in progress; re-run merge to resume")
            if repo.has_changes():
                raise MergeError("agent left uncommitted changes; re-run merge to resume")

            repo.force_push_with_lease(binding.branch)
            sha = self.fast_forward(repo, binding.branch, outcome.default_branch)

            orchestrator.ledger.add(sha, f"{MERGE_LOCK_PREFIX}{task.label}")
            task = self.store.move(task, TaskState.COMPLETED)
            self._close_issue(binding, task, sha)
            try:
                repo.delete_remote_branch(binding.branch)
            except GitError as exc:
                logger.warning("could not delete remote branch %s: %s", binding.branch, exc)
            return PhaseResult("merge", task, binding.branch, changed=True, sha=sha)

    async def merge_group(self, group: str) -> list[PhaseResult]:
        workspaces = self.orchestrator.workspaces
        candidates = [
            task
            for state in (TaskState.REVIEW, TaskState.MERGE)
            for task in self.store.tasks_by_state(state)
            if workspaces.bind(task).group == group
        ]
        if not candidates:
            raise TaskNotFoundError(f"no review or merge tasks found in group {group!r}")
        results: list[PhaseResult] = []
        for task in sorted(candidates, key=lambda item: item.name):
            results.append(await self.merge(task.label))
        return results
