from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from taskherd import prompts
from taskherd.state.tasks import TaskNotFoundError, TaskState
from taskherd.workspace.manager import RECONCILE_DIRNAME, VERIFY_DIRNAME
from taskherd.workspace.repo import GitRepo

if TYPE_CHECKING:
    from taskherd.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

PASSED_MARKER = "verify-passed.txt"
FAILED_MARKER = "verify-failed.txt"


class VerificationFailedError(RuntimeError):
    """Raised when the agent reports unmet functional requirements."""

    def __init__(self, report: str) -> None:
        super().__init__(f"functional requirements verification failed:\n{report.strip()}")
        self.report = report


@dataclass(slots=True)
class ReconcileResult:
    updated: bool
    deleted: list[str]


@dataclass(slots=True)
class VerifyOutcome:
    pushed: bool
    sha: str | None = None


class FunctionalWorkflow:
    """Keep ``functional.md`` in step with what has been built."""

    def __init__(self, orchestrator: Orchestrator) -> None:
        self.orchestrator = orchestrator
        self.store = orchestrator.store

    def _sync_default_branch(self, repo: GitRepo) -> str:
        repo.fetch()
        default_branch = repo.default_branch()
        if not repo.has_changes():
            repo.rebase(f"origin/{default_branch}")
        return default_branch

    async def reconcile(self) -> ReconcileResult:
        completed = self.store.tasks_by_state(TaskState.COMPLETED)
        if not completed:
            raise TaskNotFoundError("no completed tasks to reconcile")
        orchestrator = self.orchestrator
        with orchestrator.locks.hold("reconcile"):
            work_dir = orchestrator.workspaces.work_dir / RECONCILE_DIRNAME
            repo = orchestrator.workspaces.prepare(work_dir)
            self._sync_default_branch(repo)

            functional = self.store.functional()
            functional_path = work_dir / "functional.md"
            functional_path.write_text(functional, encoding="utf-8")
            orchestrator.commands.run("before", work_dir)
            document = prompts.reconcile_document(
                functional, [(task.label, task.content()) for task in completed]
            )
            agent_error = await orchestrator.invoke_agent(work_dir, document)
            if agent_error is not None:
                raise agent_error

            updated_text = functional_path.read_text(encoding="utf-8")
            updated = updated_text != functional
            if updated:
                (self.store.design_dir / "functional.md").write_text(
                    updated_text, encoding="utf-8"
                )
            deleted: list[str] = []
            for task in completed:
                self.store.delete(task)
                deleted.append(task.label)
            return ReconcileResult(updated=updated, deleted=deleted)

    async def verify(self) -> VerifyOutcome:
        functional = self.store.functional()
        if not functional.strip():
            raise TaskNotFoundError("functional.md is empty; nothing to verify")
        orchestrator = self.orchestrator
        with orchestrator.locks.hold("verify"):
            work_dir = orchestrator.workspaces.work_dir / VERIFY_DIRNAME
            repo = orchestrator.workspaces.prepare(work_dir)
            self._sync_default_branch(repo)
            for marker in (PASSED_MARKER, FAILED_MARKER):
                (work_dir / marker).unlink(missing_ok=True)

            orchestrator.commands.run("before", work_dir)
            commands = orchestrator.commands.effective(work_dir)
            document = prompts.verify_document(
                self.store, functional, commands, sign=repo.has_signing_key()
            )
            before_sha = repo.last_commit_sha()
            agent_error = await orchestrator.invoke_agent(work_dir, document)
            if agent_error is not None:
                raise agent_error

            passed = work_dir / PASSED_MARKER
            failed = work_dir / FAILED_MARKER
            if failed.exists():
                report = failed.read_text(encoding="utf-8")
                failed.unlink()
                raise VerificationFailedError(report)
            if not passed.exists():
                raise VerificationFailedError(
                    f"agent wrote neither {PASSED_MARKER} nor {FAILED_MARKER}"
                )
            passed.unlink()

            after_sha = repo.last_commit_sha()
            if after_sha is None or after_sha == before_sha:
                return VerifyOutcome(pushed=False)
            default_branch = self._sync_default_branch(repo)
            repo.push(default_branch)
            logger.info("pushed verify fixes %s to %s", after_sha[:12], default_branch)
            return VerifyOutcome(pushed=True, sha=repo.last_commit_sha())
