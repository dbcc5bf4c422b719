import asyncio

import pytest

from conftest import Herd, git
from taskherd.backends.base import AgentRequest
from taskherd.functional import FunctionalWorkflow, VerificationFailedError
from taskherd.state.tasks import TaskNotFoundError, TaskState


def write_marker(name: str, text: str = "PASS\n"):
    def action(request: AgentRequest) -> None:
        (request.working_directory / name).write_text(text, encoding="utf-8")

    return action


def complete(herd: Herd, name: str, content: str) -> None:
    path = herd.store.state_dir(TaskState.COMPLETED) / f"{name}.md"
    path.write_text(content, encoding="utf-8")


def test_reconcile_updates_functional_and_clears_completed(herd: Herd) -> None:
    complete(herd, "add-feature", "Add the feature file.\n")
    complete(herd, "add-login", "Users can log in.\n")

    def rewrite(request: AgentRequest) -> None:
        path = request.working_directory / "functional.md"
        assert path.read_text(encoding="utf-8") == "The service answers health checks.\n"
        path.write_text("Health checks.\nUsers can log in.\n", encoding="utf-8")

    herd.agent.does(rewrite)

    result = asyncio.run(FunctionalWorkflow(herd.orchestrator).reconcile())

    assert result.updated
    assert result.deleted == ["add-feature", "add-login"]
    assert herd.store.functional() == "Health checks.\nUsers can log in.\n"
    assert herd.store.tasks_by_state(TaskState.COMPLETED) == []
    assert herd.agent.requests[0].working_directory == herd.workspaces.work_dir / "_reconcile"
    assert "## add-login\n\nUsers can log in." in herd.agent.last_document
    assert not herd.locks.is_held("reconcile")


def test_reconcile_needs_completed_tasks(herd: Herd) -> None:
    with pytest.raises(TaskNotFoundError, match="no completed tasks"):
        asyncio.run(FunctionalWorkflow(herd.orchestrator).reconcile())


def test_verify_pushes_fixes_when_passed(herd: Herd) -> None:
    herd.agent.commits("fix.txt", "fixed\n").does(write_marker("verify-passed.txt"))

    outcome = asyncio.run(FunctionalWorkflow(herd.orchestrator).verify())

    assert outcome.pushed
    assert git(herd.remote, "rev-parse", "refs/heads/main") == outcome.sha
    assert git(herd.remote, "show", "main:fix.txt") == "fixed"
    assert not (herd.workspaces.work_dir / "_verify" / "verify-passed.txt").exists()


def test_verify_passed_without_fixes(herd: Herd) -> None:
    before = git(herd.remote, "rev-parse", "refs/heads/main")
    herd.agent.does(write_marker("verify-passed.txt"))

    outcome = asyncio.run(FunctionalWorkflow(herd.orchestrator).verify())

    assert not outcome.pushed
    assert git(herd.remote, "rev-parse", "refs/heads/main") == before


def test_verify_failure_reports_unmet_requirements(herd: Herd) -> None:
    herd.agent.does(write_marker("verify-failed.txt", "- health checks return 500\n"))

    with pytest.raises(VerificationFailedError) as excinfo:
        asyncio.run(FunctionalWorkflow(herd.orchestrator).verify())

    assert "health checks return 500" in str(excinfo.value)
    assert not herd.locks.is_held("verify")


def test_verify_without_marker_fails(herd: Herd) -> None:
    with pytest.raises(VerificationFailedError, match="neither"):
        asyncio.run(FunctionalWorkflow(herd.orchestrator).verify())


def test_verify_needs_functional_requirements(herd: Herd) -> None:
    (herd.store.design_dir / "functional.md").write_text("", encoding="utf-8")

    with pytest.raises(TaskNotFoundError, match="functional.md is empty"):
        asyncio.run(FunctionalWorkflow(herd.orchestrator).verify())
