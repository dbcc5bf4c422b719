import asyncio
import os
from pathlib import Path

import pytest

from conftest import Herd, git
from taskherd.backends.base import BackendExecutionError
from taskherd.commands import CommandError, TaskCommands
from taskherd.orchestrator import NoChangesError
from taskherd.state.locks import LockBusyError
from taskherd.state.record import RecordEntry
from taskherd.state.tasks import TaskNotFoundError, TaskState


def remote_sha(remote: Path, branch: str) -> str:
    return git(remote, "rev-parse", f"refs/heads/{branch}")


def test_run_commits_pushes_and_moves_to_review(herd: Herd) -> None:
    herd.agent.commits("feature.txt")

    result = asyncio.run(herd.orchestrator.run("add-feature"))

    assert result.changed
    assert result.branch == "herd/add-feature"
    assert result.task.state is TaskState.REVIEW
    assert (herd.store.state_dir(TaskState.REVIEW) / "add-feature.md").exists()
    assert not (herd.store.tasks_dir / "add-feature.md").exists()
    assert herd.ledger.entries() == [RecordEntry(result.sha, "add-feature")]
    assert remote_sha(herd.remote, "herd/add-feature") == result.sha
    assert not herd.locks.is_held("add-feature")

    request = herd.agent.requests[0]
    assert request.working_directory == herd.workspace("add-feature")
    assert request.model == "test-model"
    assert request.auto_accept is True
    assert "Add the feature file." in request.document
    assert "Follow the project conventions." in request.document


def test_run_without_commit_fails_and_keeps_task_pending(herd: Herd) -> None:
    with pytest.raises(NoChangesError, match="no changes"):
        asyncio.run(herd.orchestrator.run("add-feature"))

    assert herd.store.find("add-feature").state is TaskState.PENDING
    assert herd.ledger.entries() == []
    assert not herd.locks.is_held("add-feature")


def test_agent_error_after_commit_still_counts(herd: Herd) -> None:
    herd.agent.commits("feature.txt").fails("exited with status 1")

    result = asyncio.run(herd.orchestrator.run("add-feature"))

    assert result.changed
    assert result.task.state is TaskState.REVIEW
    assert len(herd.ledger.entries()) == 1


def test_agent_error_without_commit_is_raised(herd: Herd) -> None:
    herd.agent.fails("agent crashed")

    with pytest.raises(BackendExecutionError, match="agent crashed"):
        asyncio.run(herd.orchestrator.run("add-feature"))

    assert herd.store.find("add-feature").state is TaskState.PENDING
    assert not herd.locks.is_held("add-feature")


def test_run_refuses_when_task_is_locked(herd: Herd) -> None:
    herd.locks.acquire("add-feature")

    with pytest.raises(LockBusyError) as excinfo:
        asyncio.run(herd.orchestrator.run("add-feature"))

    assert excinfo.value.pid == os.getpid()
    assert herd.agent.requests == []


def test_run_unknown_task(herd: Herd) -> None:
    with pytest.raises(TaskNotFoundError, match="not found in pending state"):
        asyncio.run(herd.orchestrator.run("does-not-exist"))


def test_review_without_changes_is_a_no_op(herd: Herd) -> None:
    herd.agent.commits("feature.txt")
    asyncio.run(herd.orchestrator.run("add-feature"))
    herd.agent.actions.clear()

    result = asyncio.run(herd.orchestrator.review("add-feature"))

    assert not result.changed
    assert result.task.state is TaskState.REVIEW
    assert len(herd.ledger.entries()) == 1
    assert "Add the feature file." in herd.agent.last_document


def test_review_and_test_record_phase_labels(herd: Herd) -> None:
    herd.agent.commits("feature.txt")
    asyncio.run(herd.orchestrator.run("add-feature"))
    herd.agent.actions.clear()

    herd.agent.commits("review.txt")
    reviewed = asyncio.run(herd.orchestrator.review("add-feature"))
    herd.agent.actions.clear()
    herd.agent.commits("test_feature.txt")
    tested = asyncio.run(herd.orchestrator.test("add-feature"))

    assert reviewed.changed and tested.changed
    assert [entry.task_name for entry in herd.ledger.entries()] == [
        "add-feature",
        "review:add-feature",
        "test:add-feature",
    ]
    assert herd.store.find("add-feature").state is TaskState.REVIEW
    assert remote_sha(herd.remote, "herd/add-feature") == tested.sha


def test_review_requires_review_state(herd: Herd) -> None:
    with pytest.raises(TaskNotFoundError, match="not found in review state"):
        asyncio.run(herd.orchestrator.review("add-feature"))


def test_run_group_uses_nested_workspaces(herd: Herd) -> None:
    herd.agent.commits("api.txt")

    results = asyncio.run(herd.orchestrator.run_group("backend"))

    assert [result.branch for result in results] == [
        "herd/backend/add-api",
        "herd/backend/add-db",
    ]
    assert [request.working_directory for request in herd.agent.requests] == [
        herd.workspace("add-api", "backend"),
        herd.workspace("add-db", "backend"),
    ]
    assert "Backend work shares the API layer." in herd.agent.requests[0].document
    assert [task.name for task in herd.store.tasks_by_state(TaskState.REVIEW)] == [
        "add-api",
        "add-db",
    ]


def test_review_after_group_run_reuses_group_branch(herd: Herd) -> None:
    herd.agent.commits("api.txt")
    asyncio.run(herd.orchestrator.run("backend/add-api"))
    herd.agent.actions.clear()
    herd.agent.commits("api_review.txt")

    result = asyncio.run(herd.orchestrator.review("add-api"))

    assert result.branch == "herd/backend/add-api"
    assert herd.agent.last_document
    assert herd.agent.requests[-1].working_directory == herd.workspace("add-api", "backend")


def test_run_group_without_pending_tasks(herd: Herd) -> None:
    with pytest.raises(TaskNotFoundError, match="no pending tasks found in group"):
        asyncio.run(herd.orchestrator.run_group("frontend"))


def test_uncommitted_work_is_left_for_the_agent(herd: Herd) -> None:
    workspace = herd.workspace("add-feature")
    herd.workspaces.prepare(workspace)
    git(workspace, "checkout", "-b", "herd/add-feature")
    (workspace / "draft.txt").write_text("unfinished\n", encoding="utf-8")

    def finish(request):
        git(request.working_directory, "add", "-A")
        git(request.working_directory, "commit", "-m", "Finish draft")

    herd.agent.does(finish)

    result = asyncio.run(herd.orchestrator.run("add-feature"))

    assert result.changed
    assert git(workspace, "log", "-1", "--format=%s") == "Finish draft"


def test_status_reports_running_and_states(herd: Herd) -> None:
    herd.agent.commits("feature.txt")
    asyncio.run(herd.orchestrator.run("add-feature"))
    herd.locks.acquire("review:add-feature")
    herd.locks.acquire("another-task")

    status = herd.orchestrator.status()

    assert status["running"] == {
        "review:add-feature": {
            "action": "reviewing",
            "name": "add-feature",
            "pid": os.getpid(),
        },
        "another-task": {"action": "running", "name": "another-task", "pid": os.getpid()},
    }
    assert status["pending"] == ["backend/add-api", "backend/add-db"]
    assert status["review"] == ["add-feature"]
    assert "merge" not in status


def test_remove_moves_task_to_abandoned(herd: Herd) -> None:
    task = herd.orchestrator.remove("another-task", TaskState.PENDING)

    assert task.state is TaskState.ABANDONED
    assert herd.orchestrator.list_tasks(TaskState.ABANDONED)[0].name == "another-task"
    assert herd.orchestrator.view("another-task", TaskState.ABANDONED) == "Another task.\n"


def test_clean_runs_configured_command(herd: Herd) -> None:
    herd.workspaces.prepare(herd.workspace("add-feature"))
    herd.orchestrator.commands = TaskCommands({"clean": "touch cleaned.txt"})

    path = herd.orchestrator.clean("add-feature")

    assert (path / "cleaned.txt").exists()


def test_clean_without_command(herd: Herd) -> None:
    herd.workspaces.prepare(herd.workspace("add-feature"))

    with pytest.raises(CommandError, match="no clean command configured"):
        herd.orchestrator.clean("add-feature")


def test_status_keeps_every_phase_lock_of_a_task(herd: Herd) -> None:
    herd.agent.commits("feature.txt")
    asyncio.run(herd.orchestrator.run("add-feature"))
    herd.locks.acquire("review:add-feature")
    herd.locks.acquire("test:add-feature")

    running = herd.orchestrator.status()["running"]

    assert sorted(running) == ["review:add-feature", "test:add-feature"]
    assert {entry["action"] for entry in running.values()} == {"reviewing", "testing"}
    assert {entry["name"] for entry in running.values()} == {"add-feature"}


def test_group_tasks_span_every_state(herd: Herd) -> None:
    herd.agent.commits("api.txt")
    asyncio.run(herd.orchestrator.run("backend/add-api"))

    tasks = herd.orchestrator.group_tasks("backend")

    assert [(task.name, task.state) for task in tasks] == [
        ("add-api", TaskState.REVIEW),
        ("add-db", TaskState.PENDING),
    ]
    with pytest.raises(TaskNotFoundError, match="no tasks found in group 'frontend'"):
        herd.orchestrator.group_tasks("frontend")
