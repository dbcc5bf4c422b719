from __future__ import annotations

import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import pytest

from taskherd.backends.base import AgentBackend, AgentRequest, BackendExecutionError
from taskherd.commands import TaskCommands
from taskherd.config import AgentConfig
from taskherd.orchestrator import Orchestrator
from taskherd.state.locks import LockManager
from taskherd.state.record import RecordLedger
from taskherd.state.tasks import TaskStore
from taskherd.workspace.manager import WorkspaceManager


def git(cwd: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", *args], cwd=cwd, check=True, text=True, capture_output=True
    )
    return proc.stdout.strip()


@pytest.fixture(autouse=True)
def git_identity(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch) -> None:
    config_dir = tmp_path_factory.mktemp("gitconfig")
    config_file = config_dir / "gitconfig"
    config_file.write_text(
        "[user]\n"
        "\tname = Test User\n"
        "\temail = test@example.com\n"
        "[init]\n"
        "\tdefaultBranch = main\n"
        "[commit]\n"
        "\tgpgsign = false\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(config_file))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test User")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test User")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.com")


@pytest.fixture
def remote_repo(tmp_path: Path) -> Path:
    """A bare repository with one commit on ``main``."""
    setup = tmp_path / "setup"
    setup.mkdir()
    git(setup, "init", "-b", "main")
    (setup / "README.md").write_text("# project\n", encoding="utf-8")
    git(setup, "add", "README.md")
    git(setup, "commit", "-m", "initial commit")
    bare = tmp_path / "remote.git"
    git(tmp_path, "clone", "--bare", str(setup), str(bare))
    return bare


def write_design(design_dir: Path) -> None:
    files = {
        "rules.md": "Follow the project conventions.\n",
        "lint.md": "No unused imports.\n",
        "functional.md": "The service answers health checks.\n",
        "tasks/add-feature.md": "Add the feature file.\n",
        "tasks/another-task.md": "Another task.\n",
        "tasks/backend/group.md": "Backend work shares the API layer.\n",
        "tasks/backend/add-api.md": "Add an API.\n",
        "tasks/backend/add-db.md": "Add a database.\n",
        "state/record.json": "[]\n",
    }
    for relative, content in files.items():
        path = design_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    for state in ("review", "merge", "completed", "abandoned"):
        (design_dir / "state" / state).mkdir(parents=True, exist_ok=True)


AgentAction = Callable[[AgentRequest], None]


class FakeAgent(AgentBackend):
    name = "fake"

    def __init__(self) -> None:
        self.requests: list[AgentRequest] = []
        self.actions: list[AgentAction] = []

    async def invoke(self, request: AgentRequest) -> None:
        self.requests.append(request)
        for action in self.actions:
            action(request)

    @property
    def last_document(self) -> str:
        return self.requests[-1].document

    def commits(self, filename: str = "feature.txt", content: str = "feature\n") -> FakeAgent:
        def action(request: AgentRequest) -> None:
            (request.working_directory / filename).write_text(content, encoding="utf-8")
            git(request.working_directory, "add", "-A")
            git(request.working_directory, "commit", "-m", f"Add {filename}")

        self.actions.append(action)
        return self

    def fails(self, message: str = "agent crashed") -> FakeAgent:
        def action(request: AgentRequest) -> None:
            raise BackendExecutionError(message, backend=self.name, exit_code=1)

        self.actions.append(action)
        return self

    def does(self, action: AgentAction) -> FakeAgent:
        self.actions.append(action)
        return self


@dataclass
class Herd:
    base_dir: Path
    remote: Path
    store: TaskStore
    ledger: RecordLedger
    locks: LockManager
    workspaces: WorkspaceManager
    commands: TaskCommands
    agent: FakeAgent
    orchestrator: Orchestrator

    def workspace(self, name: str, group: str | None = None) -> Path:
        if group:
            return self.workspaces.work_dir / group / name
        return self.workspaces.work_dir / name


@pytest.fixture
def herd(tmp_path: Path, remote_repo: Path) -> Herd:
    base_dir = tmp_path / "base"
    design_dir = base_dir / "design"
    write_design(design_dir)
    store = TaskStore(design_dir)
    ledger = RecordLedger(store.record_path)
    locks = LockManager(base_dir / ".taskherd")
    workspaces = WorkspaceManager(base_dir / "work", str(remote_repo), "herd")
    commands = TaskCommands({"test": "true", "lint": "true"})
    agent = FakeAgent()
    orchestrator = Orchestrator(
        store=store,
        ledger=ledger,
        locks=locks,
        workspaces=workspaces,
        commands=commands,
        backend=agent,
        agent_config=AgentConfig(model="test-model", auto_accept=True),
    )
    return Herd(
        base_dir=base_dir,
        remote=remote_repo,
        store=store,
        ledger=ledger,
        locks=locks,
        workspaces=workspaces,
        commands=commands,
        agent=agent,
        orchestrator=orchestrator,
    )


def push_upstream_change(remote: Path, tmp_path: Path, filename: str, content: str) -> str:
    """Commit ``filename`` on the remote's main branch from a scratch clone."""
    scratch = tmp_path / f"upstream-{filename.replace('/', '-')}"
    git(tmp_path, "clone", str(remote), str(scratch))
    (scratch / filename).write_text(content, encoding="utf-8")
    git(scratch, "add", "-A")
    git(scratch, "commit", "-m", f"Upstream change to {filename}")
    git(scratch, "push", "origin", "main")
    return git(scratch, "rev-parse", "HEAD")
