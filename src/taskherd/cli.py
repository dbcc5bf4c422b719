from __future__ import annotations

import asyncio
import json
import logging
import signal
from dataclasses import dataclass
from pathlib import Path

import click

from taskherd.backends import AgentBackend, ClaudeCodeBackend, CodexBackend
from taskherd.commands import DevOutcome, TaskCommands
from taskherd.config import CONFIG_FILENAME, HerdConfig, HerdPaths, load_config, save_config
from taskherd.functional import FunctionalWorkflow
from taskherd.issues import GitHubCLICloser
from taskherd.orchestrator import Orchestrator, PhaseResult
from taskherd.scanner import ConsistencyScanner
from taskherd.state import (
    LockManager,
    MilestoneStore,
    RecordLedger,
    Task,
    TaskState,
    TaskStore,
    TaskStoreError,
)
from taskherd.state.milestones import normalize_date
from taskherd.workspace import WorkspaceManager

config_option = click.option(
    "--config", "config_value", default=CONFIG_FILENAME, show_default=True
)


@dataclass(slots=True)
class Runtime:
    base_dir: Path
    config_path: Path
    config: HerdConfig
    paths: HerdPaths
    store: TaskStore
    locks: LockManager
    workspaces: WorkspaceManager
    commands: TaskCommands
    orchestrator: Orchestrator


def _resolve_config_path(base_dir: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = base_dir / config_path
    return config_path.resolve()


def _build_backend(config: HerdConfig) -> AgentBackend:
    timeout = float(config.agent.timeout_seconds)
    if config.agent.backend == "codex":
        return CodexBackend(binary=config.agent.binary or "codex", timeout_seconds=timeout)
    return ClaudeCodeBackend(binary=config.agent.binary or "claude", timeout_seconds=timeout)


def _load_runtime(base_dir: Path, config_path: Path) -> Runtime:
    if not config_path.exists():
        raise click.ClickException(f"{config_path} not found; run `taskherd init` first")
    config = load_config(config_path)
    paths = HerdPaths.resolve(base_dir, config)
    store = TaskStore(paths.design_dir)
    locks = LockManager(paths.state_dir)
    workspaces = WorkspaceManager(
        paths.work_dir, config.project.source_repo_url, config.project.branch_prefix
    )
    commands = TaskCommands(config.commands)
    orchestrator = Orchestrator(
        store=store,
        ledger=RecordLedger(store.record_path),
        locks=locks,
        workspaces=workspaces,
        commands=commands,
        backend=_build_backend(config),
        agent_config=config.agent,
        issue_closer=GitHubCLICloser,
    )
    return Runtime(
        base_dir=base_dir,
        config_path=config_path,
        config=config,
        paths=paths,
        store=store,
        locks=locks,
        workspaces=workspaces,
        commands=commands,
        orchestrator=orchestrator,
    )


def _runtime(config_value: str) -> Runtime:
    base_dir = Path.cwd().resolve()
    return _load_runtime(base_dir, _resolve_config_path(base_dir, config_value))


def _apply_agent_overrides(
    runtime: Runtime, model: str | None, auto_accept: bool, plan: bool
) -> None:
    agent = runtime.orchestrator.agent_config
    if model:
        agent.model = model
    if auto_accept:
        agent.auto_accept = True
    if plan:
        agent.plan_mode = True


def agent_options(func):
    func = click.option("--plan", is_flag=True, default=False, help="Require plan approval.")(func)
    func = click.option(
        "--auto-accept", "-y", is_flag=True, default=False, help="Skip tool confirmations."
    )(func)
    func = click.option("--model", default=None, help="Override the agent model.")(func)
    return func


def _echo_result(result: PhaseResult) -> None:
    if result.changed and result.sha:
        click.echo(f"{result.phase} {result.task.label}: {result.sha[:12]} on {result.branch}")
    else:
        click.echo(f"{result.phase} {result.task.label}: no changes made")


def _echo_tasks(tasks: list[Task]) -> None:
    if not tasks:
        click.echo("No tasks.")
        return
    for task in tasks:
        click.echo(task.label)


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log progress to stderr.")
def cli(verbose: bool) -> None:
    """Drive a coding agent through task documents."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.argument("source_repo_url")
@click.argument("design_dir", default="design")
@config_option
def init_command(source_repo_url: str, design_dir: str, config_value: str) -> None:
    base_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(base_dir, config_value)
    config = load_config(config_path)
    config.project.source_repo_url = source_repo_url
    config.project.design_dir = design_dir
    save_config(config_path, config)

    paths = HerdPaths.resolve(base_dir, config)
    TaskStore(paths.design_dir).scaffold()
    paths.state_dir.mkdir(parents=True, exist_ok=True)
    paths.work_dir.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized taskherd in {base_dir}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Design: {paths.design_dir}")


@cli.command("list")
@click.option(
    "--state",
    "state_value",
    type=click.Choice([state.value for state in TaskState]),
    default=TaskState.PENDING.value,
    show_default=True,
)
@config_option
def list_command(state_value: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _echo_tasks(runtime.orchestrator.list_tasks(TaskState(state_value)))


@cli.command("groups")
@config_option
def groups_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    groups = runtime.store.groups()
    if not groups:
        click.echo("No groups.")
    for group in groups:
        click.echo(group)


@cli.group("group")
def group_group() -> None:
    """Inspect task groups."""


@group_group.command("tasks")
@click.argument("group")
@config_option
def group_tasks_command(group: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        tasks = runtime.orchestrator.group_tasks(group)
    except TaskStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    for task in tasks:
        click.echo(f"[{task.state.value}] {group}/{task.name}")


@cli.group("other")
def other_group() -> None:
    """Supporting documents in the design directory's other/ folder."""


@other_group.command("list")
@config_option
def other_list_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    names = runtime.store.other_files()
    if not names:
        click.echo("No files in other/.")
    for name in names:
        click.echo(name)


@other_group.command("view")
@click.argument("name")
@config_option
def other_view_command(name: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        click.echo(runtime.store.other_content(name), nl=False)
    except TaskStoreError as exc:
        raise click.ClickException(str(exc)) from exc


@other_group.command("rm")
@click.argument("name")
@config_option
def other_rm_command(name: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        runtime.store.remove_other(name)
    except TaskStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Removed {name}")


@cli.command("status")
@config_option
def status_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    click.echo(json.dumps(runtime.orchestrator.status(), ensure_ascii=False, indent=2))


@cli.command("run")
@click.argument("task_name")
@agent_options
@config_option
def run_command(
    task_name: str, model: str | None, auto_accept: bool, plan: bool, config_value: str
) -> None:
    runtime = _runtime(config_value)
    _apply_agent_overrides(runtime, model, auto_accept, plan)
    try:
        result = asyncio.run(runtime.orchestrator.run(task_name))
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_result(result)


@cli.command("run-group")
@click.argument("group")
@agent_options
@config_option
def run_group_command(
    group: str, model: str | None, auto_accept: bool, plan: bool, config_value: str
) -> None:
    runtime = _runtime(config_value)
    _apply_agent_overrides(runtime, model, auto_accept, plan)
    try:
        results = asyncio.run(runtime.orchestrator.run_group(group))
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    for result in results:
        _echo_result(result)


@cli.command("test")
@click.argument("task_name")
@agent_options
@config_option
def test_command(
    task_name: str, model: str | None, auto_accept: bool, plan: bool, config_value: str
) -> None:
    runtime = _runtime(config_value)
    _apply_agent_overrides(runtime, model, auto_accept, plan)
    try:
        result = asyncio.run(runtime.orchestrator.test(task_name))
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_result(result)


@cli.group("review")
def review_group() -> None:
    """Review sessions for tasks in review."""


@review_group.command("run")
@click.argument("task_name")
@agent_options
@config_option
def review_run_command(
    task_name: str, model: str | None, auto_accept: bool, plan: bool, config_value: str
) -> None:
    runtime = _runtime(config_value)
    _apply_agent_overrides(runtime, model, auto_accept, plan)
    try:
        result = asyncio.run(runtime.orchestrator.review(task_name))
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_result(result)


@review_group.command("list")
@config_option
def review_list_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    _echo_tasks(runtime.orchestrator.list_tasks(TaskState.REVIEW))


@review_group.command("view")
@click.argument("task_name")
@config_option
def review_view_command(task_name: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        click.echo(runtime.orchestrator.view(task_name, TaskState.REVIEW))
    except TaskStoreError as exc:
        raise click.ClickException(str(exc)) from exc


@review_group.command("remove")
@click.argument("task_name")
@config_option
def review_remove_command(task_name: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        task = runtime.orchestrator.remove(task_name, TaskState.REVIEW)
    except TaskStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Abandoned {task.label}")


@review_group.command("dev")
@click.argument("task_name")
@config_option
def review_dev_command(task_name: str, config_value: str) -> None:
    runtime = _runtime(config_value)

    async def _run() -> DevOutcome:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, stop.set)
        try:
            return await runtime.orchestrator.review_dev(task_name, stop)
        finally:
            for signum in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(signum)

    try:
        outcome = asyncio.run(_run())
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    if outcome is DevOutcome.STOPPED:
        click.echo("Dev server stopped.")


@cli.group("merge")
def merge_group() -> None:
    """Land reviewed tasks on the default branch."""


@merge_group.command("run")
@click.argument("task_name")
@agent_options
@config_option
def merge_run_command(
    task_name: str, model: str | None, auto_accept: bool, plan: bool, config_value: str
) -> None:
    runtime = _runtime(config_value)
    _apply_agent_overrides(runtime, model, auto_accept, plan)
    try:
        result = asyncio.run(runtime.orchestrator.merge(task_name))
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_result(result)


@merge_group.command("group")
@click.argument("group")
@agent_options
@config_option
def merge_group_command(
    group: str, model: str | None, auto_accept: bool, plan: bool, config_value: str
) -> None:
    runtime = _runtime(config_value)
    _apply_agent_overrides(runtime, model, auto_accept, plan)
    try:
        results = asyncio.run(runtime.orchestrator.merge_group(group))
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    for result in results:
        _echo_result(result)


@merge_group.command("list")
@config_option
def merge_list_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    _echo_tasks(runtime.orchestrator.list_tasks(TaskState.MERGE))


@merge_group.command("view")
@click.argument("task_name")
@config_option
def merge_view_command(task_name: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        click.echo(runtime.orchestrator.view(task_name, TaskState.MERGE))
    except TaskStoreError as exc:
        raise click.ClickException(str(exc)) from exc


@merge_group.command("remove")
@click.argument("task_name")
@config_option
def merge_remove_command(task_name: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        task = runtime.orchestrator.remove(task_name, TaskState.MERGE)
    except TaskStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Abandoned {task.label}")


@cli.command("clean")
@click.argument("task_name")
@config_option
def clean_command(task_name: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        path = runtime.orchestrator.clean(task_name)
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Cleaned {path}")


@cli.command("reconcile")
@agent_options
@config_option
def reconcile_command(model: str | None, auto_accept: bool, plan: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    _apply_agent_overrides(runtime, model, auto_accept, plan)
    try:
        result = asyncio.run(FunctionalWorkflow(runtime.orchestrator).reconcile())
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    if result.updated:
        click.echo("Updated functional.md with reconciled requirements.")
    else:
        click.echo("functional.md unchanged.")
    click.echo(f"Deleted {len(result.deleted)} completed task(s).")


@cli.command("verify")
@agent_options
@config_option
def verify_command(model: str | None, auto_accept: bool, plan: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    _apply_agent_overrides(runtime, model, auto_accept, plan)
    try:
        outcome = asyncio.run(FunctionalWorkflow(runtime.orchestrator).verify())
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("All functional requirements verified.")
    if outcome.pushed and outcome.sha:
        click.echo(f"Pushed verify fixes: {outcome.sha[:12]}")


def _choose_duplicate(name: str, copies: list[Task]) -> int | None:
    click.echo(f"Task {name!r} exists in more than one place:")
    for index, task in enumerate(copies, start=1):
        click.echo(f"  [{index}] {task.state.value}: {task.file_path}")
    choice = click.prompt(
        "Keep which copy? (0 to skip)",
        type=click.IntRange(0, len(copies)),
        default=0,
    )
    return None if choice == 0 else choice - 1


@cli.command("fix")
@click.option("--yes", "-y", "assume_yes", is_flag=True, default=False)
@config_option
def fix_command(assume_yes: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    scanner = ConsistencyScanner(
        runtime.store, runtime.locks, runtime.workspaces, runtime.commands
    )
    try:
        report = scanner.scan(chooser=_choose_duplicate)
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc

    for line in report.resolved:
        click.echo(line)
    for warning in report.warnings:
        click.echo(f"warning: {warning}")
    if not report.actions:
        if not report.warnings:
            click.echo("No issues found.")
        return

    click.echo("Fixable issues:")
    for action in report.actions:
        click.echo(f"  - {action.description}")
    if not assume_yes and not click.confirm("Apply all fixes?", default=False):
        click.echo("Aborted.")
        return

    failed = 0
    for result in scanner.apply(report.actions):
        if result.ok:
            click.echo(f"fixed: {result.action.description}")
        else:
            failed += 1
            click.echo(f"failed: {result.action.description}: {result.error}")
    if failed:
        raise click.ClickException(f"{failed} fix(es) failed")


@cli.group("milestone")
def milestone_group() -> None:
    """Dated promises tracked against tasks."""


def _milestones(config_value: str) -> MilestoneStore:
    return MilestoneStore(_runtime(config_value).store)


@milestone_group.command("new")
@click.argument("date")
@config_option
def milestone_new_command(date: str, config_value: str) -> None:
    milestones = _milestones(config_value)
    try:
        milestone = milestones.create(normalize_date(date))
    except TaskStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Created {milestone.file_path}")


@milestone_group.command("list")
@click.option("--delivered", is_flag=True, default=False)
@click.option("--history", is_flag=True, default=False)
@config_option
def milestone_list_command(delivered: bool, history: bool, config_value: str) -> None:
    milestones = _milestones(config_value)
    if history:
        for entry in milestones.history():
            click.echo(f"{entry.date} {entry.score}")
        return
    items = milestones.delivered() if delivered else milestones.milestones()
    if not items:
        click.echo("No milestones.")
    for milestone in items:
        click.echo(milestone.date)


@milestone_group.command("verify")
@click.argument("date")
@config_option
def milestone_verify_command(date: str, config_value: str) -> None:
    milestones = _milestones(config_value)
    try:
        result = milestones.verify(milestones.find(normalize_date(date)))
    except TaskStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    for slug in result.missing:
        click.echo(f"missing: {slug}")
    for slug in result.incomplete:
        click.echo(f"incomplete: {slug}")
    if result.all_kept:
        click.echo(f"All {len(result.promises)} promise(s) kept.")
    else:
        raise click.ClickException(f"milestone {result.date} has unkept promises")


@milestone_group.command("repair")
@click.argument("date")
@config_option
def milestone_repair_command(date: str, config_value: str) -> None:
    milestones = _milestones(config_value)
    try:
        result = milestones.repair(milestones.find(normalize_date(date)))
    except TaskStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    for slug in result.created:
        click.echo(f"created: {slug}")
    for slug in result.skipped:
        click.echo(f"exists: {slug}")


@milestone_group.command("deliver")
@click.argument("date")
@config_option
def milestone_deliver_command(date: str, config_value: str) -> None:
    milestones = _milestones(config_value)
    try:
        milestone = milestones.deliver(milestones.find(normalize_date(date)))
    except TaskStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Delivered {milestone.date}")
