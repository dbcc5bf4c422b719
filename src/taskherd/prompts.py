"""Markdown documents handed to the coding agent for each phase."""

from __future__ import annotations

from collections.abc import Sequence

from taskherd.state.tasks import TaskStore


def verification_section(commands: dict[str, str]) -> str:
    lines = ["", "# Verification", ""]
    listed = [(name, commands.get(name, "")) for name in ("test", "lint")]
    listed = [(name, command) for name, command in listed if command.strip()]
    if not listed:
        lines.append("No verification commands are configured for this project.")
        return "\n".join(lines) + "\n"
    lines.append("Before committing, run every verification command below and fix all failures:")
    lines.append("")
    for name, command in listed:
        lines.append(f"- {name}: `{command}`")
    lines.append("")
    lines.append(
        "Always run the full commands exactly as written. Never run individual test files, "
        "single test cases, or any other partial test command in their place."
    )
    return "\n".join(lines) + "\n"


def commit_instructions(commands: dict[str, str], sign: bool = False) -> str:
    lines = ["", "# Commit Instructions", "", "After making all code changes, follow these steps:", ""]
    step = 1
    test_command = commands.get("test", "").strip()
    lint_command = commands.get("lint", "").strip()
    if test_command:
        lines.append(f"{step}. Run the test suite: `{test_command}`")
        step += 1
    if lint_command:
        lines.append(f"{step}. Run the linter: `{lint_command}`")
        step += 1
    lines.append(f"{step}. Stage all changes: `git add -A`")
    step += 1
    if sign:
        lines.append(
            f'{step}. Commit with a descriptive message. Sign the commit: '
            '`git commit -S -m "<descriptive message>"`'
        )
    else:
        lines.append(
            f'{step}. Commit with a descriptive message: `git commit -m "<descriptive message>"`'
        )
    lines.append("")
    lines.append(
        "IMPORTANT: You MUST commit your changes before finishing. The commit message should "
        "describe what was done, not just the task name. Do NOT add Co-Authored-By or any "
        "other trailers to the commit message. Do NOT run individual or partial test "
        "commands; only the full test command above counts as verification."
    )
    return "\n".join(lines) + "\n"


def timeout_section(timeout_seconds: float) -> str:
    if timeout_seconds <= 0:
        return ""
    minutes = max(1, int(timeout_seconds // 60))
    return (
        "\n# Time Limit\n\n"
        f"This session is limited to about {minutes} minute(s). Commit working progress "
        "early rather than risk losing it when the limit is reached.\n"
    )


def mission_reminder() -> str:
    return (
        "\n# Reminder\n\n"
        "Stay focused on the task above. Do not make unrelated changes, and commit your work "
        "before finishing.\n"
    )


def run_document(
    store: TaskStore,
    content: str,
    group_content: str,
    commands: dict[str, str],
    *,
    sign: bool = False,
    timeout_seconds: float = 0.0,
) -> str:
    return "".join(
        [
            store.assemble_document(content, group_content),
            verification_section(commands),
            commit_instructions(commands, sign),
            timeout_section(timeout_seconds),
            mission_reminder(),
        ]
    )


def _shared_rules(store: TaskStore) -> str:
    parts: list[str] = []
    rules = store.rules().strip()
    lint = store.lint().strip()
    if rules:
        parts.append(f"# Rules\n\n{rules}\n\n")
    if lint:
        parts.append(f"# Lint Rules\n\n{lint}\n\n")
    return "".join(parts)


def review_document(
    store: TaskStore, content: str, commands: dict[str, str], *, sign: bool = False
) -> str:
    parts = [
        "# Mission\n\n"
        "Your sole objective is to review the implementation of the task described below. "
        "Focus exclusively on verifying correctness, test coverage, and commit messages for "
        "this specific task. Do not make unrelated improvements or refactor code outside the "
        "task's scope.\n\n",
        _shared_rules(store),
        f"# Task\n\n{content.strip()}\n\n",
        "# Review Instructions\n\n"
        "Read the diff between this branch and the default branch. Check that the "
        "implementation does everything the task asks and nothing more, handles error paths, "
        "and follows the rules above. Fix any problems you find.\n\n",
        "## Commit Message Validation\n\n"
        "Verify that every commit message on this branch accurately describes its changes. "
        "Amend the most recent commit if its message is vague or misleading.\n\n",
        "## Test Coverage Validation\n\n"
        "Every behavior described in the task must be exercised by a test. Add any missing "
        "tests.\n",
        verification_section(commands),
        commit_instructions(commands, sign),
        mission_reminder(),
    ]
    return "".join(parts)


def testing_document(
    content: str, commands: dict[str, str], *, sign: bool = False
) -> str:
    lines = [
        "# Task Description",
        "",
        content.strip(),
        "",
        "# Test Instructions",
        "",
        "You are adding tests for an implementation of the above task. Carefully read the "
        "task description and the existing implementation, then follow these steps:",
        "",
        "1. Identify every feature, behavior, and edge case described in the task document",
        "2. Check which of these already have test coverage",
        "3. Add tests for any features or behaviors that lack coverage",
        "4. Ensure tests cover both success and error paths",
        "",
    ]
    return "\n".join(lines) + verification_section(commands) + commit_instructions(commands, sign)


def conflict_resolution_section(
    conflict_files: Sequence[str], default_branch: str, upstream_log: Sequence[str]
) -> str:
    if not conflict_files:
        return ""
    lines = [
        "## Conflict Resolution",
        "",
        f"Rebasing this branch onto `origin/{default_branch}` produced conflicts. The rebase "
        "was aborted so the branch is unchanged. Redo it yourself:",
        "",
        f"1. Run `git rebase origin/{default_branch}`",
        "2. Resolve the conflicts in each file, keeping the intent of both sides",
        "3. `git add` the resolved files and run `git rebase --continue` until the rebase completes",
        "",
        "Conflicted files:",
        "",
    ]
    lines.extend(f"- `{path}`" for path in conflict_files)
    if upstream_log:
        lines.extend(["", "Recent upstream commits:", "", "```"])
        lines.extend(upstream_log)
        lines.append("```")
    lines.append("")
    lines.append("### Conflict Resolution Report")
    lines.append("")
    lines.append(
        "After the rebase is complete, print a summary of every conflict resolution decision. "
        "For each conflicted file, explain which side you kept (ours, theirs, or a manual "
        "merge) and why."
    )
    return "\n".join(lines) + "\n\n"


def merge_document(
    store: TaskStore,
    content: str,
    commands: dict[str, str],
    *,
    conflict_files: Sequence[str] = (),
    default_branch: str = "main",
    upstream_log: Sequence[str] = (),
    sign: bool = False,
    timeout_seconds: float = 0.0,
) -> str:
    parts = [
        "# Merge Workflow\n\n"
        "This feature branch is being prepared for merge into the default branch. You are on "
        "the feature branch. Stay on it: do NOT checkout main or any other branch. Do NOT "
        "push. The tool handles all branch switching and pushing after you finish.\n\n"
        "Complete all steps below in order. Do not make changes beyond what the merge "
        "requires.\n\n",
        _shared_rules(store),
        f"## Task Document\n\n{content.strip()}\n\n",
        conflict_resolution_section(conflict_files, default_branch, upstream_log),
        "## Commit Message Validation\n\n"
        "Read the git log for this branch. Verify that the commit message(s) accurately "
        "describe the changes made according to the task document above. If any commit "
        "message is vague, misleading, or does not reflect the actual changes, amend the most "
        "recent commit with a corrected message.\n\n",
        "## Test Coverage\n\n"
        "Verify that every feature, behavior, or change described in the task document has "
        "corresponding test coverage. If any requirement lacks tests, add the missing tests.\n",
        verification_section(commands),
        commit_instructions(commands, sign),
        timeout_section(timeout_seconds),
        mission_reminder(),
    ]
    return "".join(parts)


def reconcile_document(functional: str, completed: Sequence[tuple[str, str]]) -> str:
    lines = [
        "# Mission",
        "",
        "Your sole objective is to update the functional specification based on the completed "
        "tasks listed below. Do not modify any source code files. Only edit functional.md.",
        "",
        "# Current Functional Specification",
        "",
        functional.strip() or "No existing specification.",
        "",
        "# Completed Tasks",
        "",
    ]
    for label, content in completed:
        lines.extend([f"## {label}", "", content.strip(), ""])
    lines.extend(
        [
            "# Instructions",
            "",
            "Read the codebase to understand what was actually implemented for each completed "
            "task. Then update `functional.md` in the current directory. Merge the requirements "
            "from the completed tasks into it, removing duplicates and organizing by feature "
            "area. Describe behaviors and capabilities, not tasks. Use the code as ground truth.",
            "",
            "# Reminder",
            "",
            "Your ONLY job is to update functional.md. Do not make any other changes.",
        ]
    )
    return "\n".join(lines) + "\n"


def verify_document(
    store: TaskStore, functional: str, commands: dict[str, str], *, sign: bool = False
) -> str:
    parts = [
        "# Mission\n\n"
        "Your objective is to verify that every requirement in the functional specification "
        "below is satisfied by the current codebase. If code does not match the "
        "specification, fix the code.\n\n",
        _shared_rules(store),
        f"# Functional Specification\n\n{functional.strip()}\n\n",
        "# Verification Instructions\n\n"
        "For each requirement in the specification above:\n"
        "1. Find the relevant code that implements it\n"
        "2. Confirm the implementation matches the specification\n"
        "3. If it does not, fix the code to match the specification\n"
        "4. Confirm the requirement has tests covering success and error paths\n",
        verification_section(commands),
        "\nIf ALL requirements are satisfied, covered by tests, and all tests pass, create a "
        "file called `verify-passed.txt` containing \"PASS\" and nothing else.\n\n"
        "If ANY requirement is NOT satisfied or lacks test coverage, create a file called "
        "`verify-failed.txt` listing each failed requirement and why it failed.\n\n"
        "Do not modify the functional specification.\n",
        commit_instructions(commands, sign),
        "\n# Reminder\n\n"
        "The functional specification is authoritative. Fix code to match it, never the "
        "reverse. Commit your changes, then create verify-passed.txt or verify-failed.txt.\n",
    ]
    return "".join(parts)
