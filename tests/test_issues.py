from pathlib import Path

import pytest

from taskherd.issues import GitHubCLICloser, IssueCloseError, is_issue_task, parse_issue_number


@pytest.mark.parametrize(
    ("name", "number"),
    [("42-fix-bug", 42), ("7", 7), ("fix-42", 0), ("", 0)],
)
def test_parse_issue_number(name: str, number: int) -> None:
    assert parse_issue_number(name) == number


def test_only_issues_group_counts() -> None:
    assert is_issue_task("issues")
    assert not is_issue_task("backend")
    assert not is_issue_task(None)


def test_closer_invokes_gh(tmp_path: Path) -> None:
    log = tmp_path / "gh.log"
    fake_gh = tmp_path / "gh"
    fake_gh.write_text(f'#!/bin/sh\necho "$@" > {log}\n', encoding="utf-8")
    fake_gh.chmod(0o755)

    GitHubCLICloser(tmp_path, binary=str(fake_gh)).close_issue(42, "Closed by taskherd.")

    assert log.read_text(encoding="utf-8") == "issue close 42 --comment Closed by taskherd.\n"


def test_closer_failure(tmp_path: Path) -> None:
    fake_gh = tmp_path / "gh"
    fake_gh.write_text("#!/bin/sh\necho 'not authenticated' >&2\nexit 1\n", encoding="utf-8")
    fake_gh.chmod(0o755)

    with pytest.raises(IssueCloseError, match="not authenticated"):
        GitHubCLICloser(tmp_path, binary=str(fake_gh)).close_issue(42, "done")
    with pytest.raises(IssueCloseError, match="binary not found"):
        GitHubCLICloser(tmp_path, binary=str(tmp_path / "missing")).close_issue(42, "done")
