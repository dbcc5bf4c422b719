from pathlib import Path

import pytest

from conftest import write_design
from taskherd.state.milestones import (
    MILESTONE_TEMPLATE,
    MilestoneStore,
    milestone_group,
    normalize_date,
    parse_promises,
    slugify,
)
from taskherd.state.tasks import TaskState, TaskStore, TaskStoreError

MILESTONE = """<!-- planning notes
## Not a promise
-->

## Ship user authentication
Login, registration and password reset.

## Export reports to CSV!

##
"""


@pytest.fixture
def milestones(tmp_path: Path) -> MilestoneStore:
    write_design(tmp_path / "design")
    return MilestoneStore(TaskStore(tmp_path / "design"))


def test_parse_promises_skips_comments_and_empty_headings() -> None:
    promises = parse_promises(MILESTONE)

    assert [(p.heading, p.slug) for p in promises] == [
        ("Ship user authentication", "ship-user-authentication"),
        ("Export reports to CSV!", "export-reports-to-csv"),
    ]
    assert promises[0].body == "Login, registration and password reset."
    assert parse_promises(MILESTONE_TEMPLATE) == []


@pytest.mark.parametrize("value", ["2026-03-01", "2026/03/01", "03-01-2026", "03/01/2026"])
def test_normalize_date_formats(value: str) -> None:
    assert normalize_date(value) == "2026-03-01"


def test_normalize_date_rejects_garbage() -> None:
    with pytest.raises(TaskStoreError, match="unrecognized date format"):
        normalize_date("next tuesday")


def test_slugify_truncates_long_headings() -> None:
    slug = slugify("word " * 30)

    assert len(slug) <= 60
    assert not slug.endswith("-")


def test_create_refuses_existing_milestone(milestones: MilestoneStore) -> None:
    milestones.create("2026-03-01")

    with pytest.raises(TaskStoreError, match="already exists"):
        milestones.create("2026-03-01")
    assert [m.date for m in milestones.milestones()] == ["2026-03-01"]


def test_repair_creates_missing_tasks(milestones: MilestoneStore) -> None:
    milestone = milestones.create("2026-03-01", MILESTONE)

    first = milestones.repair(milestone)
    second = milestones.repair(milestone)

    group = milestone_group("2026-03-01")
    assert first.created == ["ship-user-authentication", "export-reports-to-csv"]
    assert second.created == []
    assert second.skipped == ["ship-user-authentication", "export-reports-to-csv"]
    store = milestones.store
    assert store.groups() == ["backend", group]
    task = store.find(f"{group}/ship-user-authentication")
    assert task.content() == (
        "## Ship user authentication\n\nLogin, registration and password reset.\n"
    )
    assert store.group_content(group) == "Milestone 2026-03-01 tasks.\n"


def test_verify_tracks_task_states(milestones: MilestoneStore) -> None:
    milestone = milestones.create("2026-03-01", MILESTONE)

    assert milestones.verify(milestone).missing == [
        "ship-user-authentication",
        "export-reports-to-csv",
    ]

    milestones.repair(milestone)
    store = milestones.store
    auth = store.find("ship-user-authentication")
    store.move(store.move(auth, TaskState.REVIEW), TaskState.COMPLETED)

    result = milestones.verify(milestone)

    assert result.missing == []
    assert result.incomplete == ["export-reports-to-csv"]
    assert not result.all_kept


def test_deliver_and_history(milestones: MilestoneStore) -> None:
    milestone = milestones.create("2026-03-01")
    history = milestones.root / "history"
    history.mkdir()
    (history / "2026-01-15-3of4.md").write_text("scored\n", encoding="utf-8")

    delivered = milestones.deliver(milestone)

    assert delivered.file_path == milestones.root / "delivered" / "2026-03-01.md"
    assert milestones.milestones() == []
    assert [m.date for m in milestones.delivered()] == ["2026-03-01"]
    scores = milestones.history()
    assert [(s.date, s.score) for s in scores] == [("2026-01-15", "3of4")]
    with pytest.raises(TaskStoreError, match="not found"):
        milestones.find("2026-03-01")


def test_repair_skips_promises_whose_task_moved_on(milestones: MilestoneStore) -> None:
    milestone = milestones.create("2026-01-01", "## Ship it\n")
    milestones.repair(milestone)
    store = milestones.store
    store.move(store.find("ship-it"), TaskState.REVIEW)

    result = milestones.repair(milestone)

    assert result.created == []
    assert result.skipped == ["ship-it"]
    assert [task.state for task in store.all_tasks() if task.name == "ship-it"] == [
        TaskState.REVIEW
    ]
    assert milestones.verify(milestone).incomplete == ["ship-it"]
