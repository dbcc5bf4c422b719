from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from taskherd.state.tasks import GROUP_DOCUMENT, TaskState, TaskStore, TaskStoreError

MILESTONE_TEMPLATE = """<!-- Milestone: promises to keep by the target date.

Each promise is a level-2 heading (##). Write details under each heading.
HTML comments like this one are ignored and won't appear as promises.

Example:

## Ship user authentication
Implement login, registration, and password reset flows.
All endpoints must have integration tests.
-->

##
"""

DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%m-%d-%Y", "%m/%d/%Y")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_HTML_COMMENT = re.compile(r"<!--.*?(?:-->|\Z)", re.DOTALL)


def slugify(text: str) -> str:
    slug = _NON_ALNUM.sub("-", text.lower()).strip("-")
    if len(slug) > 60:
        slug = slug[:60].rstrip("-")
    return slug


def normalize_date(value: str) -> str:
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).strftime("%Y-%m-%d")
        except ValueError:
            continue
    raise TaskStoreError(
        f"unrecognized date format: {value!r} "
        "(expected YYYY-MM-DD, YYYY/MM/DD, MM-DD-YYYY, or MM/DD/YYYY)"
    )


def milestone_group(date: str) -> str:
    return f"milestone-{date}"


@dataclass(slots=True, frozen=True)
class Promise:
    heading: str
    body: str
    slug: str


def parse_promises(content: str) -> list[Promise]:
    """Every non-empty ``## `` heading of ``content`` with the text beneath it."""
    cleaned = _HTML_COMMENT.sub("", content)
    promises: list[Promise] = []
    heading: str | None = None
    body: list[str] = []

    def flush() -> None:
        if heading:
            text = "\n".join(body).strip()
            promises.append(Promise(heading=heading, body=text, slug=slugify(heading)))

    for line in cleaned.split("\n"):
        if line.rstrip() == "##" or line.startswith("## "):
            flush()
            heading = line[3:].strip() or None
            body = []
        elif heading is not None:
            body.append(line)
    flush()
    return promises


@dataclass(slots=True)
class Milestone:
    date: str
    file_path: Path

    def content(self) -> str:
        return self.file_path.read_text(encoding="utf-8")


@dataclass(slots=True)
class MilestoneScore:
    date: str
    score: str
    file_path: Path


@dataclass(slots=True)
class VerifyResult:
    date: str
    promises: list[Promise]
    missing: list[str] = field(default_factory=list)
    incomplete: list[str] = field(default_factory=list)

    @property
    def all_kept(self) -> bool:
        return not self.missing and not self.incomplete


@dataclass(slots=True)
class RepairResult:
    created: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class MilestoneStore:
    def __init__(self, store: TaskStore) -> None:
        self.store = store
        self.root = store.design_dir / "milestone"

    @staticmethod
    def _markdown_files(directory: Path) -> list[Path]:
        if not directory.is_dir():
            return []
        return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix == ".md")

    def milestones(self) -> list[Milestone]:
        return [Milestone(date=p.stem, file_path=p) for p in self._markdown_files(self.root)]

    def delivered(self) -> list[Milestone]:
        return [
            Milestone(date=p.stem, file_path=p)
            for p in self._markdown_files(self.root / "delivered")
        ]

    def history(self) -> list[MilestoneScore]:
        scores: list[MilestoneScore] = []
        for path in self._markdown_files(self.root / "history"):
            date, sep, score = path.stem.rpartition("-")
            if not sep or not date or not score:
                continue
            scores.append(MilestoneScore(date=date, score=score, file_path=path))
        return scores

    def find(self, date: str) -> Milestone:
        for milestone in self.milestones():
            if milestone.date == date:
                return milestone
        raise TaskStoreError(f"milestone {date!r} not found")

    def create(self, date: str, content: str = MILESTONE_TEMPLATE) -> Milestone:
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.root / f"{date}.md"
        if path.exists():
            raise TaskStoreError(f"milestone {date!r} already exists")
        path.write_text(content, encoding="utf-8")
        return Milestone(date=date, file_path=path)

    def deliver(self, milestone: Milestone) -> Milestone:
        delivered_dir = self.root / "delivered"
        delivered_dir.mkdir(parents=True, exist_ok=True)
        destination = delivered_dir / milestone.file_path.name
        milestone.file_path.replace(destination)
        return Milestone(date=milestone.date, file_path=destination)

    def _promise_states(self, date: str, promises: list[Promise]) -> dict[str, TaskState]:
        """State of the task behind each promise, keyed by slug."""
        group = milestone_group(date)
        slugs = {promise.slug for promise in promises}
        # Grouped pending tasks win over ungrouped ones that only share the name.
        states: dict[str, TaskState] = {}
        for task in self.store.all_tasks():
            if task.group == group:
                states[task.name] = task.state
            elif task.group is None and task.name in slugs:
                states.setdefault(task.name, task.state)
        return states

    def verify(self, milestone: Milestone) -> VerifyResult:
        promises = parse_promises(milestone.content())
        states = self._promise_states(milestone.date, promises)

        result = VerifyResult(date=milestone.date, promises=promises)
        for promise in promises:
            state = states.get(promise.slug)
            if state is None:
                result.missing.append(promise.slug)
            elif state is not TaskState.COMPLETED:
                result.incomplete.append(promise.slug)
        return result

    def repair(self, milestone: Milestone) -> RepairResult:
        promises = parse_promises(milestone.content())
        group = milestone_group(milestone.date)
        group_dir = self.store.tasks_dir / group
        existing = set(self._promise_states(milestone.date, promises))

        result = RepairResult()
        for promise in promises:
            if promise.slug in existing:
                result.skipped.append(promise.slug)
                continue
            group_dir.mkdir(parents=True, exist_ok=True)
            group_file = group_dir / GROUP_DOCUMENT
            if not group_file.exists():
                group_file.write_text(f"Milestone {milestone.date} tasks.\n", encoding="utf-8")
            text = f"## {promise.heading}\n"
            if promise.body:
                text += f"\n{promise.body}\n"
            (group_dir / f"{promise.slug}.md").write_text(text, encoding="utf-8")
            existing.add(promise.slug)
            result.created.append(promise.slug)
        return result
