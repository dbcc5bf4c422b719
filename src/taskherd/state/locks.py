from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

LOCK_PREFIX = "taskherd-"
LOCK_SUFFIX = ".lock"

PHASE_ACTIONS = {
    "review": "reviewing",
    "merge": "merging",
    "test": "testing",
}


class LockBusyError(RuntimeError):
    """Raised when a lock is held by another live process."""

    def __init__(self, key: str, holder: str, pid: int) -> None:
        super().__init__(f"another task {holder!r} is already running (PID {pid})")
        self.key = key
        self.holder = holder
        self.pid = pid


@dataclass(slots=True, frozen=True)
class LockInfo:
    task_name: str
    pid: int
    path: Path


@dataclass(slots=True, frozen=True)
class RunningTask:
    action: str
    name: str
    pid: int
    label: str = ""


def parse_lock_label(label: str) -> tuple[str, str]:
    """Split a lock label into a human action and the task name."""
    prefix, sep, rest = label.partition(":")
    if sep and prefix in PHASE_ACTIONS:
        return PHASE_ACTIONS[prefix], rest
    return "running", label


def process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError:
        return False
    return True


def lock_filename(key: str) -> str:
    return f"{LOCK_PREFIX}{key.replace('/', '--')}{LOCK_SUFFIX}"


class LockManager:
    """Advisory per-key locks backed by pid marker files.

    A lock is held while its marker exists and the recorded process is alive.
    Liveness is always re-read from the OS; nothing is cached in memory.
    """

    def __init__(self, lock_dir: Path) -> None:
        self.lock_dir = lock_dir

    def path_for(self, key: str) -> Path:
        return self.lock_dir / lock_filename(key)

    @staticmethod
    def read_marker(path: Path) -> LockInfo | None:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        if not isinstance(payload, dict):
            return None
        try:
            pid = int(payload.get("pid", 0))
        except (TypeError, ValueError):
            return None
        return LockInfo(task_name=str(payload.get("task_name", "")), pid=pid, path=path)

    def acquire(self, key: str) -> None:
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(key)
        info = self.read_marker(path)
        if info is not None and process_alive(info.pid):
            raise LockBusyError(key, info.task_name, info.pid)
        if path.exists():
            logger.info("removing stale lock %s", path.name)
            path.unlink(missing_ok=True)

        payload = json.dumps({"pid": os.getpid(), "task_name": key}).encode("utf-8")
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as exc:
            # Another process won the race after the stale marker was removed.
            current = self.read_marker(path)
            if current is None:
                raise LockBusyError(key, key, 0) from exc
            raise LockBusyError(key, current.task_name, current.pid) from exc
        try:
            os.write(fd, payload)
        finally:
            os.close(fd)

    def release(self, key: str) -> None:
        self.path_for(key).unlink(missing_ok=True)

    def is_held(self, key: str) -> bool:
        info = self.read_marker(self.path_for(key))
        return info is not None and process_alive(info.pid)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        self.acquire(key)
        try:
            yield
        finally:
            self.release(key)

    def markers(self) -> list[Path]:
        if not self.lock_dir.is_dir():
            return []
        return sorted(self.lock_dir.glob(f"{LOCK_PREFIX}*{LOCK_SUFFIX}"))

    def read_all_live(self) -> list[RunningTask]:
        running: list[RunningTask] = []
        for path in self.markers():
            info = self.read_marker(path)
            if info is None or not process_alive(info.pid):
                continue
            action, name = parse_lock_label(info.task_name)
            running.append(
                RunningTask(action=action, name=name, pid=info.pid, label=info.task_name)
            )
        return running

    def stale_markers(self) -> list[Path]:
        stale: list[Path] = []
        for path in self.markers():
            info = self.read_marker(path)
            if info is None or not process_alive(info.pid):
                stale.append(path)
        return stale
