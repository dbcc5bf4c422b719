from __future__ import annotations

import asyncio
import os
import subprocess
from enum import Enum
from pathlib import Path

STANDARD_COMMANDS = ("before", "clean", "dev", "test", "lint")


class CommandError(RuntimeError):
    """Raised when a named task-runner command is missing or fails."""


class DevOutcome(str, Enum):
    EXITED = "exited"
    STOPPED = "stopped"


def _user_shell() -> str:
    return os.environ.get("SHELL") or "/bin/sh"


def has_make_target(work_dir: Path, target: str) -> bool:
    try:
        text = (work_dir / "Makefile").read_text(encoding="utf-8")
    except OSError:
        return False
    return any(line.startswith(f"{target}:") for line in text.splitlines())


class TaskCommands:
    """Named shell commands with a ``make <name>`` fallback.

    Configured names win; otherwise a Makefile target of the same name in the
    working directory is used.
    """

    def __init__(self, commands: dict[str, str] | None = None) -> None:
        self.commands = dict(commands or {})

    def resolve(self, name: str, work_dir: Path) -> str | None:
        if name in self.commands:
            return self.commands[name]
        if has_make_target(work_dir, name):
            return f"make {name}"
        return None

    def has_command(self, name: str, work_dir: Path) -> bool:
        return self.resolve(name, work_dir) is not None

    def effective(self, work_dir: Path) -> dict[str, str]:
        result = dict(self.commands)
        for name in STANDARD_COMMANDS:
            if name not in result and has_make_target(work_dir, name):
                result[name] = f"make {name}"
        return result

    def run(self, name: str, work_dir: Path) -> bool:
        """Run ``name`` in ``work_dir``; returns False when nothing is configured."""
        command = self.resolve(name, work_dir)
        if command is None or not command.strip():
            return False
        proc = subprocess.run([_user_shell(), "-c", command], cwd=work_dir)
        if proc.returncode != 0:
            raise CommandError(f"command {name!r} failed with exit code {proc.returncode}")
        return True

    async def run_dev(self, work_dir: Path, stop: asyncio.Event | None = None) -> DevOutcome:
        command = self.resolve("dev", work_dir)
        if command is None:
            raise CommandError("no dev command configured and no dev target in Makefile")
        if not command.strip():
            raise CommandError("dev command is empty")

        process = await asyncio.create_subprocess_exec(_user_shell(), "-c", command, cwd=work_dir)
        wait_task = asyncio.ensure_future(process.wait())
        stop_task = asyncio.ensure_future(stop.wait()) if stop is not None else None
        pending = {wait_task} if stop_task is None else {wait_task, stop_task}
        try:
            done, _ = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if stop_task is not None and not stop_task.done():
                stop_task.cancel()

        if wait_task in done:
            return_code = wait_task.result()
            if return_code != 0:
                raise CommandError(f"dev command failed with exit code {return_code}")
            return DevOutcome.EXITED

        if process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(wait_task, timeout=5.0)
            except asyncio.TimeoutError:
                process.kill()
                await wait_task
        return DevOutcome.STOPPED
