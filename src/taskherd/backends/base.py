from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


@dataclass(slots=True)
class AgentRequest:
    working_directory: Path
    document: str
    model: str | None = None
    auto_accept: bool = False
    plan_mode: bool = False


class AgentBackend(ABC):
    """A coding agent that edits and commits inside a working directory.

    Success is reported by returning; failure by raising. Side effects in the
    working directory may exist either way.
    """

    name = "agent"

    @abstractmethod
    async def invoke(self, request: AgentRequest) -> None:
        """Run the agent on ``request.document`` inside ``request.working_directory``."""


class CommandLineBackend(AgentBackend):
    """Agent driven through a CLI that reads the document from stdin."""

    def __init__(self, binary: str, timeout_seconds: float = 0.0) -> None:
        self.binary = binary
        self.timeout_seconds = timeout_seconds

    @abstractmethod
    def build_command(self, request: AgentRequest) -> list[str]:
        """Return the argv for ``request``."""

    async def invoke(self, request: AgentRequest) -> None:
        command = self.build_command(request)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(request.working_directory),
                stdin=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}", backend=self.name
            ) from exc

        communicate = process.communicate(request.document.encode("utf-8"))
        try:
            if self.timeout_seconds > 0:
                _, stderr = await asyncio.wait_for(communicate, timeout=self.timeout_seconds)
            else:
                _, stderr = await communicate
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise BackendTimeoutError(
                f"{self.name} backend timed out after {self.timeout_seconds:g}s",
                backend=self.name,
            ) from exc

        if process.returncode != 0:
            stderr_output = (stderr or b"").decode("utf-8", errors="replace").strip()
            raise BackendExecutionError(
                f"{self.name} backend failed with exit code {process.returncode}: {stderr_output}",
                backend=self.name,
                exit_code=process.returncode,
            )
