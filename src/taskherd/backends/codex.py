from __future__ import annotations

from taskherd.backends.base import AgentRequest, CommandLineBackend


class CodexBackend(CommandLineBackend):
    name = "codex"

    def __init__(self, binary: str = "codex", timeout_seconds: float = 0.0) -> None:
        super().__init__(binary, timeout_seconds)

    def build_command(self, request: AgentRequest) -> list[str]:
        command = [self.binary, "exec"]
        model = (request.model or "").strip()
        if model:
            command.extend(["-m", model])
        if request.plan_mode:
            command.extend(["--sandbox", "read-only"])
        elif request.auto_accept:
            command.append("--full-auto")
        # "-" makes codex read the prompt from stdin.
        command.append("-")
        return command
