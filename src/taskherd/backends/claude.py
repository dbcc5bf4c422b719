from __future__ import annotations

from taskherd.backends.base import AgentRequest, CommandLineBackend


class ClaudeCodeBackend(CommandLineBackend):
    name = "claude"

    def __init__(self, binary: str = "claude", timeout_seconds: float = 0.0) -> None:
        super().__init__(binary, timeout_seconds)

    def build_command(self, request: AgentRequest) -> list[str]:
        command = [self.binary, "-p"]
        if request.model:
            command.extend(["--model", request.model])
        if request.auto_accept:
            command.append("--dangerously-skip-permissions")
        if request.plan_mode:
            command.extend(["--permission-mode", "plan"])
        return command
