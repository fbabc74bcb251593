from __future__ import annotations

from pathlib import Path

from autopilot.executors.base import StepPrompt
from autopilot.executors.process import CliStepExecutor


class ClaudeCodeExecutor(CliStepExecutor):
    agent_name = "claude-cli"
    keep_plain_lines = True

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        *,
        model: str | None = None,
        skip_permissions: bool = True,
    ) -> None:
        super().__init__(binary, working_directory, model=model)
        self.skip_permissions = skip_permissions

    def build_command(self, prompt: StepPrompt) -> list[str]:
        command = [
            self.binary,
            "-p",
            prompt.user_prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--append-system-prompt",
            prompt.system_prompt,
        ]
        if self.model:
            command.extend(["--model", self.model])
        if self.skip_permissions:
            command.append("--dangerously-skip-permissions")
        return command
