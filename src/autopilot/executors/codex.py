from __future__ import annotations

import json

from autopilot.executors.base import StepPrompt
from autopilot.executors.process import CliStepExecutor


class CodexExecutor(CliStepExecutor):
    agent_name = "codex-cli"

    def build_command(self, prompt: StepPrompt) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "-c",
            f"instructions={json.dumps(prompt.system_prompt, ensure_ascii=False)}",
        ]
        if self.model:
            command.extend(["-m", self.model])
        user_prompt = prompt.user_prompt
        if prompt.context_files:
            user_prompt = (
                f"{user_prompt}\n\nContext files:\n"
                f"{json.dumps(list(prompt.context_files), ensure_ascii=False)}"
            )
        command.append(user_prompt)
        return command
