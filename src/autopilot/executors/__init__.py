from autopilot.executors.base import (
    ExecutionOptions,
    StepCancelledError,
    StepExecutionError,
    StepExecutor,
    StepOutcome,
    StepProcessError,
    StepPrompt,
    StepTimeoutError,
    build_step_prompt,
)
from autopilot.executors.claude import ClaudeCodeExecutor
from autopilot.executors.codex import CodexExecutor
from autopilot.executors.router import AgentRouter

__all__ = [
    "AgentRouter",
    "ClaudeCodeExecutor",
    "CodexExecutor",
    "ExecutionOptions",
    "StepCancelledError",
    "StepExecutionError",
    "StepExecutor",
    "StepOutcome",
    "StepProcessError",
    "StepPrompt",
    "StepTimeoutError",
    "build_step_prompt",
]
