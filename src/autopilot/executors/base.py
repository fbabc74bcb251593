from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from autopilot.models import now_ms
from autopilot.plan import Phase, Plan, Step


class StepExecutionError(RuntimeError):
    """Raised when an agent fails to carry out a step."""

    def __init__(
        self,
        message: str,
        *,
        agent: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.agent = agent
        self.exit_code = exit_code


class StepTimeoutError(StepExecutionError):
    """Raised when a step exceeds its configured timeout."""


class StepProcessError(StepExecutionError):
    """Raised when the agent process cannot be started or driven."""


class StepCancelledError(StepExecutionError):
    """Raised when a step is interrupted through its cancellation signal."""


@dataclass(slots=True)
class ExecutionOptions:
    agent: str
    timeout_ms: int = 300_000
    cancel_event: asyncio.Event | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


@dataclass(slots=True)
class StepOutcome:
    step_id: str
    success: bool
    output: str = ""
    error: str | None = None
    files_changed: list[str] = field(default_factory=list)
    started_at: int = field(default_factory=now_ms)
    ended_at: int = field(default_factory=now_ms)


@dataclass(slots=True, frozen=True)
class StepPrompt:
    system_prompt: str
    user_prompt: str
    context_files: tuple[str, ...] = ()


def build_step_prompt(plan: Plan, phase: Phase, step: Step) -> StepPrompt:
    system_lines = ["You are executing a planned code change."]
    if plan.rules.strip():
        system_lines.extend(["", "RULES:", plan.rules.strip()])
    system_lines.extend(
        [
            "",
            "Execute the step exactly as described. Make only the changes specified.",
            "Do not add extra features or refactoring beyond the scope.",
        ]
    )
    files = "\n".join(f"- {path}" for path in step.files) or "- (none listed)"
    user_prompt = "\n".join(
        [
            f"PHASE: {phase.title}",
            f"STEP: {step.description}",
            "",
            f"RATIONALE: {step.rationale or 'n/a'}",
            "",
            "FILES TO MODIFY:",
            files,
            "",
            f"CHANGE TYPE: {step.change_type}",
            "",
            "Execute this step now.",
        ]
    )
    return StepPrompt(
        system_prompt="\n".join(system_lines),
        user_prompt=user_prompt,
        context_files=step.files,
    )


class StepExecutor(ABC):
    @abstractmethod
    async def execute_step(
        self,
        plan: Plan,
        phase: Phase,
        step: Step,
        options: ExecutionOptions,
    ) -> StepOutcome:
        """Run one plan step with the agent named in ``options``."""
