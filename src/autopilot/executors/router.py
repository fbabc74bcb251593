from __future__ import annotations

from collections.abc import Mapping

from autopilot.executors.base import ExecutionOptions, StepExecutionError, StepExecutor, StepOutcome
from autopilot.plan import Phase, Plan, Step


class AgentRouter(StepExecutor):
    """Dispatches each step to the executor registered for ``options.agent``."""

    def __init__(self, executors: Mapping[str, StepExecutor]) -> None:
        self.executors = dict(executors)

    @property
    def agents(self) -> list[str]:
        return sorted(self.executors)

    async def execute_step(
        self,
        plan: Plan,
        phase: Phase,
        step: Step,
        options: ExecutionOptions,
    ) -> StepOutcome:
        executor = self.executors.get(options.agent)
        if executor is None:
            raise StepExecutionError(
                f"Agent {options.agent} not implemented "
                f"(available: {', '.join(self.agents) or 'none'})",
                agent=options.agent,
            )
        return await executor.execute_step(plan, phase, step, options)
