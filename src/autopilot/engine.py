from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Mapping
from dataclasses import replace
from pathlib import Path
from typing import Any, TypeVar

from autopilot.config import AutopilotConfig
from autopilot.error_strategy import evaluate_error, sleep_ms
from autopilot.errors import AutopilotError
from autopilot.executors.base import ExecutionOptions, StepCancelledError, StepExecutor
from autopilot.models import Event, EventName, RunState, StepResult, now_ms
from autopilot.plan import Phase, Plan, Step
from autopilot.session import InterruptedSessionInfo, SessionStore

logger = logging.getLogger(__name__)

PAUSE_POLL_INTERVAL_MS = 200
ABORTABLE_STATUSES = frozenset({"running", "paused", "pausing"})
STOP_STATUSES = frozenset({"stopping", "idle"})

EventHook = Callable[[Event], None]
StatusHook = Callable[[RunState], None]
CompactHook = Callable[[dict[str, Any]], None]

_Hook = TypeVar("_Hook")


class AutopilotEngine:
    """Drives a plan step by step: idle → running ⇄ pausing → paused → stopping → idle.

    Terminal statuses are ``completed`` and ``failed``. The engine is the only
    writer of the run state; every transition that matters for recovery is
    mirrored to the session store before the loop moves on.
    """

    def __init__(
        self,
        workspace_dir: Path,
        executor: StepExecutor,
        *,
        session: SessionStore | None = None,
    ) -> None:
        self.workspace_dir = workspace_dir.resolve()
        self.executor = executor
        self.session = session or SessionStore(self.workspace_dir)
        self._plan: Plan | None = None
        self._cancel_event: asyncio.Event | None = None
        self._wake_event: asyncio.Event | None = None
        self._loop_active = False
        self._event_hooks: list[EventHook] = []
        self._status_hooks: list[StatusHook] = []
        self._compact_hooks: list[CompactHook] = []

    # -- queries -----------------------------------------------------------

    @property
    def state(self) -> RunState:
        return self.session.state.snapshot()

    @property
    def step_results(self) -> list[StepResult]:
        return self.session.step_results

    @property
    def events(self) -> list[Event]:
        return self.session.events

    @property
    def is_running(self) -> bool:
        return self._loop_active

    def has_interrupted_session(self) -> bool:
        return self.session.has_interrupted_session()

    def interrupted_session_info(self) -> InterruptedSessionInfo | None:
        return self.session.interrupted_session_info()

    def status(self) -> dict[str, Any]:
        state = self.session.state
        payload = state.to_dict()
        payload["processed_steps"] = state.processed_steps
        payload["step_results"] = len(self.session.step_results)
        payload["recent_events"] = [event.to_dict() for event in self.session.events[-10:]]
        return payload

    # -- observers ---------------------------------------------------------

    @staticmethod
    def _register(registry: list[_Hook], hook: _Hook) -> Callable[[], None]:
        registry.append(hook)

        def _unsubscribe() -> None:
            if hook in registry:
                registry.remove(hook)

        return _unsubscribe

    def on_event(self, hook: EventHook) -> Callable[[], None]:
        return self._register(self._event_hooks, hook)

    def on_status(self, hook: StatusHook) -> Callable[[], None]:
        return self._register(self._status_hooks, hook)

    def on_compact(self, hook: CompactHook) -> Callable[[], None]:
        return self._register(self._compact_hooks, hook)

    @staticmethod
    def _notify(hooks: list[Callable[[Any], None]], payload: Any) -> None:
        for hook in list(hooks):
            try:
                hook(payload)
            except Exception:
                logger.exception("Autopilot observer %r raised", hook)

    def _emit(self, event_type: EventName, data: dict[str, Any] | None = None) -> None:
        event = Event(type=event_type, timestamp=now_ms(), data=data)
        self.session.add_event(event)
        self._notify(self._event_hooks, event)
        self._notify(self._status_hooks, self.session.state.snapshot())

    # -- control -----------------------------------------------------------

    @staticmethod
    def _resolve_config(config: AutopilotConfig | Mapping[str, Any] | None) -> AutopilotConfig:
        if config is None:
            return AutopilotConfig.default()
        if isinstance(config, AutopilotConfig):
            return replace(config)
        return AutopilotConfig.default().merged(dict(config))

    def _arm(self, plan: Plan) -> None:
        self._plan = plan
        self._cancel_event = asyncio.Event()
        self._wake_event = asyncio.Event()

    async def start(
        self,
        plan: Plan,
        config: AutopilotConfig | Mapping[str, Any] | None = None,
    ) -> None:
        if self._loop_active:
            raise AutopilotError("Autopilot is already running")

        run_config = self._resolve_config(config)
        total_phases = len(plan.phases)
        total_steps = plan.total_steps
        self._arm(plan)
        self.session.reset(plan.id, total_phases, total_steps, run_config)
        state = self.session.state
        state.status = "running"
        state.started_at = now_ms()
        self.session.save()

        logger.info(
            "Autopilot started plan %s (%d phases, %d steps) with agent %s",
            plan.id,
            total_phases,
            total_steps,
            run_config.primary_agent,
        )
        self._emit(
            "started",
            {"plan_id": plan.id, "total_phases": total_phases, "total_steps": total_steps},
        )
        await self._drive()

    async def resume(self, plan: Plan) -> None:
        if self._loop_active:
            raise AutopilotError("Autopilot is already running")
        if not self.session.load():
            raise AutopilotError("No session to resume")

        state = self.session.state
        if state.plan_id != plan.id:
            raise AutopilotError(
                f"Session belongs to plan {state.plan_id!r}, not {plan.id!r}"
            )
        if state.total_phases != len(plan.phases) or state.total_steps != plan.total_steps:
            raise AutopilotError(
                f"Plan {plan.id} no longer matches the recorded session "
                f"({state.total_phases} phases / {state.total_steps} steps)"
            )

        self._arm(plan)
        state.status = "running"
        state.error = None
        self.session.save()

        logger.info(
            "Autopilot resuming plan %s at phase %d step %d (%d/%d processed)",
            plan.id,
            state.current_phase_index,
            state.current_step_index,
            state.processed_steps,
            state.total_steps,
        )
        self._emit("resumed", {"plan_id": plan.id})
        await self._drive()

    def pause(self) -> None:
        state = self.session.state
        if state.status == "running":
            state.status = "pausing"
            logger.info("Pause requested; the current step will finish first")

    def unpause(self) -> None:
        state = self.session.state
        if state.status == "paused":
            state.status = "running"
            self.session.save()
            self._wake()
            self._emit("resumed")

    def abort(self) -> None:
        state = self.session.state
        if state.status in ABORTABLE_STATUSES:
            state.status = "stopping"
            logger.info("Abort requested")
            if self._cancel_event is not None:
                self._cancel_event.set()
            self._wake()

    def update_config(self, partial: AutopilotConfig | Mapping[str, Any]) -> None:
        state = self.session.state
        if isinstance(partial, AutopilotConfig):
            state.config = replace(partial)
        else:
            state.config = state.config.merged(dict(partial))
        if state.using_fallback and state.active_agent != state.config.fallback_agent:
            state.active_agent = state.config.primary_agent
            state.using_fallback = False
        self.session.save()

    def reset(self) -> None:
        if self._cancel_event is not None:
            self._cancel_event.set()
        self._wake()
        self.session.clear()
        self._plan = None
        self._cancel_event = None
        self._wake_event = None

    def _wake(self) -> None:
        if self._wake_event is not None:
            self._wake_event.set()

    # -- main loop ---------------------------------------------------------

    async def _drive(self) -> None:
        self._loop_active = True
        try:
            await self._run_loop()
        except Exception as exc:
            state = self.session.state
            if state.status not in {"completed", "idle"}:
                logger.exception("Autopilot run failed unexpectedly")
                state.status = "failed"
                state.error = str(exc) or exc.__class__.__name__
                self._emit("failed", {"error": state.error})
                self.session.save()
        finally:
            self._loop_active = False

    async def _run_loop(self) -> None:
        plan = self._plan
        if plan is None:
            raise AutopilotError("No plan associated with the engine")

        start_phase = self.session.state.current_phase_index
        start_step = self.session.state.current_step_index

        for phase_index in range(start_phase, len(plan.phases)):
            phase = plan.phases[phase_index]
            self.session.state.current_phase_index = phase_index
            first_step = start_step if phase_index == start_phase else 0

            for step_index in range(first_step, len(phase.steps)):
                await self._wait_while_paused()
                if self.session.state.status in STOP_STATUSES:
                    self._finish_aborted()
                    return

                step = phase.steps[step_index]
                state = self.session.state
                state.current_step_index = step_index
                state.current_retry = 0
                if not state.using_fallback:
                    state.active_agent = state.config.primary_agent
                self._emit(
                    "step-start",
                    {
                        "phase": phase_index,
                        "step": step_index,
                        "step_id": step.id,
                        "description": step.description,
                    },
                )
                self.session.save()

                result = await self._execute_step_with_retry(plan, phase, step)
                if result is None:
                    self._finish_aborted()
                    return
                if self._record_result(step, step_index, result):
                    return

                await self._interruptible_sleep(self.session.state.config.step_delay_ms)

            state = self.session.state
            state.current_phase_index = phase_index + 1
            state.current_step_index = 0
            self._emit("phase-complete", {"phase": phase_index, "phase_id": phase.id})
            self.session.save()
            if state.config.compact_between_phases and phase_index < len(plan.phases) - 1:
                logger.debug("Requesting context compaction after phase %d", phase_index)
                self._notify(self._compact_hooks, {"phase": phase_index})

        state = self.session.state
        state.status = "completed"
        logger.info(
            "Autopilot completed plan %s: %d completed, %d failed, %d skipped",
            state.plan_id,
            state.completed_steps,
            state.failed_steps,
            state.skipped_steps,
        )
        self._emit(
            "complete",
            {
                "completed": state.completed_steps,
                "failed": state.failed_steps,
                "skipped": state.skipped_steps,
            },
        )
        self.session.save()

    def _record_result(self, step: Step, step_index: int, result: StepResult) -> bool:
        """Account for one finished step. Returns True when the run must stop."""
        self.session.add_step_result(result)
        state = self.session.state
        state.last_step_at = now_ms()
        state.current_step_index = step_index + 1

        if result.skipped:
            state.skipped_steps += 1
            self._emit("step-skipped", {"step_id": step.id, "reason": result.error})
            self.session.save()
            return False
        if result.success:
            state.completed_steps += 1
            self._emit("step-complete", {"step_id": step.id, "result": result.to_dict()})
            self.session.save()
            return False

        state.failed_steps += 1
        self._emit("step-failed", {"step_id": step.id, "error": result.error})
        if state.status == "failed":
            logger.error("Autopilot failed on step %s: %s", step.id, state.error)
            self._emit("failed", {"step_id": step.id, "error": state.error})
            self.session.save()
            return True
        self.session.save()
        return False

    def _abort_requested(self) -> bool:
        return self.session.state.status in STOP_STATUSES

    async def _execute_step_with_retry(
        self,
        plan: Plan,
        phase: Phase,
        step: Step,
    ) -> StepResult | None:
        """Run ``step`` until it succeeds, is skipped or aborts the run.

        Returns None when an abort request interrupted the step; no result is
        recorded for it in that case and a resumed run executes it again.
        """
        retries = 0
        agent = self.session.state.active_agent
        was_fallback = self.session.state.using_fallback
        started_at = now_ms()

        while True:
            state = self.session.state
            options = ExecutionOptions(
                agent=agent,
                timeout_ms=state.config.step_timeout_ms,
                cancel_event=self._cancel_event,
            )
            try:
                outcome = await self.executor.execute_step(plan, phase, step, options)
            except StepCancelledError as exc:
                if self._abort_requested():
                    return None
                error_text = str(exc) or "Step was cancelled"
            except Exception as exc:
                error_text = str(exc) or exc.__class__.__name__
            else:
                if outcome.success:
                    if state.using_fallback:
                        logger.info(
                            "Step %s succeeded on %s; reverting to primary agent %s",
                            step.id,
                            agent,
                            state.config.primary_agent,
                        )
                        state.active_agent = state.config.primary_agent
                        state.using_fallback = False
                    return StepResult(
                        step_id=step.id,
                        success=True,
                        output=outcome.output,
                        files_changed=list(outcome.files_changed),
                        started_at=started_at,
                        ended_at=outcome.ended_at,
                        agent=agent,
                        retries=retries,
                        was_fallback=was_fallback,
                    )
                error_text = outcome.error or "Step reported failure without an error message"

            if self._abort_requested():
                return None

            decision = evaluate_error(error_text, agent, retries, state.config)
            logger.warning(
                "Step %s failed on %s (retry %d): %s -> %s",
                step.id,
                agent,
                retries,
                error_text[:200],
                decision.action,
            )

            if decision.action == "retry":
                retries += 1
                state.current_retry = retries
                self.session.save()
                if not await self._backoff(decision.wait_ms):
                    return None
                continue

            if decision.action == "retry-fallback":
                previous_agent = agent
                agent = decision.agent
                was_fallback = True
                state.active_agent = agent
                state.using_fallback = True
                retries += 1
                state.current_retry = retries
                self.session.save()
                self._emit(
                    "agent-switched",
                    {"from": previous_agent, "to": agent, "reason": decision.reason},
                )
                if not await self._backoff(decision.wait_ms):
                    return None
                continue

            if decision.action == "skip":
                return StepResult(
                    step_id=step.id,
                    success=False,
                    error=f"Skipped: {decision.reason}",
                    started_at=started_at,
                    ended_at=now_ms(),
                    agent=agent,
                    retries=retries,
                    was_fallback=was_fallback,
                    skipped=True,
                )

            state.status = "failed"
            state.error = decision.reason
            return StepResult(
                step_id=step.id,
                success=False,
                error=decision.reason,
                started_at=started_at,
                ended_at=now_ms(),
                agent=agent,
                retries=retries,
                was_fallback=was_fallback,
            )

    # -- suspension points -------------------------------------------------

    async def _interruptible_sleep(self, ms: int) -> None:
        if ms <= 0:
            return
        if self._cancel_event is None:
            await sleep_ms(ms)
            return
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._cancel_event.wait(), timeout=ms / 1000)

    async def _backoff(self, ms: int) -> bool:
        """Wait before the next attempt. Returns False if an abort arrived meanwhile."""
        await self._interruptible_sleep(ms)
        return not self._abort_requested()

    async def _wait_while_paused(self) -> None:
        state = self.session.state
        if state.status != "pausing":
            return

        state.status = "paused"
        logger.info(
            "Autopilot paused before phase %d step %d",
            state.current_phase_index,
            state.current_step_index,
        )
        self._emit(
            "paused",
            {"phase": state.current_phase_index, "step": state.current_step_index},
        )
        self.session.save()

        while self.session.state.status == "paused":
            wake = self._wake_event
            if wake is None:
                await sleep_ms(PAUSE_POLL_INTERVAL_MS)
                continue
            wake.clear()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(wake.wait(), timeout=PAUSE_POLL_INTERVAL_MS / 1000)

    def _finish_aborted(self) -> None:
        state = self.session.state
        state.status = "idle"
        state.current_retry = 0
        logger.info(
            "Autopilot aborted at phase %d step %d",
            state.current_phase_index,
            state.current_step_index,
        )
        self._emit(
            "aborted",
            {"phase": state.current_phase_index, "step": state.current_step_index},
        )
        self.session.save()
