from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from autopilot.config import AutopilotConfig
from autopilot.models import (
    INTERRUPTED_STATUSES,
    Event,
    RunState,
    StepResult,
    now_ms,
)

logger = logging.getLogger(__name__)

SESSION_DIRNAME = ".autopilot"
SESSION_FILENAME = "session.json"


@dataclass(slots=True, frozen=True)
class InterruptedSessionInfo:
    plan_id: str
    completed_steps: int
    total_steps: int
    saved_at: int


class SessionStore:
    """File-backed record of the single active run in a workspace.

    Persistence is a recovery aid: write failures are logged and swallowed so
    the in-memory state stays authoritative for the life of the process.
    There is no cross-process locking; one engine per workspace is assumed.
    """

    SCHEMA_VERSION = 1
    MAX_EVENTS = 200

    def __init__(self, workspace_dir: Path, *, directory: str = SESSION_DIRNAME) -> None:
        self.workspace_dir = workspace_dir.resolve()
        self.session_path = self.workspace_dir / directory / SESSION_FILENAME
        self._state = RunState()
        self._step_results: list[StepResult] = []
        self._events: list[Event] = []

    @property
    def state(self) -> RunState:
        return self._state

    def set_state(self, state: RunState) -> None:
        self._state = state

    @property
    def step_results(self) -> list[StepResult]:
        return list(self._step_results)

    def add_step_result(self, result: StepResult) -> None:
        self._step_results.append(result)

    @property
    def events(self) -> list[Event]:
        return list(self._events)

    def add_event(self, event: Event) -> None:
        self._events.append(event)
        if len(self._events) > self.MAX_EVENTS:
            self._events = self._events[-self.MAX_EVENTS :]

    def _envelope(self) -> dict[str, Any]:
        return {
            "version": self.SCHEMA_VERSION,
            "plan_id": self._state.plan_id,
            "state": self._state.to_dict(),
            "step_results": [result.to_dict() for result in self._step_results],
            "events": [event.to_dict() for event in self._events],
            "saved_at": now_ms(),
        }

    def save(self) -> None:
        if not self._state.plan_id:
            return
        temp_path: str | None = None
        try:
            serialized = json.dumps(self._envelope(), ensure_ascii=False, indent=2)
            self.session_path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.session_path.parent,
                prefix=".session-",
                suffix=".tmp",
                delete=False,
            ) as handle:
                handle.write(serialized)
                temp_path = handle.name
            os.replace(temp_path, self.session_path)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Could not persist autopilot session to %s: %s", self.session_path, exc)
            if temp_path is not None:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass

    def _read_envelope(self) -> dict[str, Any] | None:
        if not self.session_path.exists():
            return None
        try:
            payload = json.loads(self.session_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable session file %s: %s", self.session_path, exc)
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("version") != self.SCHEMA_VERSION:
            logger.info(
                "Ignoring session file with schema version %r (expected %d)",
                payload.get("version"),
                self.SCHEMA_VERSION,
            )
            return None
        if not isinstance(payload.get("state"), dict):
            return None
        return payload

    def load(self) -> bool:
        payload = self._read_envelope()
        if payload is None:
            return False
        try:
            state = RunState.from_dict(payload["state"])
            results = [StepResult.from_dict(item) for item in payload.get("step_results") or []]
            events = [Event.from_dict(item) for item in payload.get("events") or []]
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring malformed session file %s: %s", self.session_path, exc)
            return False
        self._state = state
        self._step_results = results
        self._events = events[-self.MAX_EVENTS :]
        return True

    def has_interrupted_session(self) -> bool:
        payload = self._read_envelope()
        if payload is None:
            return False
        return payload["state"].get("status") in INTERRUPTED_STATUSES

    def interrupted_session_info(self) -> InterruptedSessionInfo | None:
        payload = self._read_envelope()
        if payload is None:
            return None
        state = payload["state"]
        if state.get("status") not in INTERRUPTED_STATUSES:
            return None
        try:
            return InterruptedSessionInfo(
                plan_id=str(payload.get("plan_id") or state.get("plan_id") or ""),
                completed_steps=int(state.get("completed_steps", 0)),
                total_steps=int(state.get("total_steps", 0)),
                saved_at=int(payload.get("saved_at", 0)),
            )
        except (TypeError, ValueError):
            return None

    def clear(self) -> None:
        try:
            self.session_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove session file %s: %s", self.session_path, exc)
        self._state = RunState()
        self._step_results = []
        self._events = []

    def reset(
        self,
        plan_id: str,
        total_phases: int,
        total_steps: int,
        config: AutopilotConfig,
    ) -> None:
        self._state = RunState(
            plan_id=plan_id,
            total_phases=total_phases,
            total_steps=total_steps,
            config=config,
            active_agent=config.primary_agent,
        )
        self._step_results = []
        self._events = []
