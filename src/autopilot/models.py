from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Literal, get_args

from autopilot.config import AutopilotConfig

RunStatus = Literal["idle", "running", "pausing", "paused", "stopping", "completed", "failed"]
RUN_STATUSES: tuple[str, ...] = get_args(RunStatus)

# A run in one of these statuses still owns the engine loop.
ACTIVE_STATUSES = frozenset({"running", "pausing", "paused", "stopping"})
# Persisted with one of these, the process died before reaching a terminal state.
INTERRUPTED_STATUSES = frozenset({"running", "paused", "pausing"})

EventName = Literal[
    "started",
    "step-start",
    "step-complete",
    "step-failed",
    "step-skipped",
    "phase-complete",
    "paused",
    "resumed",
    "agent-switched",
    "complete",
    "failed",
    "aborted",
]
EVENT_NAMES: tuple[str, ...] = get_args(EventName)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class RunState:
    status: RunStatus = "idle"
    plan_id: str | None = None
    current_phase_index: int = 0
    current_step_index: int = 0
    total_phases: int = 0
    total_steps: int = 0
    completed_steps: int = 0
    failed_steps: int = 0
    skipped_steps: int = 0
    current_retry: int = 0
    active_agent: str = "claude-cli"
    using_fallback: bool = False
    started_at: int | None = None
    last_step_at: int | None = None
    error: str | None = None
    config: AutopilotConfig = field(default_factory=AutopilotConfig)

    @property
    def processed_steps(self) -> int:
        return self.completed_steps + self.failed_steps + self.skipped_steps

    def snapshot(self) -> RunState:
        return replace(self, config=replace(self.config))

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["config"] = self.config.to_dict()
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunState:
        status = data.get("status", "idle")
        if status not in RUN_STATUSES:
            raise ValueError(f"Unknown run status: {status!r}")
        config_payload = data.get("config") or {}
        if not isinstance(config_payload, dict):
            raise ValueError("Run state config must be an object.")
        return cls(
            status=status,
            plan_id=data.get("plan_id"),
            current_phase_index=int(data.get("current_phase_index", 0)),
            current_step_index=int(data.get("current_step_index", 0)),
            total_phases=int(data.get("total_phases", 0)),
            total_steps=int(data.get("total_steps", 0)),
            completed_steps=int(data.get("completed_steps", 0)),
            failed_steps=int(data.get("failed_steps", 0)),
            skipped_steps=int(data.get("skipped_steps", 0)),
            current_retry=int(data.get("current_retry", 0)),
            active_agent=str(data.get("active_agent", "claude-cli")),
            using_fallback=bool(data.get("using_fallback", False)),
            started_at=data.get("started_at"),
            last_step_at=data.get("last_step_at"),
            error=data.get("error"),
            config=AutopilotConfig.from_dict(config_payload),
        )


@dataclass(slots=True)
class StepResult:
    step_id: str
    success: bool
    output: str = ""
    error: str | None = None
    files_changed: list[str] = field(default_factory=list)
    started_at: int = 0
    ended_at: int = 0
    agent: str = ""
    retries: int = 0
    was_fallback: bool = False
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StepResult:
        return cls(
            step_id=str(data["step_id"]),
            success=bool(data.get("success", False)),
            output=str(data.get("output", "")),
            error=data.get("error"),
            files_changed=[str(item) for item in data.get("files_changed", [])],
            started_at=int(data.get("started_at", 0)),
            ended_at=int(data.get("ended_at", 0)),
            agent=str(data.get("agent", "")),
            retries=int(data.get("retries", 0)),
            was_fallback=bool(data.get("was_fallback", False)),
            skipped=bool(data.get("skipped", False)),
        )


@dataclass(slots=True, frozen=True)
class Event:
    type: EventName
    timestamp: int
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "timestamp": self.timestamp, "data": self.data}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Event:
        event_type = data.get("type")
        if event_type not in EVENT_NAMES:
            raise ValueError(f"Unknown event type: {event_type!r}")
        payload = data.get("data")
        return cls(
            type=event_type,
            timestamp=int(data.get("timestamp", 0)),
            data=payload if isinstance(payload, dict) else None,
        )
