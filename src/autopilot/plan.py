from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from autopilot.errors import PlanError


@dataclass(slots=True, frozen=True)
class Step:
    id: str
    description: str
    rationale: str = ""
    files: tuple[str, ...] = ()
    change_type: str = "modify"

    @classmethod
    def from_dict(cls, data: Any) -> Step:
        if not isinstance(data, dict):
            raise PlanError(f"Step entry must be an object, got {type(data).__name__}")
        step_id = str(data.get("id") or "").strip()
        if not step_id:
            raise PlanError("Step is missing an id.")
        files = data.get("files", [])
        if not isinstance(files, list):
            raise PlanError(f"Step {step_id} has a non-list 'files' entry.")
        return cls(
            id=step_id,
            description=str(data.get("description", "")),
            rationale=str(data.get("rationale", "")),
            files=tuple(str(item) for item in files),
            change_type=str(data.get("change_type") or data.get("changeType") or "modify"),
        )


@dataclass(slots=True, frozen=True)
class Phase:
    id: str
    title: str
    description: str = ""
    steps: tuple[Step, ...] = ()

    @classmethod
    def from_dict(cls, data: Any) -> Phase:
        if not isinstance(data, dict):
            raise PlanError(f"Phase entry must be an object, got {type(data).__name__}")
        phase_id = str(data.get("id") or "").strip()
        if not phase_id:
            raise PlanError("Phase is missing an id.")
        steps = data.get("steps", [])
        if not isinstance(steps, list):
            raise PlanError(f"Phase {phase_id} has a non-list 'steps' entry.")
        return cls(
            id=phase_id,
            title=str(data.get("title") or phase_id),
            description=str(data.get("description", "")),
            steps=tuple(Step.from_dict(item) for item in steps),
        )


@dataclass(slots=True, frozen=True)
class Plan:
    """Ordered phases of ordered steps. The engine never mutates a plan."""

    id: str
    intent: str = ""
    summary: str = ""
    phases: tuple[Phase, ...] = field(default_factory=tuple)
    rules: str = ""

    @property
    def total_steps(self) -> int:
        return sum(len(phase.steps) for phase in self.phases)

    @classmethod
    def from_dict(cls, data: Any) -> Plan:
        if not isinstance(data, dict):
            raise PlanError("Plan payload must be a JSON object.")
        plan_id = str(data.get("id") or "").strip()
        if not plan_id:
            raise PlanError("Plan is missing an id.")
        phases = data.get("phases", [])
        if not isinstance(phases, list):
            raise PlanError("Plan 'phases' must be a list.")
        parsed = tuple(Phase.from_dict(item) for item in phases)
        step_ids = [step.id for phase in parsed for step in phase.steps]
        duplicates = sorted({step_id for step_id in step_ids if step_ids.count(step_id) > 1})
        if duplicates:
            raise PlanError("Duplicate step ids in plan: " + ", ".join(duplicates))
        return cls(
            id=plan_id,
            intent=str(data.get("intent", "")),
            summary=str(data.get("summary", "")),
            phases=parsed,
            rules=str(data.get("rules", "")),
        )


def load_plan(path: Path) -> Plan:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PlanError(f"Could not read plan file {path}: {exc}") from exc
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise PlanError(f"Plan file {path} is not valid JSON: {exc}") from exc
    return Plan.from_dict(payload)
