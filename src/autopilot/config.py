from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Literal, get_args

ErrorStrategyName = Literal["retry", "skip", "abort"]
ERROR_STRATEGIES: tuple[str, ...] = get_args(ErrorStrategyName)


@dataclass(slots=True)
class AutopilotConfig:
    primary_agent: str = "claude-cli"
    fallback_agent: str | None = "codex-cli"
    error_strategy: ErrorStrategyName = "retry"
    max_retries: int = 3
    retry_base_delay_ms: int = 2000
    step_delay_ms: int = 500
    step_timeout_ms: int = 300_000
    auto_commit_per_phase: bool = False
    compact_between_phases: bool = True

    def __post_init__(self) -> None:
        if self.error_strategy not in ERROR_STRATEGIES:
            raise ValueError(
                f"Unsupported error strategy: {self.error_strategy!r} "
                f"(expected one of {', '.join(ERROR_STRATEGIES)})"
            )
        if self.fallback_agent == "":
            self.fallback_agent = None

    @classmethod
    def default(cls) -> AutopilotConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AutopilotConfig:
        return cls.default().merged(data)

    def merged(self, partial: dict[str, Any] | None) -> AutopilotConfig:
        if not partial:
            return replace(self)
        known = {item.name for item in fields(self)}
        unknown = sorted(key for key in partial if key not in known)
        if unknown:
            raise ValueError("Unknown autopilot config keys: " + ", ".join(unknown))
        return replace(self, **partial)

    def to_dict(self) -> dict[str, Any]:
        return {
            "primary_agent": self.primary_agent,
            "fallback_agent": self.fallback_agent,
            "error_strategy": self.error_strategy,
            "max_retries": self.max_retries,
            "retry_base_delay_ms": self.retry_base_delay_ms,
            "step_delay_ms": self.step_delay_ms,
            "step_timeout_ms": self.step_timeout_ms,
            "auto_commit_per_phase": self.auto_commit_per_phase,
            "compact_between_phases": self.compact_between_phases,
        }


@dataclass(slots=True)
class AgentsConfig:
    claude_binary: str = "claude"
    codex_binary: str = "codex"
    model: str = ""


@dataclass(slots=True)
class SessionConfig:
    directory: str = ".autopilot"


@dataclass(slots=True)
class AutopilotSettings:
    autopilot: AutopilotConfig = field(default_factory=AutopilotConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    session: SessionConfig = field(default_factory=SessionConfig)

    @classmethod
    def default(cls) -> AutopilotSettings:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> AutopilotSettings:
        return cls(
            autopilot=AutopilotConfig.from_dict(data.get("autopilot", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            session=SessionConfig(**data.get("session", {})),
        )

    def to_dict(self) -> dict:
        return {
            "autopilot": self.autopilot.to_dict(),
            "agents": {
                "claude_binary": self.agents.claude_binary,
                "codex_binary": self.agents.codex_binary,
                "model": self.agents.model,
            },
            "session": {
                "directory": self.session.directory,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(settings: AutopilotSettings) -> str:
    data = settings.to_dict()
    lines: list[str] = []
    for section in ("autopilot", "agents", "session"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            # TOML has no null; an empty fallback_agent reads back as None.
            if value is None:
                lines.append(f"{key} = \"\"")
                continue
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_settings(path: Path) -> AutopilotSettings:
    if not path.exists():
        return AutopilotSettings.default()
    return AutopilotSettings.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_settings(path: Path, settings: AutopilotSettings) -> None:
    path.write_text(dumps_toml(settings), encoding="utf-8")
