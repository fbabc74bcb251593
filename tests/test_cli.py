import json
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from autopilot.cli import cli
from autopilot.config import AutopilotSettings, load_settings, save_settings
from autopilot.executors.base import ExecutionOptions, StepExecutionError, StepExecutor, StepOutcome
from autopilot.plan import Phase, Plan, Step


class FakeExecutor(StepExecutor):
    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()

    async def execute_step(
        self,
        plan: Plan,
        phase: Phase,
        step: Step,
        options: ExecutionOptions,
    ) -> StepOutcome:
        _ = plan, phase
        if step.id in self.failing:
            raise StepExecutionError("tests failed", agent=options.agent)
        return StepOutcome(step_id=step.id, success=True, output=f"done: {step.description}")


def _write_plan(path: Path) -> None:
    payload = {
        "id": "plan-cli",
        "phases": [
            {"id": "p1", "title": "One", "steps": [{"id": "s1", "description": "First"}]},
            {"id": "p2", "title": "Two", "steps": [{"id": "s2", "description": "Second"}]},
        ],
    }
    path.write_text(json.dumps(payload), encoding="utf-8")


def _fast_settings(config_path: Path) -> None:
    settings = AutopilotSettings.default()
    settings.autopilot = settings.autopilot.merged({"step_delay_ms": 0, "retry_base_delay_ms": 0})
    save_settings(config_path, settings)


def _use_executor(monkeypatch: pytest.MonkeyPatch, executor: StepExecutor) -> None:
    monkeypatch.setattr("autopilot.cli.build_executor", lambda settings, workspace: executor)


def test_init_writes_config_and_session_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["init", "--primary", "codex-cli", "--fallback", ""])

    assert result.exit_code == 0, result.output
    assert "Primary agent: codex-cli" in result.output
    assert "Fallback agent: (none)" in result.output
    settings = load_settings(tmp_path / "autopilot.toml")
    assert settings.autopilot.primary_agent == "codex-cli"
    assert settings.autopilot.fallback_agent is None
    assert (tmp_path / ".autopilot").is_dir()


def test_run_status_and_reset_lifecycle(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    _fast_settings(tmp_path / "autopilot.toml")
    _write_plan(tmp_path / "plan.json")
    _use_executor(monkeypatch, FakeExecutor())
    runner = CliRunner()

    run_result = runner.invoke(cli, ["run", "plan.json"])
    assert run_result.exit_code == 0, run_result.output
    assert "[started]" in run_result.output
    assert "[phase-complete]" in run_result.output
    assert "Status: completed" in run_result.output
    assert "2 completed, 0 failed, 0 skipped of 2" in run_result.output

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    payload: dict[str, Any] = json.loads(status_result.output)
    assert payload["status"] == "completed"
    assert payload["plan_id"] == "plan-cli"
    assert payload["interrupted"] is False

    reset_result = runner.invoke(cli, ["reset"])
    assert reset_result.exit_code == 0
    assert "Autopilot session cleared." in reset_result.output

    empty_status = runner.invoke(cli, ["status"])
    assert "No autopilot session found." in empty_status.output


def test_run_failure_exits_non_zero(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    _fast_settings(tmp_path / "autopilot.toml")
    _write_plan(tmp_path / "plan.json")
    _use_executor(monkeypatch, FakeExecutor(failing={"s1"}))

    result = CliRunner().invoke(cli, ["run", "plan.json", "--max-retries", "0"])

    assert result.exit_code == 1
    assert "[step-failed]" in result.output
    assert "Autopilot failed: Step failed after 0 retries. Aborting." in result.output


def test_run_with_skip_strategy_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    _fast_settings(tmp_path / "autopilot.toml")
    _write_plan(tmp_path / "plan.json")
    _use_executor(monkeypatch, FakeExecutor(failing={"s1"}))

    result = CliRunner().invoke(cli, ["run", "plan.json", "--strategy", "skip"])

    assert result.exit_code == 0, result.output
    assert "[step-skipped]" in result.output
    assert "1 completed, 0 failed, 1 skipped of 2" in result.output


def test_invalid_plan_and_missing_session_are_reported(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    _use_executor(monkeypatch, FakeExecutor())
    (tmp_path / "broken.json").write_text("{", encoding="utf-8")
    _write_plan(tmp_path / "plan.json")
    runner = CliRunner()

    broken = runner.invoke(cli, ["run", "broken.json"])
    assert broken.exit_code == 1
    assert "not valid JSON" in broken.output

    resume = runner.invoke(cli, ["resume", "plan.json"])
    assert resume.exit_code == 1
    assert "No session to resume" in resume.output
