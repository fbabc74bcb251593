from __future__ import annotations

import asyncio
import json
import logging
import signal
from collections.abc import Awaitable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from autopilot.config import (
    ERROR_STRATEGIES,
    AutopilotConfig,
    AutopilotSettings,
    load_settings,
    save_settings,
)
from autopilot.engine import AutopilotEngine
from autopilot.errors import AutopilotError, PlanError
from autopilot.executors import AgentRouter, ClaudeCodeExecutor, CodexExecutor, StepExecutor
from autopilot.models import Event
from autopilot.plan import Plan, load_plan
from autopilot.session import SessionStore


@dataclass(slots=True)
class Runtime:
    workspace: Path
    config_path: Path
    settings: AutopilotSettings
    engine: AutopilotEngine


def _resolve_config_path(workspace: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = workspace / config_path
    return config_path.resolve()


def build_executor(settings: AutopilotSettings, workspace: Path) -> StepExecutor:
    model = settings.agents.model or None
    return AgentRouter(
        {
            ClaudeCodeExecutor.agent_name: ClaudeCodeExecutor(
                binary=settings.agents.claude_binary,
                working_directory=workspace,
                model=model,
            ),
            CodexExecutor.agent_name: CodexExecutor(
                binary=settings.agents.codex_binary,
                working_directory=workspace,
                model=model,
            ),
        }
    )


def _load_runtime(workspace: Path, config_path: Path) -> Runtime:
    try:
        settings = load_settings(config_path)
    except (ValueError, TypeError) as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc
    session = SessionStore(workspace, directory=settings.session.directory)
    engine = AutopilotEngine(workspace, build_executor(settings, workspace), session=session)
    return Runtime(
        workspace=workspace,
        config_path=config_path,
        settings=settings,
        engine=engine,
    )


def _load_plan_or_fail(plan_file: str) -> Plan:
    try:
        return load_plan(Path(plan_file))
    except PlanError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_event(event: Event) -> None:
    details = ""
    if event.data:
        visible = {key: value for key, value in event.data.items() if key != "result"}
        details = " " + json.dumps(visible, ensure_ascii=False)
    click.echo(f"[{event.type}]{details}")


def _toggle_pause(engine: AutopilotEngine) -> None:
    status = engine.session.state.status
    if status == "paused":
        engine.unpause()
    elif status == "running":
        engine.pause()


async def _drive_with_signals(engine: AutopilotEngine, run: Awaitable[None]) -> None:
    loop = asyncio.get_running_loop()
    handlers: list[tuple[int, Any]] = [(signal.SIGINT, engine.abort)]
    sigusr1 = getattr(signal, "SIGUSR1", None)
    if sigusr1 is not None:
        handlers.append((sigusr1, lambda: _toggle_pause(engine)))

    installed: list[int] = []
    for signum, handler in handlers:
        try:
            loop.add_signal_handler(signum, handler)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(signum)
    try:
        await run
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


def _report(engine: AutopilotEngine) -> None:
    state = engine.state
    click.echo(f"Status: {state.status}")
    click.echo(
        f"Steps: {state.completed_steps} completed, {state.failed_steps} failed, "
        f"{state.skipped_steps} skipped of {state.total_steps}"
    )
    if state.status == "failed":
        raise click.ClickException(f"Autopilot failed: {state.error}")


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Autopilot CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--primary", default=None, help="Primary agent identifier.")
@click.option("--fallback", default=None, help="Fallback agent identifier ('' disables).")
@click.option("--config", "config_value", default="autopilot.toml", show_default=True)
def init_command(primary: str | None, fallback: str | None, config_value: str) -> None:
    workspace = Path.cwd().resolve()
    config_path = _resolve_config_path(workspace, config_value)
    settings = load_settings(config_path)
    overrides: dict[str, Any] = {}
    if primary:
        overrides["primary_agent"] = primary
    if fallback is not None:
        overrides["fallback_agent"] = fallback or None
    settings.autopilot = settings.autopilot.merged(overrides)
    save_settings(config_path, settings)
    (workspace / settings.session.directory).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized autopilot in {workspace}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Primary agent: {settings.autopilot.primary_agent}")
    click.echo(f"Fallback agent: {settings.autopilot.fallback_agent or '(none)'}")


@cli.command("run")
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--strategy", type=click.Choice(list(ERROR_STRATEGIES)), default=None)
@click.option("--max-retries", type=click.IntRange(min=0), default=None)
@click.option("--primary", default=None)
@click.option("--fallback", default=None)
@click.option("--config", "config_value", default="autopilot.toml", show_default=True)
def run_command(
    plan_file: str,
    strategy: str | None,
    max_retries: int | None,
    primary: str | None,
    fallback: str | None,
    config_value: str,
) -> None:
    workspace = Path.cwd().resolve()
    runtime = _load_runtime(workspace, _resolve_config_path(workspace, config_value))
    plan = _load_plan_or_fail(plan_file)

    overrides: dict[str, Any] = {}
    if strategy:
        overrides["error_strategy"] = strategy
    if max_retries is not None:
        overrides["max_retries"] = max_retries
    if primary:
        overrides["primary_agent"] = primary
    if fallback is not None:
        overrides["fallback_agent"] = fallback or None
    try:
        config: AutopilotConfig = runtime.settings.autopilot.merged(overrides)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    if runtime.engine.has_interrupted_session():
        click.echo("Discarding interrupted session; use `autopilot resume` to continue it instead.")

    runtime.engine.on_event(_echo_event)
    try:
        asyncio.run(_drive_with_signals(runtime.engine, runtime.engine.start(plan, config)))
    except AutopilotError as exc:
        raise click.ClickException(str(exc)) from exc
    _report(runtime.engine)


@cli.command("resume")
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--config", "config_value", default="autopilot.toml", show_default=True)
def resume_command(plan_file: str, config_value: str) -> None:
    workspace = Path.cwd().resolve()
    runtime = _load_runtime(workspace, _resolve_config_path(workspace, config_value))
    plan = _load_plan_or_fail(plan_file)

    info = runtime.engine.interrupted_session_info()
    if info is not None:
        click.echo(
            f"Resuming plan {info.plan_id}: {info.completed_steps}/{info.total_steps} "
            "steps completed before interruption."
        )

    runtime.engine.on_event(_echo_event)
    try:
        asyncio.run(_drive_with_signals(runtime.engine, runtime.engine.resume(plan)))
    except AutopilotError as exc:
        raise click.ClickException(str(exc)) from exc
    _report(runtime.engine)


@cli.command("status")
@click.option("--config", "config_value", default="autopilot.toml", show_default=True)
def status_command(config_value: str) -> None:
    workspace = Path.cwd().resolve()
    runtime = _load_runtime(workspace, _resolve_config_path(workspace, config_value))
    if not runtime.engine.session.load():
        click.echo("No autopilot session found.")
        return
    payload = runtime.engine.status()
    payload["interrupted"] = runtime.engine.has_interrupted_session()
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("reset")
@click.option("--config", "config_value", default="autopilot.toml", show_default=True)
def reset_command(config_value: str) -> None:
    workspace = Path.cwd().resolve()
    runtime = _load_runtime(workspace, _resolve_config_path(workspace, config_value))
    runtime.engine.reset()
    click.echo("Autopilot session cleared.")
