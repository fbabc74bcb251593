from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from abc import abstractmethod
from pathlib import Path
from typing import Any

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
from autopilot.models import now_ms
from autopilot.plan import Phase, Plan, Step

logger = logging.getLogger(__name__)


class CliStepExecutor(StepExecutor):
    """Runs a step through a coding-assistant CLI that streams JSON lines."""

    agent_name = "cli"
    keep_plain_lines = False

    def __init__(
        self,
        binary: str,
        working_directory: Path | None = None,
        *,
        model: str | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.model = model or None

    @abstractmethod
    def build_command(self, prompt: StepPrompt) -> list[str]:
        """Return the argv that executes ``prompt``."""

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)

        delta = event.get("delta")
        if isinstance(delta, str):
            return delta

        message = event.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict):
            return CliStepExecutor._extract_content(message)
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def _read_stdout(self, process: asyncio.subprocess.Process) -> list[str]:
        if process.stdout is None:
            raise StepProcessError(
                f"{self.agent_name} process did not expose stdout.", agent=self.agent_name
            )
        chunks: list[str] = []
        parse_buffer = ""
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                if self.keep_plain_lines:
                    chunks.append(line)
                continue

            if not isinstance(event, dict):
                continue
            content = self._extract_content(event)
            if content:
                chunks.append(content)

        if parse_buffer and self.keep_plain_lines:
            chunks.append(parse_buffer)
        return chunks

    async def _collect(self, process: asyncio.subprocess.Process) -> tuple[list[str], int, str]:
        stderr_task: asyncio.Future[bytes] | None = None
        if process.stderr is not None:
            stderr_task = asyncio.ensure_future(process.stderr.read())
        try:
            chunks = await self._read_stdout(process)
            return_code = await process.wait()
            stderr_output = ""
            if stderr_task is not None:
                stderr_output = (await stderr_task).decode("utf-8", errors="replace").strip()
            return chunks, return_code, stderr_output
        finally:
            if stderr_task is not None and not stderr_task.done():
                stderr_task.cancel()

    async def _run_to_completion(
        self,
        process: asyncio.subprocess.Process,
        options: ExecutionOptions,
    ) -> tuple[list[str], int, str]:
        collector = asyncio.ensure_future(self._collect(process))
        waiters: set[asyncio.Future[Any]] = {collector}
        cancel_waiter: asyncio.Future[Any] | None = None
        if options.cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(options.cancel_event.wait())
            waiters.add(cancel_waiter)

        timeout_seconds = max(0.001, options.timeout_ms / 1000)
        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()

        if collector in done:
            return collector.result()

        collector.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await collector
        if cancel_waiter is not None and cancel_waiter in done:
            raise StepCancelledError(
                f"{self.agent_name} step cancelled by abort request.", agent=self.agent_name
            )
        raise StepTimeoutError(
            f"{self.agent_name} step timed out after {timeout_seconds:.1f}s",
            agent=self.agent_name,
        )

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        with contextlib.suppress(ProcessLookupError):
            await process.wait()

    async def execute_step(
        self,
        plan: Plan,
        phase: Phase,
        step: Step,
        options: ExecutionOptions,
    ) -> StepOutcome:
        if options.cancelled:
            raise StepCancelledError(
                f"{self.agent_name} step cancelled before start.", agent=self.agent_name
            )

        prompt = build_step_prompt(plan, phase, step)
        command = self.build_command(prompt)
        started_at = now_ms()
        logger.debug("Starting %s for step %s: %s", self.agent_name, step.id, command[:3])
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise StepProcessError(
                f"{self.agent_name} binary not found: {self.binary}", agent=self.agent_name
            ) from exc

        try:
            chunks, return_code, stderr_output = await self._run_to_completion(process, options)
        finally:
            await self._terminate(process)

        logger.debug("%s exited with code %s for step %s", self.agent_name, return_code, step.id)
        if return_code != 0:
            raise StepExecutionError(
                f"{self.agent_name} failed with exit code {return_code}: {stderr_output}",
                agent=self.agent_name,
                exit_code=return_code,
            )
        return StepOutcome(
            step_id=step.id,
            success=True,
            output="".join(chunks).strip(),
            files_changed=list(step.files),
            started_at=started_at,
            ended_at=now_ms(),
        )
