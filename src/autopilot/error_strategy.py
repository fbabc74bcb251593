from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Literal

from autopilot.config import AutopilotConfig
from autopilot.rate_limit import RateLimitInfo, detect_rate_limit, get_wait_time, should_fallback

DecisionAction = Literal["retry", "retry-fallback", "skip", "abort"]

FALLBACK_SWITCH_DELAY_MS = 1000


@dataclass(slots=True, frozen=True)
class ErrorDecision:
    action: DecisionAction
    wait_ms: int
    agent: str
    reason: str


def evaluate_error(
    error: str,
    current_agent: str,
    retry_attempt: int,
    config: AutopilotConfig,
) -> ErrorDecision:
    """Decide how the engine should react to one failed step attempt.

    Rate limits are handled before the configured strategy: switching agents
    is preferred over waiting whenever a distinct fallback is available.
    """
    info = detect_rate_limit(error)
    if info.detected:
        return _handle_rate_limit(info, current_agent, retry_attempt, config)
    return _handle_generic_error(current_agent, retry_attempt, config)


def _handle_rate_limit(
    info: RateLimitInfo,
    current_agent: str,
    retry_attempt: int,
    config: AutopilotConfig,
) -> ErrorDecision:
    fallback = config.fallback_agent
    if fallback and fallback != current_agent and should_fallback(info, current_agent):
        return ErrorDecision(
            action="retry-fallback",
            wait_ms=FALLBACK_SWITCH_DELAY_MS,
            agent=fallback,
            reason=f"Rate limited by {info.provider}. Switching to fallback agent {fallback}.",
        )

    if retry_attempt < config.max_retries:
        wait_ms = get_wait_time(info, retry_attempt, config.retry_base_delay_ms)
        return ErrorDecision(
            action="retry",
            wait_ms=wait_ms,
            agent=current_agent,
            reason=(
                f"Rate limited. Waiting {wait_ms / 1000:.1f}s before retry "
                f"(attempt {retry_attempt + 1}/{config.max_retries})."
            ),
        )

    if config.error_strategy == "skip":
        return ErrorDecision(
            action="skip",
            wait_ms=0,
            agent=current_agent,
            reason="Rate limited. All retries exhausted. Skipping step.",
        )
    return ErrorDecision(
        action="abort",
        wait_ms=0,
        agent=current_agent,
        reason="Rate limited. All retries exhausted. Aborting autopilot.",
    )


def _handle_generic_error(
    current_agent: str,
    retry_attempt: int,
    config: AutopilotConfig,
) -> ErrorDecision:
    if config.error_strategy == "retry":
        if retry_attempt < config.max_retries:
            wait_ms = int(config.retry_base_delay_ms * (2 ** retry_attempt))
            return ErrorDecision(
                action="retry",
                wait_ms=wait_ms,
                agent=current_agent,
                reason=(
                    f"Step failed. Retrying in {wait_ms / 1000:.1f}s "
                    f"(attempt {retry_attempt + 1}/{config.max_retries})."
                ),
            )
        return ErrorDecision(
            action="abort",
            wait_ms=0,
            agent=current_agent,
            reason=f"Step failed after {config.max_retries} retries. Aborting.",
        )

    if config.error_strategy == "skip":
        return ErrorDecision(
            action="skip",
            wait_ms=0,
            agent=current_agent,
            reason="Step failed. Skipping and continuing.",
        )

    return ErrorDecision(
        action="abort",
        wait_ms=0,
        agent=current_agent,
        reason="Step failed. Aborting autopilot.",
    )


async def sleep_ms(ms: int) -> None:
    if ms > 0:
        await asyncio.sleep(ms / 1000)
