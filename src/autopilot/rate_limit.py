"""Rate-limit detection for agent failure messages.

Recognises Anthropic/Claude, OpenAI and provider-agnostic (HTTP 429,
Retry-After, resource exhaustion) phrasing. Patterns are tried in order and
the first match wins, so the more specific delay-carrying patterns only apply
when no earlier generic wording matched.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

Provider = Literal["claude", "openai", "generic"]

OPENAI_AGENT_TOKENS = ("gpt", "codex", "openai")


@dataclass(slots=True, frozen=True)
class RateLimitInfo:
    detected: bool
    provider: Provider | None = None
    retry_after_ms: int | None = None
    matched_text: str | None = None


NOT_RATE_LIMITED = RateLimitInfo(detected=False)


def _seconds_to_ms(match: re.Match[str]) -> int | None:
    try:
        return int(match.group(1)) * 1000
    except (IndexError, TypeError, ValueError):
        return None


@dataclass(slots=True, frozen=True)
class _Rule:
    pattern: re.Pattern[str]
    provider: Provider
    extract_retry_ms: Callable[[re.Match[str]], int | None] | None = None


def _rule(
    expression: str,
    provider: Provider,
    extract_retry_ms: Callable[[re.Match[str]], int | None] | None = None,
) -> _Rule:
    return _Rule(re.compile(expression, re.IGNORECASE), provider, extract_retry_ms)


RATE_LIMIT_RULES: tuple[_Rule, ...] = (
    _rule(r"429|too many requests", "generic"),
    _rule(r"rate[_\s-]?limit(?:ed)?", "claude"),
    _rule(r"overloaded|capacity|anthropic.*limit", "claude"),
    _rule(r"please retry after (\d+)", "claude", _seconds_to_ms),
    _rule(r"openai.*rate|rate.*openai", "openai"),
    _rule(r"quota.*exceeded|exceeded.*quota", "openai"),
    _rule(r"tokens per min|TPM|RPM", "openai"),
    _rule(r"retry[_\s-]?after[:\s]+(\d+)", "generic", _seconds_to_ms),
    _rule(r"resource.*exhausted|service.*unavailable", "generic"),
    _rule(r"too many concurrent|concurrent.*limit", "generic"),
)


def detect_rate_limit(text: str | None) -> RateLimitInfo:
    if not text:
        return NOT_RATE_LIMITED
    for rule in RATE_LIMIT_RULES:
        match = rule.pattern.search(text)
        if match is None:
            continue
        retry_after_ms = rule.extract_retry_ms(match) if rule.extract_retry_ms else None
        return RateLimitInfo(
            detected=True,
            provider=rule.provider,
            retry_after_ms=retry_after_ms,
            matched_text=match.group(0),
        )
    return NOT_RATE_LIMITED


def should_fallback(info: RateLimitInfo, current_agent: str) -> bool:
    """Whether switching away from ``current_agent`` can sidestep the limit."""
    if not info.detected:
        return False
    agent = current_agent.lower()
    if info.provider == "claude" and "claude" in agent:
        return True
    if info.provider == "openai" and any(token in agent for token in OPENAI_AGENT_TOKENS):
        return True
    return info.provider == "generic"


def get_wait_time(info: RateLimitInfo, retry_attempt: int, base_delay_ms: int) -> int:
    if info.retry_after_ms:
        return info.retry_after_ms
    return int(base_delay_ms * (2 ** retry_attempt))
