import pytest

from autopilot.rate_limit import (
    RateLimitInfo,
    detect_rate_limit,
    get_wait_time,
    should_fallback,
)


@pytest.mark.parametrize(
    ("text", "provider", "retry_after_ms"),
    [
        ("HTTP 429 Too Many Requests", "generic", None),
        ("anthropic error: rate_limit_error", "claude", None),
        ("API is Overloaded, try again later", "claude", None),
        ("Please retry after 30 seconds", "claude", 30_000),
        ("You exceeded your current quota, check your plan", "openai", None),
        ("Limit reached: 90000 tokens per min", "openai", None),
        ("Retry-After: 12", "generic", 12_000),
        ("RESOURCE_EXHAUSTED: resource has been exhausted", "generic", None),
        ("Too many concurrent sessions", "generic", None),
    ],
)
def test_detect_rate_limit_classifies_provider(
    text: str, provider: str, retry_after_ms: int | None
) -> None:
    info = detect_rate_limit(text)

    assert info.detected is True
    assert info.provider == provider
    assert info.retry_after_ms == retry_after_ms
    assert info.matched_text


def test_first_matching_pattern_wins() -> None:
    info = detect_rate_limit("Rate limited: please retry after 45")

    assert info.provider == "claude"
    assert info.retry_after_ms is None
    assert info.matched_text is not None
    assert info.matched_text.lower().startswith("rate limit")


@pytest.mark.parametrize("text", ["", None, "SyntaxError: invalid syntax in app.py", "exit code 1"])
def test_detect_rate_limit_ignores_ordinary_failures(text: str | None) -> None:
    info = detect_rate_limit(text)

    assert info.detected is False
    assert info.provider is None
    assert info.retry_after_ms is None


def test_should_fallback_matches_provider_to_agent_family() -> None:
    claude_limit = detect_rate_limit("rate limit exceeded")
    openai_limit = detect_rate_limit("quota exceeded")
    generic_limit = detect_rate_limit("429")

    assert should_fallback(claude_limit, "claude-cli") is True
    assert should_fallback(claude_limit, "codex-cli") is False
    assert should_fallback(openai_limit, "codex-cli") is True
    assert should_fallback(openai_limit, "gpt-api") is True
    assert should_fallback(openai_limit, "claude-cli") is False
    assert should_fallback(generic_limit, "anything") is True
    assert should_fallback(RateLimitInfo(detected=False), "claude-cli") is False


def test_wait_time_uses_exponential_backoff_without_provider_delay() -> None:
    info = detect_rate_limit("429 Too Many Requests")

    assert get_wait_time(info, 0, 2000) == 2000
    assert get_wait_time(info, 2, 2000) == 8000


def test_wait_time_prefers_provider_declared_delay() -> None:
    info = detect_rate_limit("retry after: 5")

    assert get_wait_time(info, 3, 2000) == 5000
