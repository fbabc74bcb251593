from autopilot.config import AutopilotConfig
from autopilot.error_strategy import FALLBACK_SWITCH_DELAY_MS, evaluate_error


def _config(**overrides: object) -> AutopilotConfig:
    base = AutopilotConfig(
        primary_agent="claude-cli",
        fallback_agent="codex-cli",
        error_strategy="retry",
        max_retries=3,
        retry_base_delay_ms=2000,
    )
    return base.merged(overrides)


def test_rate_limit_switches_to_distinct_fallback() -> None:
    decision = evaluate_error("rate_limit_error: slow down", "claude-cli", 0, _config())

    assert decision.action == "retry-fallback"
    assert decision.agent == "codex-cli"
    assert decision.wait_ms == FALLBACK_SWITCH_DELAY_MS
    assert "fallback" in decision.reason


def test_rate_limit_on_fallback_agent_backs_off_instead() -> None:
    decision = evaluate_error("429 Too Many Requests", "codex-cli", 1, _config())

    assert decision.action == "retry"
    assert decision.agent == "codex-cli"
    assert decision.wait_ms == 4000


def test_rate_limit_from_other_provider_does_not_switch() -> None:
    config = _config(primary_agent="codex-cli", fallback_agent="claude-cli")

    decision = evaluate_error("Anthropic API overloaded", "codex-cli", 0, config)

    assert decision.action == "retry"
    assert decision.wait_ms == 2000


def test_rate_limit_without_fallback_uses_provider_delay() -> None:
    decision = evaluate_error("please retry after 7", "claude-cli", 0, _config(fallback_agent=None))

    assert decision.action == "retry"
    assert decision.wait_ms == 7000


def test_exhausted_rate_limit_respects_skip_strategy() -> None:
    config = _config(fallback_agent=None, error_strategy="skip")

    decision = evaluate_error("rate limited", "claude-cli", 3, config)

    assert decision.action == "skip"
    assert decision.wait_ms == 0


def test_exhausted_rate_limit_aborts_under_other_strategies() -> None:
    for strategy in ("retry", "abort"):
        config = _config(fallback_agent=None, error_strategy=strategy)

        decision = evaluate_error("rate limited", "claude-cli", 3, config)

        assert decision.action == "abort"


def test_generic_retry_strategy_backs_off_then_aborts() -> None:
    config = _config()

    retry = evaluate_error("AssertionError: tests failed", "claude-cli", 2, config)
    exhausted = evaluate_error("AssertionError: tests failed", "claude-cli", 3, config)

    assert retry.action == "retry"
    assert retry.wait_ms == 8000
    assert "attempt 3/3" in retry.reason
    assert exhausted.action == "abort"
    assert "after 3 retries" in exhausted.reason


def test_generic_skip_and_abort_strategies_are_immediate() -> None:
    skip = evaluate_error("boom", "claude-cli", 0, _config(error_strategy="skip"))
    abort = evaluate_error("boom", "claude-cli", 0, _config(error_strategy="abort"))

    assert skip.action == "skip"
    assert abort.action == "abort"
    assert skip.agent == abort.agent == "claude-cli"
