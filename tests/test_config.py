import tomllib
from pathlib import Path

import pytest

from autopilot import __version__
from autopilot.config import (
    AutopilotConfig,
    AutopilotSettings,
    dumps_toml,
    load_settings,
    save_settings,
)


def test_settings_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "autopilot.toml"
    settings = AutopilotSettings.default()
    settings.autopilot = settings.autopilot.merged(
        {
            "primary_agent": "codex-cli",
            "fallback_agent": "claude-cli",
            "error_strategy": "skip",
            "max_retries": 5,
            "step_timeout_ms": 60_000,
            "compact_between_phases": False,
        }
    )
    settings.agents.claude_binary = "/opt/bin/claude"
    settings.agents.model = "opus"
    settings.session.directory = ".state"

    save_settings(config_path, settings)
    loaded = load_settings(config_path)

    assert loaded.autopilot == settings.autopilot
    assert loaded.agents.claude_binary == "/opt/bin/claude"
    assert loaded.agents.codex_binary == "codex"
    assert loaded.agents.model == "opus"
    assert loaded.session.directory == ".state"


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    settings = load_settings(tmp_path / "absent.toml")

    assert settings.autopilot == AutopilotConfig.default()
    assert settings.autopilot.fallback_agent == "codex-cli"
    assert settings.autopilot.max_retries == 3
    assert settings.autopilot.retry_base_delay_ms == 2000
    assert settings.autopilot.step_delay_ms == 500
    assert settings.autopilot.step_timeout_ms == 300_000


def test_disabled_fallback_survives_toml(tmp_path: Path) -> None:
    config_path = tmp_path / "autopilot.toml"
    settings = AutopilotSettings.default()
    settings.autopilot = settings.autopilot.merged({"fallback_agent": None})

    save_settings(config_path, settings)
    rendered = config_path.read_text(encoding="utf-8")

    assert 'fallback_agent = ""' in rendered
    assert tomllib.loads(rendered)["autopilot"]["fallback_agent"] == ""
    assert load_settings(config_path).autopilot.fallback_agent is None


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(AutopilotSettings.default())

    assert "[autopilot]" in rendered
    assert "[agents]" in rendered
    assert "[session]" in rendered
    assert "error_strategy = \"retry\"" in rendered
    assert "compact_between_phases = true" in rendered


def test_merged_rejects_unknown_keys_and_strategies() -> None:
    config = AutopilotConfig.default()

    with pytest.raises(ValueError, match="Unknown autopilot config keys: turbo"):
        config.merged({"turbo": True})
    with pytest.raises(ValueError, match="Unsupported error strategy"):
        config.merged({"error_strategy": "panic"})

    merged = config.merged({"max_retries": 1})
    assert merged.max_retries == 1
    assert config.max_retries == 3


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
