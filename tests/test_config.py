from __future__ import annotations

from pathlib import Path

import allure
import pytest

from mission_control.config import LlmProviderSettings, QualitySettings, Settings, _env_bool

pytestmark = [
    allure.epic("Interfaces"),
    allure.feature("Configuration"),
]


def test_defaults_are_valid() -> None:
    settings = Settings()

    settings.validate()
    assert settings.runner.parallel_cap == 5
    assert settings.runner.default_max_concurrency == 2
    assert settings.dispatch.stall_timeout_seconds == 600
    assert settings.dispatch.max_retries == 3
    assert settings.quality.pass_threshold == 35


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MISSION_CONTROL_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("MISSION_CONTROL_RUNNER_TOKEN", "abc")
    monkeypatch.setenv("MISSION_CONTROL_MAX_RETRIES", "5")
    monkeypatch.setenv("MISSION_CONTROL_SWEEP_AFTER_JOB", "off")
    monkeypatch.setenv("MISSION_CONTROL_GEMINI_MODEL", "gemini-pro")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.runner.runner_token == "abc"
    assert settings.runner.sweep_after_job is False
    assert settings.dispatch.max_retries == 5
    assert settings.llm.gemini.model == "gemini-pro"
    assert settings.llm.openai.api_key == "sk-test"


def test_explicit_db_path_wins_over_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MISSION_CONTROL_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


@pytest.mark.parametrize("threshold", [4, 51])
def test_validate_rejects_threshold_out_of_range(threshold: int) -> None:
    settings = Settings(quality=QualitySettings(pass_threshold=threshold))

    with pytest.raises(ValueError, match="QA_PASS_THRESHOLD"):
        settings.validate()


def test_validate_rejects_relative_provider_url() -> None:
    settings = Settings()
    settings.llm.claude = LlmProviderSettings(base_url="api.anthropic.com")

    with pytest.raises(ValueError, match="Invalid base URL for LLM provider 'claude'"):
        settings.validate()


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("1", True), ("Yes", True), (" on ", True), ("0", False), ("FALSE", False), ("no", False)],
)
def test_env_bool_parses_flags(monkeypatch, raw: str, expected: bool) -> None:
    monkeypatch.setenv("MC_FLAG", raw)

    assert _env_bool("MC_FLAG", default=not expected) is expected


def test_env_bool_default_and_invalid(monkeypatch) -> None:
    monkeypatch.delenv("MC_FLAG", raising=False)
    assert _env_bool("MC_FLAG", default=True) is True

    monkeypatch.setenv("MC_FLAG", "maybe")
    with pytest.raises(ValueError, match="Invalid boolean value for MC_FLAG"):
        _env_bool("MC_FLAG", default=True)
