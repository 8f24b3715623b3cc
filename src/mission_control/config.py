"""Runtime configuration for the mission control job runner."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


@dataclass(slots=True)
class RunnerSettings:
    """Claim/execute loop settings."""

    runner_token: str = ""
    worker_id: str = "mc-runner"
    poll_interval_seconds: float = 30.0
    shell_timeout_seconds: int = 1_800
    parallel_cap: int = 5
    default_max_concurrency: int = 2
    sweep_after_job: bool = True


@dataclass(slots=True)
class DispatchSettings:
    """Auto-dispatch sweep thresholds."""

    stall_timeout_seconds: int = 600
    max_retries: int = 3
    retry_batch_size: int = 5
    research_stale_seconds: int = 1_800
    research_batch_size: int = 3
    max_consecutive_failures: int = 3
    research_repo_path: str = "."
    research_output_dir: str = "output/research"


@dataclass(slots=True)
class QualitySettings:
    """Review scoring settings."""

    pass_threshold: int = 35
    rolling_window: int = 20


@dataclass(slots=True)
class LlmProviderSettings:
    """Connection settings for one LLM completion provider."""

    base_url: str
    api_key: str = ""
    model: str = ""
    request_timeout_seconds: float = 300.0
    max_tokens: int = 4_096


@dataclass(slots=True)
class LlmSettings:
    """Per-engine LLM provider settings."""

    claude: LlmProviderSettings = field(
        default_factory=lambda: LlmProviderSettings(
            base_url="https://api.anthropic.com",
            model="claude-sonnet-4-5",
        ),
    )
    openai: LlmProviderSettings = field(
        default_factory=lambda: LlmProviderSettings(
            base_url="https://api.openai.com",
            model="gpt-4.1-mini",
        ),
    )
    gemini: LlmProviderSettings = field(
        default_factory=lambda: LlmProviderSettings(
            base_url="https://generativelanguage.googleapis.com",
            model="gemini-2.5-flash",
        ),
    )


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".mission_control.db")
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    quality: QualitySettings = field(default_factory=QualitySettings)
    llm: LlmSettings = field(default_factory=LlmSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("MISSION_CONTROL_DB_PATH", ".mission_control.db")),
            runner=RunnerSettings(
                runner_token=os.getenv("MISSION_CONTROL_RUNNER_TOKEN", ""),
                worker_id=os.getenv("MISSION_CONTROL_WORKER_ID", "mc-runner"),
                poll_interval_seconds=float(
                    os.getenv("MISSION_CONTROL_POLL_INTERVAL_SECONDS", "30"),
                ),
                shell_timeout_seconds=int(
                    os.getenv("MISSION_CONTROL_SHELL_TIMEOUT_SECONDS", "1800"),
                ),
                parallel_cap=int(os.getenv("MISSION_CONTROL_PARALLEL_CAP", "5")),
                default_max_concurrency=int(
                    os.getenv("MISSION_CONTROL_DEFAULT_MAX_CONCURRENCY", "2"),
                ),
                sweep_after_job=_env_bool("MISSION_CONTROL_SWEEP_AFTER_JOB", default=True),
            ),
            dispatch=DispatchSettings(
                stall_timeout_seconds=int(
                    os.getenv("MISSION_CONTROL_STALL_TIMEOUT_SECONDS", "600"),
                ),
                max_retries=int(os.getenv("MISSION_CONTROL_MAX_RETRIES", "3")),
                retry_batch_size=int(os.getenv("MISSION_CONTROL_RETRY_BATCH_SIZE", "5")),
                research_stale_seconds=int(
                    os.getenv("MISSION_CONTROL_RESEARCH_STALE_SECONDS", "1800"),
                ),
                research_batch_size=int(
                    os.getenv("MISSION_CONTROL_RESEARCH_BATCH_SIZE", "3"),
                ),
                max_consecutive_failures=int(
                    os.getenv("MISSION_CONTROL_MAX_CONSECUTIVE_FAILURES", "3"),
                ),
                research_repo_path=os.getenv("MISSION_CONTROL_RESEARCH_REPO_PATH", "."),
                research_output_dir=os.getenv(
                    "MISSION_CONTROL_RESEARCH_OUTPUT_DIR",
                    "output/research",
                ),
            ),
            quality=QualitySettings(
                pass_threshold=int(os.getenv("MISSION_CONTROL_QA_PASS_THRESHOLD", "35")),
                rolling_window=int(os.getenv("MISSION_CONTROL_QA_ROLLING_WINDOW", "20")),
            ),
            llm=LlmSettings(
                claude=_provider_from_env(
                    "CLAUDE",
                    base_url="https://api.anthropic.com",
                    api_key_env="ANTHROPIC_API_KEY",
                    model="claude-sonnet-4-5",
                ),
                openai=_provider_from_env(
                    "OPENAI",
                    base_url="https://api.openai.com",
                    api_key_env="OPENAI_API_KEY",
                    model="gpt-4.1-mini",
                ),
                gemini=_provider_from_env(
                    "GEMINI",
                    base_url="https://generativelanguage.googleapis.com",
                    api_key_env="GEMINI_API_KEY",
                    model="gemini-2.5-flash",
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if limits or timeouts are out of range."""

        if self.runner.shell_timeout_seconds <= 0:
            raise ValueError("MISSION_CONTROL_SHELL_TIMEOUT_SECONDS must be > 0.")
        if self.runner.poll_interval_seconds < 0:
            raise ValueError("MISSION_CONTROL_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.runner.parallel_cap <= 0:
            raise ValueError("MISSION_CONTROL_PARALLEL_CAP must be > 0.")
        if self.runner.default_max_concurrency <= 0:
            raise ValueError("MISSION_CONTROL_DEFAULT_MAX_CONCURRENCY must be > 0.")
        if self.dispatch.stall_timeout_seconds <= 0:
            raise ValueError("MISSION_CONTROL_STALL_TIMEOUT_SECONDS must be > 0.")
        if self.dispatch.max_retries < 0:
            raise ValueError("MISSION_CONTROL_MAX_RETRIES must be >= 0.")
        if self.dispatch.max_consecutive_failures <= 0:
            raise ValueError("MISSION_CONTROL_MAX_CONSECUTIVE_FAILURES must be > 0.")
        if not 5 <= self.quality.pass_threshold <= 50:  # noqa: PLR2004
            raise ValueError("MISSION_CONTROL_QA_PASS_THRESHOLD must be within 5..50.")
        if self.quality.rolling_window <= 0:
            raise ValueError("MISSION_CONTROL_QA_ROLLING_WINDOW must be > 0.")
        for name in ("claude", "openai", "gemini"):
            provider: LlmProviderSettings = getattr(self.llm, name)
            _validate_base_url(name, provider.base_url)


def _provider_from_env(
    prefix: str,
    *,
    base_url: str,
    api_key_env: str,
    model: str,
) -> LlmProviderSettings:
    return LlmProviderSettings(
        base_url=os.getenv(f"MISSION_CONTROL_{prefix}_BASE_URL", base_url),
        api_key=os.getenv(api_key_env, ""),
        model=os.getenv(f"MISSION_CONTROL_{prefix}_MODEL", model),
        request_timeout_seconds=float(
            os.getenv(f"MISSION_CONTROL_{prefix}_TIMEOUT_SECONDS", "300"),
        ),
        max_tokens=int(os.getenv(f"MISSION_CONTROL_{prefix}_MAX_TOKENS", "4096")),
    )


def _validate_base_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid base URL for LLM provider {name!r}: {value!r}. "
            "Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
