"""Engine interface for job execution."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from mission_control.jobs.models import Engine, EngineOutcome


@dataclass(slots=True)
class EngineRequest:
    """Inputs required to execute one job."""

    job_id: str
    engine: Engine
    working_directory: Path
    output_directory: Path
    prompt: str
    system_prompt: str | None = None
    model: str | None = None
    timeout_seconds: int = 1_800
    shutdown_requested: Callable[[], bool] | None = None

    @property
    def job_output_dir(self) -> Path:
        return self.output_directory / self.job_id


class EngineError(RuntimeError):
    """Engine execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class JobEngine(Protocol):
    """Protocol implemented by every engine."""

    def execute(self, request: EngineRequest) -> EngineOutcome:
        """Run the job and return its normalized outcome."""
