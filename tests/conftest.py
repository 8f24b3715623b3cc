"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import replace
from pathlib import Path

import pytest

from mission_control.config import Settings
from mission_control.jobs.engines.base import EngineRequest
from mission_control.jobs.engines.registry import EngineRegistry
from mission_control.jobs.models import (
    AgentCreate,
    AgentRole,
    AgentView,
    CostTier,
    Engine,
    EngineOutcome,
    JobCreate,
    JobStatus,
    JobView,
    OutcomeStatus,
)
from mission_control.jobs.repository import JobRepository
from mission_control.storage.common import to_db_datetime, utc_now


class ScriptedEngine:
    """Engine double returning outcomes produced by a callback."""

    def __init__(self, respond: Callable[[EngineRequest], EngineOutcome] | None = None) -> None:
        self.respond = respond or (
            lambda request: EngineOutcome(
                status=OutcomeStatus.OK,
                result_text=f"done: {request.prompt}",
                raw={"ok": True},
            )
        )
        self.requests: list[EngineRequest] = []

    def execute(self, request: EngineRequest) -> EngineOutcome:
        self.requests.append(request)
        return self.respond(request)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "mission-control.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(db_path)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def settings(db_path: Path) -> Settings:
    base = Settings(db_path=db_path)
    return replace(
        base,
        runner=replace(
            base.runner,
            runner_token="test-token",
            poll_interval_seconds=0,
            shell_timeout_seconds=30,
            sweep_after_job=False,
        ),
    )


@pytest.fixture()
def make_job(repository: JobRepository, tmp_path: Path) -> Callable[..., JobView]:
    def _make(**overrides: object) -> JobView:
        payload = {
            "title": "Summarize weekly metrics",
            "prompt_text": "echo hello",
            "engine": Engine.CLAUDE,
            "repo_path": str(tmp_path),
            "output_dir": str(tmp_path / "output"),
        }
        payload.update(overrides)
        return repository.create_job(JobCreate(**payload))  # type: ignore[arg-type]

    return _make


@pytest.fixture()
def complete_job(repository: JobRepository) -> Callable[[JobView], JobView]:
    """Drive one specific queued job through running to done."""

    def _complete(job: JobView) -> JobView:
        assert repository.transition_status(
            job_id=job.job_id,
            expected=JobStatus.QUEUED,
            target=JobStatus.RUNNING,
            event_type="claimed",
            values={"started_at": to_db_datetime(utc_now())},
        )
        recorded = repository.record_outcome(
            job_id=job.job_id,
            outcome=EngineOutcome(status=OutcomeStatus.OK, result_text="draft", raw={"ok": True}),
        )
        assert recorded == JobStatus.DONE
        return repository.require_job(job.job_id)

    return _complete


@pytest.fixture()
def make_agent(repository: JobRepository) -> Callable[..., AgentView]:
    def _make(name: str, role: AgentRole, **overrides: object) -> AgentView:
        payload = {
            "name": name,
            "role": role,
            "default_engine": Engine.CLAUDE,
            "cost_tier": CostTier.MEDIUM,
        }
        payload.update(overrides)
        return repository.create_agent(AgentCreate(**payload))  # type: ignore[arg-type]

    return _make


@pytest.fixture()
def scripted_engine() -> ScriptedEngine:
    return ScriptedEngine()


@pytest.fixture()
def engines(scripted_engine: ScriptedEngine) -> EngineRegistry:
    return EngineRegistry({engine: scripted_engine for engine in Engine if engine != Engine.SHELL})
