"""FastAPI application exposing the job runner over HTTP."""

from __future__ import annotations

import hmac
import logging
from dataclasses import asdict
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, status
from pydantic import BaseModel, Field

from mission_control import __version__
from mission_control.config import Settings
from mission_control.jobs.decomposer import decompose_job
from mission_control.jobs.dispatch import AutoDispatcher
from mission_control.jobs.engines.registry import EngineRegistry
from mission_control.jobs.models import (
    Engine,
    InvalidJobRequestError,
    JobCreate,
    JobNotFoundError,
    JobPatch,
    JobSource,
    JobStatus,
    JobType,
    JobView,
    ReviewScores,
    SubTaskSpec,
)
from mission_control.jobs.quality import QualityScorer
from mission_control.jobs.repository import JobRepository
from mission_control.jobs.worker import IDLE_MESSAGE, JobWorker, read_controls

logger = logging.getLogger(__name__)

PARALLEL_DEFAULT_JOBS = 3


class JobCreateRequest(BaseModel):
    title: str = Field(min_length=1)
    prompt_text: str = Field(min_length=1)
    engine: Engine = Engine.CLAUDE
    repo_path: str = "."
    output_dir: str = "output"
    priority: int = Field(default=5, ge=1, le=10)
    parent_job_id: str | None = None
    project_id: str | None = None
    agent_id: str | None = None
    job_type: JobType = JobType.TASK
    source: JobSource = JobSource.API


class JobPatchRequest(BaseModel):
    # statuses stay plain strings so an unknown value is a 400, not a 422
    status: str | None = None
    priority: int | None = None
    job_type: str | None = None
    agent_id: str | None = None


class RunParallelRequest(BaseModel):
    max_jobs: int | None = None


class ReviewRequest(BaseModel):
    reviewer_agent_id: str | None = None
    completeness: int
    accuracy: int
    actionability: int
    relevance: int | None = None
    revenue_relevance: int | None = None
    evidence: int
    feedback: str = ""


class SubTaskRequest(BaseModel):
    title: str = Field(min_length=1)
    suggested_agent: str = Field(min_length=1)
    prompt_text: str = Field(min_length=1)
    priority: int = Field(default=5, ge=1, le=10)
    estimated_engine: Engine = Engine.CLAUDE


class DecomposeRequest(BaseModel):
    sub_tasks: list[SubTaskRequest] = Field(min_length=1)


def create_app(
    settings: Settings | None = None,
    *,
    engines: EngineRegistry | None = None,
) -> FastAPI:
    """Build the app around one repository and engine registry."""

    app_settings = settings or Settings.from_env()
    app_settings.validate()
    repository = JobRepository(app_settings.db_path)
    repository.init_schema()
    registry = engines or EngineRegistry.from_settings(app_settings)

    app = FastAPI(title="Mission Control", version=__version__)

    def worker() -> JobWorker:
        return JobWorker(repository=repository, engines=registry, settings=app_settings)

    def require_runner_token(
        x_runner_token: str | None = Header(default=None),
    ) -> None:
        expected = app_settings.runner.runner_token
        if not expected or not x_runner_token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
        if not hmac.compare_digest(x_runner_token.encode(), expected.encode()):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    @app.on_event("shutdown")
    def _shutdown() -> None:
        registry.close()
        repository.close()

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/jobs/run-once", dependencies=[Depends(require_runner_token)])
    def run_once() -> dict[str, Any]:
        outcome = worker().run_once()
        if outcome.idle:
            return {"ok": True, "message": outcome.message}
        return outcome.as_dict()

    @app.post("/jobs/run-parallel", dependencies=[Depends(require_runner_token)])
    def run_parallel(body: RunParallelRequest | None = None) -> dict[str, Any]:
        requested = (body.max_jobs if body is not None else None) or PARALLEL_DEFAULT_JOBS
        outcomes = worker().run_parallel(requested)
        claimed = [outcome for outcome in outcomes if not outcome.idle]
        if not claimed:
            return {"ok": True, "message": IDLE_MESSAGE, "claimed": []}
        return {
            "ok": True,
            "claimed": [outcome.job_id for outcome in claimed],
            "results": [outcome.as_dict() for outcome in claimed],
        }

    @app.post("/dispatch/sweep", dependencies=[Depends(require_runner_token)])
    def sweep() -> dict[str, Any]:
        report = AutoDispatcher(repository, app_settings.dispatch).sweep()
        return {"ok": not report.failed_rules, **report.as_dict()}

    @app.get("/jobs")
    def list_jobs(
        status_filter: str | None = Query(default=None, alias="status"),
        project_id: str | None = None,
        engine: str | None = None,
        limit: int = Query(default=100, ge=1, le=500),
    ) -> dict[str, Any]:
        job_status = _parse_status(status_filter) if status_filter else None
        jobs = repository.list_jobs(
            status=job_status,
            project_id=project_id,
            engine=engine,
            limit=limit,
        )
        return {"jobs": [_job_payload(job) for job in jobs]}

    @app.post("/jobs", status_code=status.HTTP_201_CREATED)
    def create_job(body: JobCreateRequest) -> dict[str, Any]:
        try:
            job = repository.create_job(
                JobCreate(
                    title=body.title,
                    prompt_text=body.prompt_text,
                    engine=body.engine,
                    repo_path=body.repo_path,
                    output_dir=body.output_dir,
                    priority=body.priority,
                    parent_job_id=body.parent_job_id,
                    project_id=body.project_id,
                    agent_id=body.agent_id,
                    job_type=body.job_type,
                    source=body.source,
                ),
            )
        except InvalidJobRequestError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        return {"job": _job_payload(job)}

    @app.get("/jobs/{job_id}")
    def get_job(job_id: str) -> dict[str, Any]:
        details = repository.get_job_details(job_id)
        if details is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return {
            "job": _job_payload(details.job),
            "events": [
                {
                    "event_type": event.event_type,
                    "status_from": event.status_from.value if event.status_from else None,
                    "status_to": event.status_to.value if event.status_to else None,
                    "created_at": event.created_at.isoformat(),
                    "details": event.details,
                }
                for event in details.events
            ],
        }

    @app.patch("/jobs/{job_id}")
    def patch_job(job_id: str, body: JobPatchRequest) -> dict[str, Any]:
        patch = JobPatch(
            status=_parse_status(body.status) if body.status is not None else None,
            priority=body.priority,
            job_type=_parse_job_type(body.job_type) if body.job_type is not None else None,
            agent_id=body.agent_id,
        )
        try:
            job = repository.patch_job(job_id, patch)
        except JobNotFoundError as error:
            raise HTTPException(status_code=404, detail=str(error)) from error
        except InvalidJobRequestError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        return {"job": _job_payload(job)}

    @app.post("/jobs/{job_id}/review", status_code=status.HTTP_201_CREATED)
    def review_job(job_id: str, body: ReviewRequest) -> dict[str, Any]:
        relevance = body.relevance if body.relevance is not None else body.revenue_relevance
        if relevance is None:
            raise HTTPException(status_code=400, detail="Score relevance is required.")
        scorer = QualityScorer(repository, rolling_window=app_settings.quality.rolling_window)
        try:
            result = scorer.score_job(
                job_id=job_id,
                reviewer_agent_id=body.reviewer_agent_id,
                scores=ReviewScores(
                    completeness=body.completeness,
                    accuracy=body.accuracy,
                    actionability=body.actionability,
                    relevance=relevance,
                    evidence=body.evidence,
                ),
                feedback=body.feedback,
                controls=read_controls(repository, app_settings),
            )
        except JobNotFoundError as error:
            raise HTTPException(status_code=404, detail=str(error)) from error
        except InvalidJobRequestError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        return {"review": asdict(result)}

    @app.post("/jobs/{job_id}/decompose", status_code=status.HTTP_201_CREATED)
    def decompose(job_id: str, body: DecomposeRequest) -> dict[str, Any]:
        sub_tasks = [
            SubTaskSpec(
                title=item.title,
                suggested_agent=item.suggested_agent,
                prompt_text=item.prompt_text,
                priority=item.priority,
                engine=item.estimated_engine,
            )
            for item in body.sub_tasks
        ]
        try:
            result = decompose_job(repository, job_id, sub_tasks)
        except JobNotFoundError as error:
            raise HTTPException(status_code=404, detail=str(error)) from error
        except InvalidJobRequestError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        return {"decomposition": asdict(result)}

    return app


def _parse_status(value: str) -> JobStatus:
    try:
        return JobStatus(value)
    except ValueError as error:
        raise HTTPException(status_code=400, detail=f"Invalid status: {value}") from error


def _parse_job_type(value: str) -> JobType:
    try:
        return JobType(value)
    except ValueError as error:
        raise HTTPException(status_code=400, detail=f"Invalid job type: {value}") from error


def _job_payload(job: JobView) -> dict[str, Any]:
    return {
        "id": job.job_id,
        "title": job.title,
        "engine": job.engine.value,
        "status": job.status.value,
        "priority": job.priority,
        "job_type": job.job_type.value,
        "source": job.source,
        "repo_path": job.repo_path,
        "output_dir": job.output_dir,
        "parent_job_id": job.parent_job_id,
        "project_id": job.project_id,
        "agent_id": job.agent_id,
        "retry_count": job.retry_count,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        "last_error": job.last_error,
        "result": job.result,
        "log_path": job.log_path,
        "quality_score": job.quality_score,
        "review_notes": job.review_notes,
        "created_at": job.created_at.isoformat(),
        "updated_at": job.updated_at.isoformat(),
    }
