"""Controllers for job CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from mission_control.config import Settings
from mission_control.jobs.dispatch import AutoDispatcher
from mission_control.jobs.engines.registry import EngineRegistry
from mission_control.jobs.models import (
    AgentCreate,
    AgentRole,
    CostTier,
    Engine,
    InvalidJobRequestError,
    JobCreate,
    JobPatch,
    JobSource,
    JobStatus,
    JobType,
    NotificationCategory,
    NotificationStatus,
    ReviewScores,
    RuntimeControls,
)
from mission_control.jobs.quality import QualityScorer
from mission_control.jobs.repository import (
    MAX_CONCURRENCY_KEY,
    PARALLEL_JOBS_KEY,
    PAUSE_ALL_KEY,
    QA_PASS_THRESHOLD_KEY,
    JobRepository,
)
from mission_control.jobs.routing import route_job
from mission_control.jobs.worker import JobWorker, RunOutcome, read_controls


@dataclass(slots=True)
class JobCreateCommand:
    """CLI input for queuing a job."""

    db_path: Path | None
    title: str
    prompt: str
    engine: str
    repo_path: str
    output_dir: str
    priority: int
    job_type: str
    parent_job_id: str | None
    project_id: str | None
    agent_id: str | None


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    status: str | None
    project_id: str | None
    engine: str | None
    limit: int


@dataclass(slots=True)
class JobMutateCommand:
    """CLI input for commands addressing one job."""

    db_path: Path | None
    job_id: str
    reset_retry_count: bool = False


@dataclass(slots=True)
class JobPatchCommand:
    db_path: Path | None
    job_id: str
    status: str | None
    priority: int | None
    job_type: str | None
    agent_id: str | None


@dataclass(slots=True)
class RunCommand:
    """CLI input for run-once / run-parallel / loop execution."""

    db_path: Path | None
    max_jobs: int | None = 1
    loop: bool = False
    max_idle_polls: int = 1


@dataclass(slots=True)
class SweepCommand:
    db_path: Path | None


@dataclass(slots=True)
class AgentListCommand:
    db_path: Path | None
    eligible_only: bool


@dataclass(slots=True)
class AgentCreateCommand:
    db_path: Path | None
    name: str
    role: str
    engine: str
    cost_tier: str
    department_id: str | None
    model_id: str | None
    system_prompt: str | None


@dataclass(slots=True)
class AgentMutateCommand:
    db_path: Path | None
    agent_id: str


@dataclass(slots=True)
class ReviewScoreCommand:
    """CLI input for applying a review to a job."""

    db_path: Path | None
    job_id: str
    reviewer_agent_id: str | None
    completeness: int
    accuracy: int
    actionability: int
    relevance: int
    evidence: int
    feedback: str


@dataclass(slots=True)
class NotificationListCommand:
    db_path: Path | None
    status: str | None
    category: str | None
    limit: int


@dataclass(slots=True)
class NotificationMutateCommand:
    """CLI input for closing one notification; `dismiss` picks the target status."""

    db_path: Path | None
    notification_id: str
    dismiss: bool = False


@dataclass(slots=True)
class SettingsCommand:
    """CLI input for runtime control switches; only set fields are written."""

    db_path: Path | None
    pause_all: bool | None = None
    max_concurrency: int | None = None
    qa_pass_threshold: int | None = None
    parallel_jobs: int | None = None


class JobsCliController:
    """Command handlers returning printable lines."""

    def create_job(self, command: JobCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.create_job(
                JobCreate(
                    title=command.title,
                    prompt_text=command.prompt,
                    engine=_parse_enum(Engine, command.engine, "engine"),
                    repo_path=command.repo_path,
                    output_dir=command.output_dir,
                    priority=command.priority,
                    parent_job_id=command.parent_job_id,
                    project_id=command.project_id,
                    agent_id=command.agent_id,
                    job_type=_parse_enum(JobType, command.job_type, "job type"),
                    source=JobSource.DASHBOARD,
                ),
            )
        return [
            f"Job queued: {job.job_id}",
            f"Engine: {job.engine.value}",
            f"Priority: {job.priority}",
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = _parse_enum(JobStatus, command.status, "status") if command.status else None
        with _repository(settings) as repository:
            jobs = repository.list_jobs(
                status=status,
                project_id=command.project_id,
                engine=command.engine,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} status={job.status.value} priority={job.priority} "
                f"engine={job.engine.value} type={job.job_type.value} "
                f"agent={job.agent_id or '-'} retries={job.retry_count} title={job.title}",
            )
        return lines

    def inspect_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Title: {job.title}",
            f"Status: {job.status.value}",
            f"Engine: {job.engine.value}",
            f"Type: {job.job_type.value}",
            f"Priority: {job.priority}",
            f"Agent: {job.agent_id or '-'}",
            f"Parent: {job.parent_job_id or '-'}",
            f"Retries: {job.retry_count}",
            f"Started: {job.started_at.isoformat() if job.started_at else '-'}",
            f"Completed: {job.completed_at.isoformat() if job.completed_at else '-'}",
            f"Quality score: {job.quality_score if job.quality_score is not None else '-'}",
            f"Error: {job.last_error or '-'}",
            f"Log: {job.log_path or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def patch_job(self, command: JobPatchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        patch = JobPatch(
            status=_parse_enum(JobStatus, command.status, "status") if command.status else None,
            priority=command.priority,
            job_type=(
                _parse_enum(JobType, command.job_type, "job type") if command.job_type else None
            ),
            agent_id=command.agent_id,
        )
        with _repository(settings) as repository:
            job = repository.patch_job(command.job_id, patch)
        return [f"Job updated: {job.job_id} status={job.status.value} priority={job.priority}"]

    def retry_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.retry_job(
                command.job_id,
                reset_retry_count=command.reset_retry_count,
            )
        return [f"Job re-queued: {job.job_id} retries={job.retry_count}"]

    def cancel_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.cancel_job(
                command.job_id,
                max_retries=settings.dispatch.max_retries,
            )
        return [f"Job canceled: {job.job_id}"]

    def route_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.require_job(command.job_id)
            route = route_job(repository, command.job_id)
            if route is None:
                return [f"No eligible agent for job {command.job_id}"]
            repository.assign_agent(
                job_id=command.job_id,
                agent_id=route.agent_id,
                reason=route.reason,
            )
        return [f"Job {command.job_id} routed to {route.agent_name}", f"Reason: {route.reason}"]

    def run(self, command: RunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        engines = EngineRegistry.from_settings(settings)
        try:
            with _repository(settings) as repository:
                worker = JobWorker(repository=repository, engines=engines, settings=settings)
                if command.loop:
                    summary = worker.run_loop(
                        max_jobs=command.max_jobs,
                        max_idle_polls=command.max_idle_polls,
                    )
                    return [
                        "Worker summary: "
                        f"processed={summary.processed} succeeded={summary.succeeded} "
                        f"failed={summary.failed} paused={summary.paused} "
                        f"idle_polls={summary.idle_polls}",
                    ]
                if command.max_jobs is not None and command.max_jobs > 1:
                    outcomes = worker.run_parallel(command.max_jobs)
                else:
                    outcomes = [worker.run_once()]
        finally:
            engines.close()
        return [_format_outcome(outcome) for outcome in outcomes]

    def sweep(self, command: SweepCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            report = AutoDispatcher(repository, settings.dispatch).sweep()
        return [
            "Sweep: "
            f"stall_alerts={report.stall_alerts} retried={report.retried} "
            f"research_dispatched={report.research_dispatched} "
            f"agents_paused={report.agents_paused} "
            f"failed_rules={','.join(report.failed_rules) or '-'}",
        ]

    def list_agents(self, command: AgentListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            agents = repository.list_agents(eligible_only=command.eligible_only)
            loads = repository.count_active_jobs_by_agent()

        lines = [f"Agents: {len(agents)}"]
        for agent in agents:
            lines.append(
                f"  {agent.agent_id} name={agent.name} role={agent.role} "
                f"engine={agent.default_engine} cost={agent.cost_tier} "
                f"status={agent.status.value} active={agent.active} "
                f"quality={agent.quality_score_avg:.2f} "
                f"failures={agent.consecutive_failures} load={loads.get(agent.agent_id, 0)}",
            )
        return lines

    def create_agent(self, command: AgentCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            agent = repository.create_agent(
                AgentCreate(
                    name=command.name,
                    role=_parse_enum(AgentRole, command.role, "role"),
                    default_engine=_parse_enum(Engine, command.engine, "engine"),
                    cost_tier=_parse_enum(CostTier, command.cost_tier, "cost tier"),
                    department_id=command.department_id,
                    model_id=command.model_id,
                    system_prompt=command.system_prompt,
                ),
            )
        return [f"Agent created: {agent.agent_id} name={agent.name} role={agent.role}"]

    def resume_agent(self, command: AgentMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            agent = repository.resume_agent(command.agent_id)
        return [f"Agent resumed: {agent.agent_id} name={agent.name}"]

    def score_review(self, command: ReviewScoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            controls = read_controls(repository, settings)
            result = QualityScorer(
                repository,
                rolling_window=settings.quality.rolling_window,
            ).score_job(
                job_id=command.job_id,
                reviewer_agent_id=command.reviewer_agent_id,
                scores=ReviewScores(
                    completeness=command.completeness,
                    accuracy=command.accuracy,
                    actionability=command.actionability,
                    relevance=command.relevance,
                    evidence=command.evidence,
                ),
                feedback=command.feedback,
                controls=controls,
            )
        verdict = "passed" if result.passed else "rejected"
        return [
            f"Review {result.review_id}: {verdict} "
            f"total={result.total}/50 threshold={controls.qa_pass_threshold}",
        ]

    def list_notifications(self, command: NotificationListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            notifications = repository.list_notifications(
                status=(
                    _parse_enum(NotificationStatus, command.status, "notification status")
                    if command.status
                    else None
                ),
                category=(
                    _parse_enum(NotificationCategory, command.category, "category")
                    if command.category
                    else None
                ),
                limit=command.limit,
            )

        lines = [f"Notifications: {len(notifications)}"]
        for item in notifications:
            lines.append(
                f"  {item.notification_id} status={item.status.value} "
                f"category={item.category} priority={item.priority} title={item.title}",
            )
        return lines

    def close_notification(self, command: NotificationMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            if command.dismiss:
                changed = repository.dismiss_notification(command.notification_id)
            else:
                changed = repository.acknowledge_notification(command.notification_id)
        if not changed:
            raise InvalidJobRequestError(
                f"Notification is not open: {command.notification_id}",
            )
        verb = "dismissed" if command.dismiss else "acknowledged"
        return [f"Notification {verb}: {command.notification_id}"]

    def update_settings(self, command: SettingsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            if command.pause_all is not None:
                repository.set_setting(PAUSE_ALL_KEY, {"enabled": command.pause_all})
            if command.max_concurrency is not None:
                if command.max_concurrency < 1:
                    raise InvalidJobRequestError("Max concurrency must be >= 1.")
                repository.set_setting(MAX_CONCURRENCY_KEY, {"limit": command.max_concurrency})
            if command.qa_pass_threshold is not None:
                if not 5 <= command.qa_pass_threshold <= 50:  # noqa: PLR2004
                    raise InvalidJobRequestError("QA pass threshold must be within 5..50.")
                repository.set_setting(QA_PASS_THRESHOLD_KEY, command.qa_pass_threshold)
            if command.parallel_jobs is not None:
                if command.parallel_jobs < 1:
                    raise InvalidJobRequestError("Parallel jobs must be >= 1.")
                repository.set_setting(PARALLEL_JOBS_KEY, {"count": command.parallel_jobs})
            controls = read_controls(repository, settings)
            parallel_jobs = repository.read_parallel_jobs()
        return [*_format_controls(controls), f"Parallel jobs: {parallel_jobs}"]

    def show_settings(self, command: SettingsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            controls = read_controls(repository, settings)
            parallel_jobs = repository.read_parallel_jobs()
            running = repository.count_jobs([JobStatus.RUNNING])
            queued = repository.count_jobs([JobStatus.QUEUED])
        return [
            *_format_controls(controls),
            f"Parallel jobs: {parallel_jobs}",
            f"Running: {running}",
            f"Queued: {queued}",
        ]


def _format_controls(controls: RuntimeControls) -> list[str]:
    return [
        f"Pause all: {'on' if controls.pause_all else 'off'}",
        f"Max concurrency: {controls.max_concurrency}",
        f"QA pass threshold: {controls.qa_pass_threshold}",
    ]


def _format_outcome(outcome: RunOutcome) -> str:
    if outcome.idle:
        return f"Run: {outcome.message}"
    return "Run: " + json.dumps(outcome.as_dict(), ensure_ascii=False, sort_keys=True)


def _parse_enum(enum_type, value: str, label: str):
    try:
        return enum_type(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(member.value for member in enum_type)
        raise InvalidJobRequestError(
            f"Unsupported {label}: {value!r}. Expected one of: {allowed}.",
        ) from error


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
