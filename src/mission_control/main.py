"""CLI entrypoint for mission-control."""

import logging
from pathlib import Path

import rich_click as click

from mission_control import __version__
from mission_control.jobs.controllers import (
    AgentCreateCommand,
    AgentListCommand,
    AgentMutateCommand,
    JobCreateCommand,
    JobListCommand,
    JobMutateCommand,
    JobPatchCommand,
    JobsCliController,
    NotificationListCommand,
    NotificationMutateCommand,
    ReviewScoreCommand,
    RunCommand,
    SettingsCommand,
    SweepCommand,
)
from mission_control.jobs.models import (
    AgentRole,
    CostTier,
    Engine,
    InvalidJobRequestError,
    JobNotFoundError,
    JobStatus,
    JobType,
    NotificationCategory,
    NotificationStatus,
)

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


def _choices(enum_type) -> click.Choice:
    return click.Choice([member.value for member in enum_type], case_sensitive=False)


@click.group()
@click.version_option(version=__version__, prog_name="mission-control")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for runner diagnostics.",
)
def mission_control(log_level: str) -> None:
    """Mission control job runner CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@mission_control.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("create")
@_DB_PATH_OPTION
@click.option("--title", required=True, help="Job title.")
@click.option("--prompt", required=True, help="Prompt text or shell script.")
@click.option(
    "--engine",
    type=_choices(Engine),
    default=Engine.CLAUDE.value,
    show_default=True,
    help="Executor for the job.",
)
@click.option("--repo-path", default=".", show_default=True, help="Working directory.")
@click.option(
    "--output-dir",
    default="output",
    show_default=True,
    help="Directory for logs and results.",
)
@click.option(
    "--priority",
    type=click.IntRange(min=1, max=10),
    default=5,
    show_default=True,
    help="1 is most urgent.",
)
@click.option(
    "--job-type",
    type=_choices(JobType),
    default=JobType.TASK.value,
    show_default=True,
    help="Job type.",
)
@click.option("--parent-job-id", default=None, help="Optional parent job id.")
@click.option("--project-id", default=None, help="Optional project id.")
@click.option("--agent-id", default=None, help="Pre-assign an agent.")
def jobs_create(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    prompt: str,
    engine: str,
    repo_path: str,
    output_dir: str,
    priority: int,
    job_type: str,
    parent_job_id: str | None,
    project_id: str | None,
    agent_id: str | None,
) -> None:
    """Queue a new job."""

    _run(
        JOBS_CONTROLLER.create_job,
        JobCreateCommand(
            db_path=db_path,
            title=title,
            prompt=prompt,
            engine=engine,
            repo_path=repo_path,
            output_dir=output_dir,
            priority=priority,
            job_type=job_type,
            parent_job_id=parent_job_id,
            project_id=project_id,
            agent_id=agent_id,
        ),
    )


@jobs.command("list")
@_DB_PATH_OPTION
@click.option("--status", type=_choices(JobStatus), default=None, help="Optional status filter.")
@click.option("--project-id", default=None, help="Optional project filter.")
@click.option("--engine", type=_choices(Engine), default=None, help="Optional engine filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(
    db_path: Path | None,
    status: str | None,
    project_id: str | None,
    engine: str | None,
    limit: int,
) -> None:
    """List jobs in claim order."""

    _run(
        JOBS_CONTROLLER.list_jobs,
        JobListCommand(
            db_path=db_path,
            status=status,
            project_id=project_id,
            engine=engine.lower() if engine else None,
            limit=limit,
        ),
    )


@jobs.command("inspect")
@_DB_PATH_OPTION
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with event history."""

    _run(JOBS_CONTROLLER.inspect_job, JobMutateCommand(db_path=db_path, job_id=job_id))


@jobs.command("patch")
@_DB_PATH_OPTION
@click.option("--job-id", required=True, help="Job id.")
@click.option("--status", type=_choices(JobStatus), default=None, help="New status.")
@click.option("--priority", type=int, default=None, help="New priority (1-10).")
@click.option("--job-type", type=_choices(JobType), default=None, help="New job type.")
@click.option("--agent-id", default=None, help="Reassign to agent.")
def jobs_patch(  # noqa: PLR0913
    db_path: Path | None,
    job_id: str,
    status: str | None,
    priority: int | None,
    job_type: str | None,
    agent_id: str | None,
) -> None:
    """Administrative partial update."""

    _run(
        JOBS_CONTROLLER.patch_job,
        JobPatchCommand(
            db_path=db_path,
            job_id=job_id,
            status=status,
            priority=priority,
            job_type=job_type,
            agent_id=agent_id,
        ),
    )


@jobs.command("retry")
@_DB_PATH_OPTION
@click.option("--job-id", required=True, help="Job id.")
@click.option(
    "--reset-retry-count/--keep-retry-count",
    default=False,
    show_default=True,
    help="Restart the automatic retry budget.",
)
def jobs_retry(db_path: Path | None, job_id: str, reset_retry_count: bool) -> None:
    """Manually re-queue a failed or paused job."""

    _run(
        JOBS_CONTROLLER.retry_job,
        JobMutateCommand(db_path=db_path, job_id=job_id, reset_retry_count=reset_retry_count),
    )


@jobs.command("cancel")
@_DB_PATH_OPTION
@click.option("--job-id", required=True, help="Job id.")
def jobs_cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a queued or assigned job."""

    _run(JOBS_CONTROLLER.cancel_job, JobMutateCommand(db_path=db_path, job_id=job_id))


@jobs.command("route")
@_DB_PATH_OPTION
@click.option("--job-id", required=True, help="Job id.")
def jobs_route(db_path: Path | None, job_id: str) -> None:
    """Pick the best eligible agent for a job and assign it."""

    _run(JOBS_CONTROLLER.route_job, JobMutateCommand(db_path=db_path, job_id=job_id))


@jobs.command("run-once")
@_DB_PATH_OPTION
def jobs_run_once(db_path: Path | None) -> None:
    """Claim and run at most one queued job."""

    _run(JOBS_CONTROLLER.run, RunCommand(db_path=db_path))


@jobs.command("run-parallel")
@_DB_PATH_OPTION
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=3,
    show_default=True,
    help="Concurrent claims (capped by MISSION_CONTROL_PARALLEL_CAP).",
)
def jobs_run_parallel(db_path: Path | None, max_jobs: int) -> None:
    """Run several single-claim attempts concurrently."""

    _run(JOBS_CONTROLLER.run, RunCommand(db_path=db_path, max_jobs=max_jobs))


@jobs.command("worker")
@_DB_PATH_OPTION
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Stop after this many consecutive empty polls.",
)
def jobs_worker(db_path: Path | None, max_jobs: int | None, max_idle_polls: int) -> None:
    """Run jobs one after another until the queue is idle."""

    _run(
        JOBS_CONTROLLER.run,
        RunCommand(
            db_path=db_path,
            max_jobs=max_jobs,
            loop=True,
            max_idle_polls=max_idle_polls,
        ),
    )


@mission_control.group()
def dispatch() -> None:
    """Self-healing sweep commands."""


@dispatch.command("sweep")
@_DB_PATH_OPTION
def dispatch_sweep(db_path: Path | None) -> None:
    """Run stall detection, auto-retry, research re-dispatch and agent pause once."""

    _run(JOBS_CONTROLLER.sweep, SweepCommand(db_path=db_path))


@mission_control.group()
def agents() -> None:
    """Agent registry commands."""


@agents.command("list")
@_DB_PATH_OPTION
@click.option(
    "--eligible-only/--all",
    default=False,
    show_default=True,
    help="Only agents that can receive work.",
)
def agents_list(db_path: Path | None, eligible_only: bool) -> None:
    """List agents with quality and load."""

    _run(
        JOBS_CONTROLLER.list_agents,
        AgentListCommand(db_path=db_path, eligible_only=eligible_only),
    )


@agents.command("create")
@_DB_PATH_OPTION
@click.option("--name", required=True, help="Unique agent name.")
@click.option("--role", type=_choices(AgentRole), required=True, help="Agent role.")
@click.option(
    "--engine",
    type=_choices(Engine),
    default=Engine.CLAUDE.value,
    show_default=True,
    help="Default engine.",
)
@click.option(
    "--cost-tier",
    type=_choices(CostTier),
    default=CostTier.MEDIUM.value,
    show_default=True,
    help="Cost tier used by routing.",
)
@click.option("--department-id", default=None, help="Optional department id.")
@click.option("--model-id", default=None, help="Optional model override for LLM engines.")
@click.option("--system-prompt", default=None, help="Optional system prompt.")
def agents_create(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    role: str,
    engine: str,
    cost_tier: str,
    department_id: str | None,
    model_id: str | None,
    system_prompt: str | None,
) -> None:
    """Register an agent."""

    _run(
        JOBS_CONTROLLER.create_agent,
        AgentCreateCommand(
            db_path=db_path,
            name=name,
            role=role,
            engine=engine,
            cost_tier=cost_tier,
            department_id=department_id,
            model_id=model_id,
            system_prompt=system_prompt,
        ),
    )


@agents.command("resume")
@_DB_PATH_OPTION
@click.option("--agent-id", required=True, help="Agent id.")
def agents_resume(db_path: Path | None, agent_id: str) -> None:
    """Reactivate a paused agent and clear its failure streak."""

    _run(JOBS_CONTROLLER.resume_agent, AgentMutateCommand(db_path=db_path, agent_id=agent_id))


@mission_control.group()
def review() -> None:
    """Quality review commands."""


@review.command("score")
@_DB_PATH_OPTION
@click.option("--job-id", required=True, help="Reviewed job id.")
@click.option("--reviewer-agent-id", default=None, help="Reviewer agent id.")
@click.option("--completeness", type=int, required=True, help="1-10.")
@click.option("--accuracy", type=int, required=True, help="1-10.")
@click.option("--actionability", type=int, required=True, help="1-10.")
@click.option("--relevance", type=int, required=True, help="1-10.")
@click.option("--evidence", type=int, required=True, help="1-10.")
@click.option("--feedback", default="", help="Reviewer feedback.")
def review_score(  # noqa: PLR0913
    db_path: Path | None,
    job_id: str,
    reviewer_agent_id: str | None,
    completeness: int,
    accuracy: int,
    actionability: int,
    relevance: int,
    evidence: int,
    feedback: str,
) -> None:
    """Apply a five-dimension review to a job."""

    _run(
        JOBS_CONTROLLER.score_review,
        ReviewScoreCommand(
            db_path=db_path,
            job_id=job_id,
            reviewer_agent_id=reviewer_agent_id,
            completeness=completeness,
            accuracy=accuracy,
            actionability=actionability,
            relevance=relevance,
            evidence=evidence,
            feedback=feedback,
        ),
    )


@mission_control.group()
def notifications() -> None:
    """Operator notification commands."""


@notifications.command("list")
@_DB_PATH_OPTION
@click.option(
    "--status",
    type=_choices(NotificationStatus),
    default=None,
    help="Filter by status.",
)
@click.option(
    "--category",
    type=_choices(NotificationCategory),
    default=None,
    help="Filter by category.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=50,
    show_default=True,
    help="Maximum rows.",
)
def notifications_list(
    db_path: Path | None,
    status: str | None,
    category: str | None,
    limit: int,
) -> None:
    """List notifications, newest first."""

    _run(
        JOBS_CONTROLLER.list_notifications,
        NotificationListCommand(db_path=db_path, status=status, category=category, limit=limit),
    )


@notifications.command("ack")
@_DB_PATH_OPTION
@click.option("--notification-id", required=True, help="Notification id.")
def notifications_ack(db_path: Path | None, notification_id: str) -> None:
    """Acknowledge an open notification."""

    _run(
        JOBS_CONTROLLER.close_notification,
        NotificationMutateCommand(db_path=db_path, notification_id=notification_id),
    )


@notifications.command("dismiss")
@_DB_PATH_OPTION
@click.option("--notification-id", required=True, help="Notification id.")
def notifications_dismiss(db_path: Path | None, notification_id: str) -> None:
    """Dismiss an open notification."""

    _run(
        JOBS_CONTROLLER.close_notification,
        NotificationMutateCommand(
            db_path=db_path,
            notification_id=notification_id,
            dismiss=True,
        ),
    )


@mission_control.group("settings")
def settings_group() -> None:
    """Runtime control switches."""


@settings_group.command("show")
@_DB_PATH_OPTION
def settings_show(db_path: Path | None) -> None:
    """Show pause, concurrency and QA threshold."""

    _run(JOBS_CONTROLLER.show_settings, SettingsCommand(db_path=db_path))


@settings_group.command("set-pause")
@_DB_PATH_OPTION
@click.argument("state", type=click.Choice(["on", "off"], case_sensitive=False))
def settings_set_pause(db_path: Path | None, state: str) -> None:
    """Pause or resume all claiming."""

    _run(
        JOBS_CONTROLLER.update_settings,
        SettingsCommand(db_path=db_path, pause_all=state.lower() == "on"),
    )


@settings_group.command("set-concurrency")
@_DB_PATH_OPTION
@click.argument("limit", type=click.IntRange(min=1))
def settings_set_concurrency(db_path: Path | None, limit: int) -> None:
    """Set the maximum number of running jobs."""

    _run(JOBS_CONTROLLER.update_settings, SettingsCommand(db_path=db_path, max_concurrency=limit))


@settings_group.command("set-threshold")
@_DB_PATH_OPTION
@click.argument("threshold", type=click.IntRange(min=5, max=50))
def settings_set_threshold(db_path: Path | None, threshold: int) -> None:
    """Set the QA pass threshold (out of 50)."""

    _run(
        JOBS_CONTROLLER.update_settings,
        SettingsCommand(db_path=db_path, qa_pass_threshold=threshold),
    )


@settings_group.command("set-parallel")
@_DB_PATH_OPTION
@click.argument("count", type=click.IntRange(min=1))
def settings_set_parallel(db_path: Path | None, count: int) -> None:
    """Set how many jobs each scheduler tick claims."""

    _run(JOBS_CONTROLLER.update_settings, SettingsCommand(db_path=db_path, parallel_jobs=count))


@mission_control.command("scheduler")
@_DB_PATH_OPTION
@click.option(
    "--interval-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Seconds between ticks (defaults to MISSION_CONTROL_POLL_INTERVAL_SECONDS).",
)
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many ticks.",
)
def scheduler(db_path: Path | None, interval_seconds: float | None, max_ticks: int | None) -> None:
    """Run the scheduler loop: claim, execute and sweep on a fixed interval."""

    from mission_control.scheduler import run_scheduler  # noqa: PLC0415

    ticks = run_scheduler(
        db_path=db_path,
        interval_seconds=interval_seconds,
        max_ticks=max_ticks,
    )
    click.echo(f"Scheduler stopped after {ticks} ticks")


@mission_control.command("serve")
@_DB_PATH_OPTION
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind host.")
@click.option("--port", type=int, default=8000, show_default=True, help="Bind port.")
def serve(db_path: Path | None, host: str, port: int) -> None:
    """Serve the HTTP API with uvicorn."""

    import uvicorn  # noqa: PLC0415

    from mission_control.api import create_app  # noqa: PLC0415
    from mission_control.config import Settings  # noqa: PLC0415

    uvicorn.run(create_app(Settings.from_env(db_path=db_path)), host=host, port=port)


def _run(handler, command) -> None:
    try:
        lines = handler(command)
    except (InvalidJobRequestError, JobNotFoundError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    mission_control()
