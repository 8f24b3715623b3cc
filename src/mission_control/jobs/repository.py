"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from mission_control.jobs.lifecycle import ensure_transition, status_for_outcome
from mission_control.jobs.models import (
    OPEN_NOTIFICATION_STATUSES,
    TERMINAL_STATUSES,
    AgentCreate,
    AgentStatus,
    AgentView,
    Engine,
    EngineOutcome,
    InvalidJobRequestError,
    JobCreate,
    JobDetails,
    JobEventView,
    JobNotFoundError,
    JobPatch,
    JobStatus,
    JobType,
    JobView,
    NotificationCategory,
    NotificationCreate,
    NotificationStatus,
    NotificationView,
    ProjectView,
    ResearchItemView,
    ReviewResult,
    ReviewScores,
    RuntimeControls,
)
from mission_control.storage.alembic_runner import upgrade_head
from mission_control.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from mission_control.storage.sqlmodel_models import (
    AgentRow,
    JobEventRow,
    JobReviewRow,
    JobRow,
    NotificationRow,
    ProjectRow,
    ResearchItemRow,
    SettingRow,
)

PAUSE_ALL_KEY = "pause_all"
MAX_CONCURRENCY_KEY = "max_concurrency"
QA_PASS_THRESHOLD_KEY = "qa_pass_threshold"
PARALLEL_JOBS_KEY = "parallel_jobs"

ACTIVE_LOAD_STATUSES = (JobStatus.RUNNING, JobStatus.ASSIGNED)
MANUAL_RETRY_STATUSES = frozenset(
    {JobStatus.FAILED, JobStatus.PAUSED_HUMAN, JobStatus.PAUSED_QUOTA},
)
CANCELABLE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.ASSIGNED})
REVIEWABLE_STATUSES = frozenset({JobStatus.DONE, JobStatus.REVIEWING})
CANCELED_MESSAGE = "Canceled by operator"


class JobRepository:
    """Job store facade: every status write is a compare-and-swap on the expected status."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    # -- jobs ---------------------------------------------------------------

    def create_job(self, payload: JobCreate) -> JobView:
        """Create a queued job."""

        if not 1 <= payload.priority <= 10:  # noqa: PLR2004
            raise InvalidJobRequestError(
                f"Priority must be within 1..10, got {payload.priority}.",
            )
        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            if payload.agent_id is not None and session.get(AgentRow, payload.agent_id) is None:
                raise InvalidJobRequestError(f"Agent not found: {payload.agent_id}")
            if (
                payload.parent_job_id is not None
                and session.get(JobRow, payload.parent_job_id) is None
            ):
                raise InvalidJobRequestError(f"Parent job not found: {payload.parent_job_id}")
            row = JobRow(
                job_id=job_id,
                title=payload.title,
                prompt_text=payload.prompt_text,
                engine=payload.engine.value,
                repo_path=payload.repo_path,
                output_dir=payload.output_dir,
                priority=payload.priority,
                parent_job_id=payload.parent_job_id,
                project_id=payload.project_id,
                agent_id=payload.agent_id,
                job_type=payload.job_type.value,
                source=payload.source.value,
                status=JobStatus.QUEUED.value,
                retry_count=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            # jobs references itself, so the row must exist before its first event
            session.flush()
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="created",
                status_from=None,
                status_to=JobStatus.QUEUED,
                details={
                    "engine": payload.engine.value,
                    "priority": payload.priority,
                    "job_type": payload.job_type.value,
                    "source": payload.source.value,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def require_job(self, job_id: str) -> JobView:
        """Return job or raise `JobNotFoundError`."""

        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            job = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
            if job is None:
                return None
            event_rows = session.exec(
                select(JobEventRow)
                .where(JobEventRow.job_id == job_id)
                .order_by(col(JobEventRow.created_at).asc(), col(JobEventRow.id).asc()),
            ).all()
            view = _to_job_view(job)

        events: list[JobEventView] = []
        for row in event_rows:
            events.append(
                JobEventView(
                    event_id=row.id or 0,
                    job_id=row.job_id,
                    event_type=row.event_type,
                    status_from=JobStatus(row.status_from) if row.status_from is not None else None,
                    status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=_load_json_dict(row.details_json),
                ),
            )
        return JobDetails(job=view, events=events)

    def list_jobs(  # noqa: PLR0913
        self,
        *,
        status: JobStatus | None = None,
        project_id: str | None = None,
        engine: str | None = None,
        parent_job_id: str | None = None,
        limit: int = 100,
    ) -> list[JobView]:
        """List jobs in claim order: priority ascending, then creation time."""

        with Session(self.engine) as session:
            statement = select(JobRow)
            if status is not None:
                statement = statement.where(JobRow.status == status.value)
            if project_id is not None:
                statement = statement.where(JobRow.project_id == project_id)
            if engine is not None:
                statement = statement.where(JobRow.engine == engine)
            if parent_job_id is not None:
                statement = statement.where(JobRow.parent_job_id == parent_job_id)
            rows = session.exec(
                statement.order_by(
                    col(JobRow.priority).asc(),
                    col(JobRow.created_at).asc(),
                ).limit(limit),
            ).all()
            return [_to_job_view(row) for row in rows]

    def count_jobs(self, statuses: Iterable[JobStatus]) -> int:
        values = [status.value for status in statuses]
        with Session(self.engine) as session:
            return session.exec(
                select(func.count()).select_from(JobRow).where(col(JobRow.status).in_(values)),
            ).one()

    def count_active_jobs_by_agent(self) -> dict[str, int]:
        """Running/assigned job counts keyed by agent id."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(JobRow.agent_id, func.count())
                .where(
                    col(JobRow.status).in_([status.value for status in ACTIVE_LOAD_STATUSES]),
                    col(JobRow.agent_id).is_not(None),
                )
                .group_by(JobRow.agent_id),
            ).all()
        return {agent_id: int(count) for agent_id, count in rows if agent_id is not None}

    def claim_next_job(
        self,
        *,
        controls: RuntimeControls,
        worker_id: str = "mc-runner",
    ) -> JobView | None:
        """Atomically claim the next queued job, honoring pause and concurrency controls."""

        if controls.pause_all:
            return None

        running_jobs = JobRow.__table__.alias("running_jobs")  # type: ignore[attr-defined]
        running_count = (
            sa_select(func.count())
            .select_from(running_jobs)
            .where(running_jobs.c.status == JobStatus.RUNNING.value)
            .scalar_subquery()
        )
        while True:
            # re-checked after every lost CAS so a full runner stops instead of spinning
            if self.count_jobs([JobStatus.RUNNING]) >= controls.max_concurrency:
                return None
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(JobRow)
                    .where(JobRow.status == JobStatus.QUEUED.value)
                    .order_by(
                        col(JobRow.priority).asc(),
                        col(JobRow.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(JobRow)
                    .where(
                        col(JobRow.job_id) == candidate.job_id,
                        col(JobRow.status) == JobStatus.QUEUED.value,
                        running_count < controls.max_concurrency,
                    )
                    .values(
                        status=JobStatus.RUNNING.value,
                        started_at=to_db_datetime(now),
                        last_error=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(JobRow).where(JobRow.job_id == candidate.job_id),
                ).one()
                self._add_event(
                    session=session,
                    job_id=claimed.job_id,
                    event_type="claimed",
                    status_from=JobStatus.QUEUED,
                    status_to=JobStatus.RUNNING,
                    details={"worker_id": worker_id},
                )
                session.commit()
                return _to_job_view(claimed)

    def transition_status(
        self,
        *,
        job_id: str,
        expected: JobStatus,
        target: JobStatus,
        event_type: str,
        values: dict[str, Any] | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Compare-and-swap status write that touches only the given fields."""

        now = utc_now()
        update_values: dict[str, Any] = dict(values or {})
        update_values["status"] = target.value
        update_values["updated_at"] = to_db_datetime(now)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == expected.value,
                )
                .values(**update_values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=expected,
                status_to=target,
                details=details or {},
            )
            session.commit()
            return True

    def record_outcome(self, *, job_id: str, outcome: EngineOutcome) -> JobStatus | None:
        """Write an engine outcome back onto a running job.

        Returns the new status, or None when the job was no longer running.
        """

        target = status_for_outcome(outcome)
        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {
            "completed_at": now,
            "last_run_json": json.dumps(outcome.raw, ensure_ascii=False, sort_keys=True),
            "log_path": outcome.log_reference,
        }
        if target == JobStatus.DONE:
            values["last_error"] = None
            values["result"] = outcome.result_text
        else:
            values["last_error"] = outcome.error_summary
            if outcome.result_text is not None:
                values["result"] = outcome.result_text

        matched = self.transition_status(
            job_id=job_id,
            expected=JobStatus.RUNNING,
            target=target,
            event_type="finished",
            values=values,
            details={
                "outcome": outcome.status.value,
                "error_summary": outcome.error_summary,
                "log_path": outcome.log_reference,
            },
        )
        return target if matched else None

    def requeue_failed_job(self, *, job_id: str, observed_retry_count: int | None) -> int | None:
        """Auto-retry: move a failed job back to queued and bump its retry counter.

        The write is conditional on both the failed status and the retry count
        observed by the caller, so two concurrent sweeps cannot double-count.
        Returns the new retry count or None on a lost race.
        """

        next_count = (observed_retry_count or 0) + 1
        now = utc_now()
        with Session(self.engine) as session:
            retry_match = (
                col(JobRow.retry_count).is_(None)
                if observed_retry_count is None
                else col(JobRow.retry_count) == observed_retry_count
            )
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == JobStatus.FAILED.value,
                    retry_match,
                )
                .values(
                    **_requeue_values(),
                    retry_count=next_count,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="auto_retry",
                status_from=JobStatus.FAILED,
                status_to=JobStatus.QUEUED,
                details={"retry_count": next_count},
            )
            session.commit()
            return next_count

    def retry_job(self, job_id: str, *, reset_retry_count: bool = False) -> JobView:
        """Manual operator retry for failed or paused jobs."""

        job = self.require_job(job_id)
        if job.status not in MANUAL_RETRY_STATUSES:
            raise InvalidJobRequestError(
                "Only failed/paused_human/paused_quota jobs can be retried manually, "
                f"got {job.status.value}.",
            )
        values = _requeue_values()
        if reset_retry_count:
            values["retry_count"] = 0
        matched = self.transition_status(
            job_id=job_id,
            expected=job.status,
            target=JobStatus.QUEUED,
            event_type="manual_retry",
            values=values,
            details={"reset_retry_count": reset_retry_count},
        )
        if not matched:
            raise InvalidJobRequestError(
                "Job state changed concurrently while retrying; "
                f"please retry command (job_id={job_id}).",
            )
        return self.require_job(job_id)

    def cancel_job(self, job_id: str, *, max_retries: int) -> JobView:
        """Cancel a job that has not started; it ends failed with retries exhausted."""

        job = self.require_job(job_id)
        if job.status not in CANCELABLE_STATUSES:
            raise InvalidJobRequestError(
                f"Job cannot be canceled from status={job.status.value}",
            )
        matched = self.transition_status(
            job_id=job_id,
            expected=job.status,
            target=JobStatus.FAILED,
            event_type="canceled",
            values={
                "completed_at": to_db_datetime(utc_now()),
                "last_error": CANCELED_MESSAGE,
                "retry_count": max(job.retry_count, max_retries),
            },
        )
        if not matched:
            raise InvalidJobRequestError(
                "Job state changed concurrently while canceling; "
                f"please retry command (job_id={job_id}).",
            )
        return self.require_job(job_id)

    def patch_job(self, job_id: str, patch: JobPatch) -> JobView:
        """Administrative partial update of status, priority, type or agent."""

        job = self.require_job(job_id)
        if patch.priority is not None and not 1 <= patch.priority <= 10:  # noqa: PLR2004
            raise InvalidJobRequestError(f"Priority must be within 1..10, got {patch.priority}.")

        field_values: dict[str, Any] = {}
        if patch.priority is not None:
            field_values["priority"] = patch.priority
        if patch.job_type is not None:
            field_values["job_type"] = patch.job_type.value
        if patch.agent_id is not None:
            if self.get_agent(patch.agent_id) is None:
                raise JobNotFoundError(f"Agent not found: {patch.agent_id}")
            field_values["agent_id"] = patch.agent_id

        if patch.status is not None and patch.status != job.status:
            ensure_transition(job.status, patch.status)
            values = {**field_values, **_status_timestamps(job.status, patch.status)}
            matched = self.transition_status(
                job_id=job_id,
                expected=job.status,
                target=patch.status,
                event_type="patched",
                values=values,
                details={"fields": sorted(field_values)},
            )
            if not matched:
                raise InvalidJobRequestError(
                    "Job state changed concurrently while patching; "
                    f"please retry command (job_id={job_id}).",
                )
            return self.require_job(job_id)

        if not field_values:
            if patch.status is None:
                raise InvalidJobRequestError("No valid fields to update.")
            return job

        now = utc_now()
        with Session(self.engine) as session:
            session.exec(
                sa_update(JobRow)
                .where(col(JobRow.job_id) == job_id)
                .values(**field_values, updated_at=to_db_datetime(now)),
            )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="patched",
                status_from=job.status,
                status_to=job.status,
                details={"fields": sorted(field_values)},
            )
            session.commit()
        return self.require_job(job_id)

    def assign_agent(self, *, job_id: str, agent_id: str, reason: str = "") -> bool:
        """Persist a routing decision on a job that has not finished yet."""

        now = utc_now()
        with Session(self.engine) as session:
            current = session.exec(
                select(JobRow.status).where(JobRow.job_id == job_id),
            ).one_or_none()
            if current is None or JobStatus(current) in TERMINAL_STATUSES:
                return False
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == current,
                )
                .values(agent_id=agent_id, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            status = JobStatus(current)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="agent_assigned",
                status_from=status,
                status_to=status,
                details={"agent_id": agent_id, "reason": reason},
            )
            session.commit()
            return True

    def mark_reviewing(self, job_id: str) -> bool:
        """Put a done job under review; completed_at is kept."""

        return self.transition_status(
            job_id=job_id,
            expected=JobStatus.DONE,
            target=JobStatus.REVIEWING,
            event_type="review_requested",
        )

    def find_stalled_jobs(self, *, now: datetime, stall_timeout_seconds: int) -> list[JobView]:
        """Running jobs whose elapsed time is strictly greater than the timeout."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(JobRow).where(
                    JobRow.status == JobStatus.RUNNING.value,
                    col(JobRow.started_at).is_not(None),
                ),
            ).all()
            jobs = [_to_job_view(row) for row in rows]
        limit = timedelta(seconds=stall_timeout_seconds)
        return [
            job for job in jobs if job.started_at is not None and now - job.started_at > limit
        ]

    def list_retryable_failed_jobs(self, *, max_retries: int, limit: int) -> list[JobView]:
        """Failed jobs below the retry cap, most recently completed first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(JobRow)
                .where(
                    JobRow.status == JobStatus.FAILED.value,
                    func.coalesce(JobRow.retry_count, 0) < max_retries,
                )
                .order_by(col(JobRow.completed_at).desc())
                .limit(limit),
            ).all()
            return [_to_job_view(row) for row in rows]

    def has_active_job_mentioning(self, fragment: str) -> bool:
        """True when a queued/running job title contains the fragment."""

        with Session(self.engine) as session:
            row = session.exec(
                select(JobRow.job_id)
                .where(
                    col(JobRow.title).contains(fragment),
                    col(JobRow.status).in_([JobStatus.QUEUED.value, JobStatus.RUNNING.value]),
                )
                .limit(1),
            ).first()
        return row is not None

    # -- reviews ------------------------------------------------------------

    def insert_review_and_rollup(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        reviewer_agent_id: str | None,
        scores: ReviewScores,
        feedback: str,
        threshold: int,
        rolling_window: int,
    ) -> ReviewResult:
        """Record a review, settle the job and refresh agent statistics in one transaction."""

        total = scores.total
        passed = total >= threshold
        target = JobStatus.DONE if passed else JobStatus.REJECTED
        now = utc_now()
        review_id = str(uuid4())

        with Session(self.engine) as session:
            job = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            previous = JobStatus(job.status)
            if previous not in REVIEWABLE_STATUSES:
                raise InvalidJobRequestError(
                    f"Only done/reviewing jobs can be reviewed, got {previous.value}.",
                )

            session.add(
                JobReviewRow(
                    review_id=review_id,
                    job_id=job_id,
                    reviewer_agent_id=reviewer_agent_id,
                    total_score=total,
                    passed=passed,
                    feedback=feedback,
                    created_at=now,
                    **scores.as_dict(),
                ),
            )
            session.flush()

            settled = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == previous.value,
                )
                .values(
                    quality_score=total,
                    status=target.value,
                    review_notes=feedback,
                    updated_at=to_db_datetime(now),
                ),
            )
            if settled.rowcount != 1:
                session.rollback()
                raise InvalidJobRequestError(
                    "Job state changed concurrently while reviewing; "
                    f"please retry command (job_id={job_id}).",
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="reviewed",
                status_from=previous,
                status_to=target,
                details={"review_id": review_id, "total": total, "passed": passed},
            )

            if job.agent_id is not None:
                self._rollup_agent(
                    session=session,
                    agent_id=job.agent_id,
                    passed=passed,
                    rolling_window=rolling_window,
                    now=now,
                )
            session.commit()

        return ReviewResult(passed=passed, total=total, review_id=review_id, feedback=feedback)

    def _rollup_agent(
        self,
        *,
        session: Session,
        agent_id: str,
        passed: bool,
        rolling_window: int,
        now: datetime,
    ) -> None:
        recent = session.exec(
            select(JobReviewRow.total_score)
            .join(JobRow, col(JobRow.job_id) == col(JobReviewRow.job_id))
            .where(JobRow.agent_id == agent_id)
            .order_by(col(JobReviewRow.created_at).desc())
            .limit(rolling_window),
        ).all()
        average = round(sum(recent) / len(recent), 2) if recent else 0.0

        values: dict[str, Any] = {
            "quality_score_avg": average,
            "updated_at": to_db_datetime(now),
        }
        if passed:
            values["consecutive_failures"] = 0
            values["total_jobs_completed"] = AgentRow.total_jobs_completed + 1
        else:
            values["consecutive_failures"] = AgentRow.consecutive_failures + 1
        session.exec(
            sa_update(AgentRow).where(col(AgentRow.agent_id) == agent_id).values(**values),
        )

    # -- agents -------------------------------------------------------------

    def create_agent(self, payload: AgentCreate) -> AgentView:
        now = utc_now()
        with Session(self.engine) as session:
            existing = session.exec(
                select(AgentRow).where(AgentRow.name == payload.name),
            ).one_or_none()
            if existing is not None:
                raise InvalidJobRequestError(f"Agent name already exists: {payload.name}")
            row = AgentRow(
                agent_id=payload.agent_id or str(uuid4()),
                name=payload.name,
                role=payload.role.value,
                default_engine=payload.default_engine.value,
                cost_tier=payload.cost_tier.value,
                department_id=payload.department_id,
                active=payload.active,
                status=AgentStatus.ACTIVE.value,
                model_id=payload.model_id,
                system_prompt=payload.system_prompt,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_agent_view(row)

    def get_agent(self, agent_id: str) -> AgentView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(AgentRow).where(AgentRow.agent_id == agent_id),
            ).one_or_none()
            return _to_agent_view(row) if row is not None else None

    def get_agent_by_name(self, name: str) -> AgentView | None:
        with Session(self.engine) as session:
            row = session.exec(select(AgentRow).where(AgentRow.name == name)).one_or_none()
            return _to_agent_view(row) if row is not None else None

    def list_agents(self, *, eligible_only: bool = False) -> list[AgentView]:
        """Agents ordered by quality descending, then name."""

        with Session(self.engine) as session:
            statement = select(AgentRow)
            if eligible_only:
                statement = statement.where(
                    col(AgentRow.active).is_(True),
                    AgentRow.status == AgentStatus.ACTIVE.value,
                )
            rows = session.exec(
                statement.order_by(
                    col(AgentRow.quality_score_avg).desc(),
                    col(AgentRow.name).asc(),
                ),
            ).all()
            return [_to_agent_view(row) for row in rows]

    def list_agents_over_failure_threshold(self, threshold: int) -> list[AgentView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentRow)
                .where(
                    AgentRow.status == AgentStatus.ACTIVE.value,
                    AgentRow.consecutive_failures >= threshold,
                )
                .order_by(col(AgentRow.name).asc()),
            ).all()
            return [_to_agent_view(row) for row in rows]

    def pause_agent(self, agent_id: str) -> bool:
        """Pause an active agent; False when it was not active anymore."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentRow)
                .where(
                    col(AgentRow.agent_id) == agent_id,
                    col(AgentRow.status) == AgentStatus.ACTIVE.value,
                )
                .values(
                    status=AgentStatus.PAUSED.value,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def resume_agent(self, agent_id: str) -> AgentView:
        """Reactivate a paused agent and clear its failure streak."""

        with Session(self.engine) as session:
            row = session.exec(
                select(AgentRow).where(AgentRow.agent_id == agent_id),
            ).one_or_none()
            if row is None:
                raise JobNotFoundError(f"Agent not found: {agent_id}")
            row.status = AgentStatus.ACTIVE.value
            row.consecutive_failures = 0
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_agent_view(row)

    # -- projects -----------------------------------------------------------

    def create_project(
        self,
        *,
        name: str,
        pm_agent_id: str | None = None,
        project_id: str | None = None,
    ) -> ProjectView:
        with Session(self.engine) as session:
            row = ProjectRow(
                project_id=project_id or str(uuid4()),
                name=name,
                pm_agent_id=pm_agent_id,
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return ProjectView(
                project_id=row.project_id,
                name=row.name,
                pm_agent_id=row.pm_agent_id,
            )

    def preferred_department_for_project(self, project_id: str | None) -> str | None:
        """Department of the project's designated PM agent while that agent is active."""

        if project_id is None:
            return None
        with Session(self.engine) as session:
            department = session.exec(
                select(AgentRow.department_id)
                .join(ProjectRow, col(ProjectRow.pm_agent_id) == col(AgentRow.agent_id))
                .where(ProjectRow.project_id == project_id, col(AgentRow.active).is_(True)),
            ).first()
        return department

    # -- notifications ------------------------------------------------------

    def create_notification(self, payload: NotificationCreate) -> NotificationView:
        with Session(self.engine) as session:
            row = NotificationRow(
                notification_id=str(uuid4()),
                title=payload.title,
                body=payload.body,
                category=payload.category.value,
                priority=payload.priority.value,
                status=NotificationStatus.PENDING.value,
                source_type=payload.source_type,
                source_id=payload.source_id,
                metadata_json=json.dumps(payload.metadata, ensure_ascii=False, sort_keys=True),
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_notification_view(row)

    def list_notifications(
        self,
        *,
        status: NotificationStatus | None = None,
        category: NotificationCategory | None = None,
        limit: int = 50,
    ) -> list[NotificationView]:
        """Notifications, newest first."""

        with Session(self.engine) as session:
            statement = select(NotificationRow)
            if status is not None:
                statement = statement.where(NotificationRow.status == status.value)
            if category is not None:
                statement = statement.where(NotificationRow.category == category.value)
            rows = session.exec(
                statement.order_by(col(NotificationRow.created_at).desc()).limit(limit),
            ).all()
            return [_to_notification_view(row) for row in rows]

    def has_open_alert_for_job(self, job_id: str) -> bool:
        """True when a pending/delivered alert already references the job."""

        with Session(self.engine) as session:
            row = session.exec(
                select(NotificationRow.notification_id)
                .where(
                    NotificationRow.category == NotificationCategory.ALERT.value,
                    col(NotificationRow.status).in_(
                        [status.value for status in OPEN_NOTIFICATION_STATUSES],
                    ),
                    func.json_extract(NotificationRow.metadata_json, "$.job_id") == job_id,
                )
                .limit(1),
            ).first()
        return row is not None

    def acknowledge_notification(self, notification_id: str) -> bool:
        return self._close_notification(notification_id, NotificationStatus.ACKNOWLEDGED)

    def dismiss_notification(self, notification_id: str) -> bool:
        return self._close_notification(notification_id, NotificationStatus.DISMISSED)

    def _close_notification(self, notification_id: str, status: NotificationStatus) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(NotificationRow)
                .where(
                    col(NotificationRow.notification_id) == notification_id,
                    col(NotificationRow.status).in_(
                        [value.value for value in OPEN_NOTIFICATION_STATUSES],
                    ),
                )
                .values(status=status.value, acknowledged_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # -- research items -----------------------------------------------------

    def create_research_item(
        self,
        *,
        title: str | None,
        url: str | None,
        content_type: str = "article",
        created_at: datetime | None = None,
    ) -> ResearchItemView:
        with Session(self.engine) as session:
            row = ResearchItemRow(
                item_id=str(uuid4()),
                title=title,
                url=url,
                content_type=content_type,
                status="captured",
                created_at=created_at or utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_research_view(row)

    def list_stale_research_items(
        self,
        *,
        captured_before: datetime,
        limit: int,
    ) -> list[ResearchItemView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ResearchItemRow)
                .where(
                    ResearchItemRow.status == "captured",
                    col(ResearchItemRow.created_at) < to_db_datetime(captured_before),
                )
                .order_by(col(ResearchItemRow.created_at).asc())
                .limit(limit),
            ).all()
            return [_to_research_view(row) for row in rows]

    # -- settings -----------------------------------------------------------

    def get_setting(self, key: str) -> Any | None:
        with Session(self.engine) as session:
            row = session.exec(select(SettingRow).where(SettingRow.key == key)).one_or_none()
            if row is None:
                return None
            return json.loads(row.value_json)

    def set_setting(self, key: str, value: Any) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(select(SettingRow).where(SettingRow.key == key)).one_or_none()
            if row is None:
                row = SettingRow(key=key, value_json="null", updated_at=now)
            row.value_json = json.dumps(value, ensure_ascii=False, sort_keys=True)
            row.updated_at = now
            session.add(row)
            session.commit()

    def read_parallel_jobs(self) -> int:
        """Claims per scheduler tick; `{"count": n}` in settings, default 1."""

        value = self.get_setting(PARALLEL_JOBS_KEY)
        if isinstance(value, dict) and isinstance(value.get("count"), int):
            return max(1, value["count"])
        return 1

    def read_runtime_controls(self, defaults: RuntimeControls) -> RuntimeControls:
        """Snapshot persisted operator switches, falling back to defaults."""

        pause = self.get_setting(PAUSE_ALL_KEY)
        concurrency = self.get_setting(MAX_CONCURRENCY_KEY)
        threshold = self.get_setting(QA_PASS_THRESHOLD_KEY)

        pause_all = defaults.pause_all
        if isinstance(pause, dict):
            pause_all = bool(pause.get("enabled", False))

        max_concurrency = defaults.max_concurrency
        if isinstance(concurrency, dict) and isinstance(concurrency.get("limit"), int):
            max_concurrency = concurrency["limit"]

        qa_pass_threshold = defaults.qa_pass_threshold
        if isinstance(threshold, int | float) and not isinstance(threshold, bool):
            qa_pass_threshold = int(threshold)

        return RuntimeControls(
            pause_all=pause_all,
            max_concurrency=max_concurrency,
            qa_pass_threshold=qa_pass_threshold,
        )

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEventRow(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _requeue_values() -> dict[str, Any]:
    """Field reset shared by auto-retry and manual retry."""

    return {
        "status": JobStatus.QUEUED.value,
        "started_at": None,
        "completed_at": None,
        "result": None,
        "last_error": None,
        "last_run_json": None,
        "log_path": None,
    }


def _status_timestamps(current: JobStatus, target: JobStatus) -> dict[str, Any]:
    now = to_db_datetime(utc_now())
    if current in {JobStatus.DONE, JobStatus.REVIEWING}:
        return {}
    if target == JobStatus.QUEUED:
        return _requeue_values()
    if target == JobStatus.RUNNING:
        return {"started_at": now, "completed_at": None}
    if target in TERMINAL_STATUSES:
        return {"completed_at": now}
    return {}


def _load_json_dict(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_job_view(row: JobRow) -> JobView:
    last_run = _load_json_dict(row.last_run_json) if row.last_run_json else None
    return JobView(
        job_id=row.job_id,
        title=row.title,
        prompt_text=row.prompt_text,
        engine=Engine(row.engine),
        repo_path=row.repo_path,
        output_dir=row.output_dir,
        priority=row.priority,
        parent_job_id=row.parent_job_id,
        project_id=row.project_id,
        agent_id=row.agent_id,
        job_type=JobType(row.job_type),
        source=row.source,
        status=JobStatus(row.status),
        started_at=_optional_aware(row.started_at),
        completed_at=_optional_aware(row.completed_at),
        retry_count=row.retry_count or 0,
        last_error=row.last_error,
        result=row.result,
        last_run_outcome=last_run,
        log_path=row.log_path,
        quality_score=row.quality_score,
        review_notes=row.review_notes,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_agent_view(row: AgentRow) -> AgentView:
    return AgentView(
        agent_id=row.agent_id,
        name=row.name,
        role=row.role,
        default_engine=row.default_engine,
        cost_tier=row.cost_tier,
        department_id=row.department_id,
        active=row.active,
        status=AgentStatus(row.status),
        model_id=row.model_id,
        system_prompt=row.system_prompt,
        quality_score_avg=float(row.quality_score_avg or 0.0),
        total_jobs_completed=row.total_jobs_completed,
        consecutive_failures=row.consecutive_failures,
    )


def _to_notification_view(row: NotificationRow) -> NotificationView:
    return NotificationView(
        notification_id=row.notification_id,
        title=row.title,
        body=row.body,
        category=row.category,
        priority=row.priority,
        status=NotificationStatus(row.status),
        source_type=row.source_type,
        source_id=row.source_id,
        metadata=_load_json_dict(row.metadata_json),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_research_view(row: ResearchItemRow) -> ResearchItemView:
    return ResearchItemView(
        item_id=row.item_id,
        title=row.title,
        url=row.url,
        content_type=row.content_type,
        status=row.status,
        created_at=to_utc_aware_datetime(row.created_at),
    )
