"""Job worker: claim, route, execute, record and follow up on one job at a time."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from mission_control.config import Settings
from mission_control.jobs.decomposer import decompose_job, parse_sub_tasks
from mission_control.jobs.dispatch import AutoDispatcher, SweepReport
from mission_control.jobs.engines.base import EngineRequest
from mission_control.jobs.engines.registry import EngineRegistry
from mission_control.jobs.models import (
    AgentRole,
    AgentView,
    Engine,
    EngineOutcome,
    JobCreate,
    JobSource,
    JobStatus,
    JobType,
    JobView,
    NotificationCategory,
    NotificationCreate,
    NotificationPriority,
    OutcomeStatus,
    RuntimeControls,
)
from mission_control.jobs.quality import QualityScorer, parse_review_output
from mission_control.jobs.repository import JobRepository
from mission_control.jobs.routing import route_job

logger = logging.getLogger(__name__)

SMOKE_TEST_PREFIX = "__SMOKE_TEST"
REVIEW_JOB_PRIORITY = 2
INTEGRATION_JOB_PRIORITY = 3
REVIEW_OUTPUT_CHARS = 8_000
NOTIFICATION_TITLE_CHARS = 80
NOTIFICATION_BODY_CHARS = 200
IDLE_MESSAGE = "no queued jobs"
PAUSED_MESSAGE = "scheduler paused"

REVIEW_PROMPT_TEMPLATE = (
    'Review the output of job "{title}" and score on 5 dimensions '
    "(completeness, accuracy, actionability, relevance, evidence) each 1-10. "
    'Return ONLY JSON: {{"completeness":N,"accuracy":N,"actionability":N,'
    '"relevance":N,"evidence":N,"feedback":"..."}}\n\n'
    "Threshold: {threshold}/50.\n\n"
    "## Job Output:\n{output}"
)


@dataclass(slots=True)
class RunOutcome:
    """Result of one claim-and-run attempt."""

    ok: bool
    message: str
    job_id: str | None = None
    status: JobStatus | None = None
    agent_id: str | None = None
    error: str | None = None
    log_path: str | None = None

    @property
    def idle(self) -> bool:
        return self.job_id is None

    def as_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "message": self.message,
            "job_id": self.job_id,
            "status": self.status.value if self.status is not None else None,
            "agent_id": self.agent_id,
            "error": self.error,
            "log_path": self.log_path,
        }


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    paused: int = 0
    idle_polls: int = 0

    def add(self, outcome: RunOutcome) -> None:
        if outcome.idle:
            self.idle_polls += 1
            return
        self.processed += 1
        if outcome.status == JobStatus.DONE:
            self.succeeded += 1
        elif outcome.status in {JobStatus.PAUSED_HUMAN, JobStatus.PAUSED_QUOTA}:
            self.paused += 1
        else:
            self.failed += 1


def read_controls(repository: JobRepository, settings: Settings) -> RuntimeControls:
    """Persisted operator switches over the configured defaults."""

    return repository.read_runtime_controls(
        RuntimeControls(
            pause_all=False,
            max_concurrency=settings.runner.default_max_concurrency,
            qa_pass_threshold=settings.quality.pass_threshold,
        ),
    )


class JobWorker:
    """Consumes queued jobs and executes them through the engine registry."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        engines: EngineRegistry,
        settings: Settings,
        dispatcher: AutoDispatcher | None = None,
        scorer: QualityScorer | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.repository = repository
        self.engines = engines
        self.settings = settings
        self.dispatcher = dispatcher or AutoDispatcher(repository, settings.dispatch)
        self.scorer = scorer or QualityScorer(
            repository,
            rolling_window=settings.quality.rolling_window,
        )
        self.worker_id = worker_id or settings.runner.worker_id
        self._stop_requested = False

    def read_controls(self) -> RuntimeControls:
        """Current operator switches, with configured defaults."""

        return read_controls(self.repository, self.settings)

    def run_once(self, *, controls: RuntimeControls | None = None) -> RunOutcome:
        """Claim at most one job, run it and record the outcome."""

        controls = controls or self.read_controls()
        job = self.repository.claim_next_job(controls=controls, worker_id=self.worker_id)
        if job is None:
            message = PAUSED_MESSAGE if controls.pause_all else IDLE_MESSAGE
            return RunOutcome(ok=True, message=message)

        agent = self._ensure_agent(job)
        logger.info(
            "run-start job=%s engine=%s agent=%s repo=%s",
            job.job_id,
            job.engine.value,
            agent.name if agent is not None else "none",
            job.repo_path,
        )
        outcome = self._execute(job=job, agent=agent)
        status = self.repository.record_outcome(job_id=job.job_id, outcome=outcome)
        if status is None:
            logger.warning("claim-lost job=%s: status changed while running", job.job_id)
            return RunOutcome(
                ok=False,
                message="job state changed while running",
                job_id=job.job_id,
                agent_id=agent.agent_id if agent is not None else None,
                error=outcome.error_summary,
                log_path=outcome.log_reference,
            )
        logger.info(
            "run-finish job=%s status=%s outcome=%s",
            job.job_id,
            status.value,
            outcome.status.value,
        )

        self._notify_completion(job=job, status=status, outcome=outcome)
        if status == JobStatus.DONE:
            self._after_success(job=job, outcome=outcome, controls=controls)
        if self.settings.runner.sweep_after_job:
            self.sweep()

        return RunOutcome(
            ok=status == JobStatus.DONE,
            message=f"job {status.value}",
            job_id=job.job_id,
            status=status,
            agent_id=agent.agent_id if agent is not None else None,
            error=outcome.error_summary,
            log_path=outcome.log_reference,
        )

    def run_parallel(self, max_jobs: int = 3) -> list[RunOutcome]:
        """Fire up to `max_jobs` concurrent single-claim runs (capped)."""

        count = max(1, min(max_jobs, self.settings.runner.parallel_cap))
        controls = self.read_controls()
        with ThreadPoolExecutor(max_workers=count, thread_name_prefix="mc-runner") as pool:
            futures = [pool.submit(self.run_once, controls=controls) for _ in range(count)]
            return [future.result() for future in futures]

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run until the queue is idle, `max_jobs` were processed or a stop signal arrives."""

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                outcome = self.run_once()
                aggregate.add(outcome)
                if outcome.idle:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.settings.runner.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def sweep(self) -> SweepReport:
        return self.dispatcher.sweep()

    def _ensure_agent(self, job: JobView) -> AgentView | None:
        if job.agent_id is not None:
            return self.repository.get_agent(job.agent_id)
        route = route_job(self.repository, job.job_id)
        if route is None:
            return None
        if self.repository.assign_agent(
            job_id=job.job_id,
            agent_id=route.agent_id,
            reason=route.reason,
        ):
            logger.info("agent-assigned job=%s agent=%s", job.job_id, route.agent_name)
        return self.repository.get_agent(route.agent_id)

    def _execute(self, *, job: JobView, agent: AgentView | None) -> EngineOutcome:
        is_llm = job.engine != Engine.SHELL
        request = EngineRequest(
            job_id=job.job_id,
            engine=job.engine,
            working_directory=Path(job.repo_path),
            output_directory=Path(job.output_dir),
            prompt=job.prompt_text,
            system_prompt=agent.system_prompt if is_llm and agent is not None else None,
            model=(
                agent.model_id
                if is_llm and agent is not None and agent.default_engine == job.engine.value
                else None
            ),
            timeout_seconds=self.settings.runner.shell_timeout_seconds,
            shutdown_requested=lambda: self._stop_requested,
        )
        try:
            return self.engines.execute(request)
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected engine failure for job %s", job.job_id)
            return EngineOutcome(
                status=OutcomeStatus.FAILED,
                error_summary=f"Unexpected engine failure: {error}",
                raw={"ok": False, "error": "unexpected-engine-failure"},
            )

    def _notify_completion(
        self,
        *,
        job: JobView,
        status: JobStatus,
        outcome: EngineOutcome,
    ) -> None:
        title = job.title[:NOTIFICATION_TITLE_CHARS]
        try:
            if status == JobStatus.DONE and "code change" in job.title.lower():
                payload = NotificationCreate(
                    title=f"Deploy ready: {title}",
                    body="Code change complete. Ready for deploy.",
                    category=NotificationCategory.DEPLOY_READY,
                    priority=NotificationPriority.HIGH,
                    source_type="job",
                    source_id=job.job_id,
                )
            elif status == JobStatus.DONE:
                payload = NotificationCreate(
                    title=f"Job complete: {title}",
                    body=(outcome.result_text or "")[:NOTIFICATION_BODY_CHARS] or None,
                    category=NotificationCategory.JOB_COMPLETE,
                    priority=NotificationPriority.NORMAL,
                    source_type="job",
                    source_id=job.job_id,
                )
            elif status == JobStatus.FAILED:
                payload = NotificationCreate(
                    title=f"Job failed: {title}",
                    body=(outcome.error_summary or "")[:NOTIFICATION_BODY_CHARS] or None,
                    category=NotificationCategory.JOB_FAILED,
                    priority=NotificationPriority.HIGH,
                    source_type="job",
                    source_id=job.job_id,
                )
            else:
                return
            self.repository.create_notification(payload)
        except Exception:  # noqa: BLE001
            logger.exception("notification-error job=%s", job.job_id)

    def _after_success(
        self,
        *,
        job: JobView,
        outcome: EngineOutcome,
        controls: RuntimeControls,
    ) -> None:
        try:
            if job.job_type == JobType.REVIEW and job.parent_job_id is not None:
                self._apply_review(
                    job=job,
                    parent_job_id=job.parent_job_id,
                    outcome=outcome,
                    controls=controls,
                )
            elif job.job_type == JobType.DECOMPOSITION:
                self._apply_decomposition(job=job, outcome=outcome)
            elif (
                job.engine == Engine.SHELL
                or job.job_type == JobType.INTEGRATION
                or job.title.startswith(SMOKE_TEST_PREFIX)
            ):
                return
            else:
                self._queue_review(job=job, outcome=outcome, controls=controls)
        except Exception:  # noqa: BLE001
            logger.exception("post-exec-error job=%s", job.job_id)

    def _apply_review(
        self,
        *,
        job: JobView,
        parent_job_id: str,
        outcome: EngineOutcome,
        controls: RuntimeControls,
    ) -> None:
        parsed = parse_review_output(outcome.result_text)
        if parsed is None:
            logger.warning("review-unparsed job=%s parent=%s", job.job_id, parent_job_id)
            return
        result = self.scorer.score_job(
            job_id=parent_job_id,
            reviewer_agent_id=job.agent_id,
            scores=parsed.scores,
            feedback=parsed.feedback,
            controls=controls,
        )
        logger.info("review-scored parent=%s total=%d", parent_job_id, result.total)

    def _apply_decomposition(self, *, job: JobView, outcome: EngineOutcome) -> None:
        sub_tasks = parse_sub_tasks(outcome.result_text)
        if not sub_tasks:
            logger.warning("decomposition-unparsed job=%s", job.job_id)
            return
        decompose_job(self.repository, job.job_id, sub_tasks)

    def _queue_review(
        self,
        *,
        job: JobView,
        outcome: EngineOutcome,
        controls: RuntimeControls,
    ) -> None:
        reviewer = self._first_agent_with_role(AgentRole.QA)
        if reviewer is None:
            logger.info("review-skipped job=%s: no active qa agent", job.job_id)
        elif self.repository.mark_reviewing(job.job_id):
            review = self.repository.create_job(
                JobCreate(
                    title=f"QA Review: {job.title}",
                    prompt_text=REVIEW_PROMPT_TEMPLATE.format(
                        title=job.title,
                        threshold=controls.qa_pass_threshold,
                        output=(outcome.result_text or "")[:REVIEW_OUTPUT_CHARS],
                    ),
                    engine=Engine.CLAUDE,
                    repo_path=job.repo_path,
                    output_dir=job.output_dir,
                    priority=REVIEW_JOB_PRIORITY,
                    parent_job_id=job.job_id,
                    project_id=job.project_id,
                    agent_id=reviewer.agent_id,
                    job_type=JobType.REVIEW,
                    source=JobSource.ORCHESTRATOR,
                ),
            )
            logger.info("review-queued job=%s review=%s", job.job_id, review.job_id)

        if job.parent_job_id is not None:
            self._queue_integration_if_ready(job=job, parent_id=job.parent_job_id)

    def _queue_integration_if_ready(self, *, job: JobView, parent_id: str) -> None:
        children = self.repository.list_jobs(parent_job_id=parent_id, limit=1_000)
        if any(child.job_type == JobType.INTEGRATION for child in children):
            return
        siblings = [
            child
            for child in children
            if child.job_type not in {JobType.REVIEW, JobType.INTEGRATION}
        ]
        if not siblings:
            return
        if not all(
            sibling.status in {JobStatus.DONE, JobStatus.REVIEWING} for sibling in siblings
        ):
            return
        orchestrator = self._first_agent_with_role(AgentRole.ORCHESTRATOR)
        if orchestrator is None:
            logger.info("integration-skipped parent=%s: no orchestrator agent", parent_id)
            return
        self.repository.create_job(
            JobCreate(
                title=f"Integration: merge results from parent {parent_id}",
                prompt_text=(
                    f"All sub-tasks for parent job {parent_id} are complete. "
                    "Review and integrate the results."
                ),
                engine=Engine.CLAUDE,
                repo_path=job.repo_path,
                output_dir=job.output_dir,
                priority=INTEGRATION_JOB_PRIORITY,
                parent_job_id=parent_id,
                project_id=job.project_id,
                agent_id=orchestrator.agent_id,
                job_type=JobType.INTEGRATION,
                source=JobSource.ORCHESTRATOR,
            ),
        )
        logger.info("integration-queued parent=%s", parent_id)

    def _first_agent_with_role(self, role: AgentRole) -> AgentView | None:
        for agent in self.repository.list_agents(eligible_only=True):
            if agent.role == role.value:
                return agent
        return None

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Stop requested by signal %s", signum)
            self._stop_requested = True

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
