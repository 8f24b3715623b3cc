from __future__ import annotations

from datetime import timedelta

import allure

from mission_control.config import DispatchSettings
from mission_control.jobs.dispatch import RESEARCH_JOB_PRIORITY, AutoDispatcher
from mission_control.jobs.models import (
    AgentRole,
    AgentStatus,
    EngineOutcome,
    JobSource,
    JobStatus,
    NotificationCategory,
    OutcomeStatus,
    ReviewScores,
    RuntimeControls,
)
from mission_control.jobs.repository import JobRepository
from mission_control.storage.common import utc_now

pytestmark = [
    allure.epic("Self-Healing"),
    allure.feature("Auto-Dispatch Sweep"),
]

OPEN_CONTROLS = RuntimeControls(max_concurrency=50)


def _fail_job(repository: JobRepository, make_job, title: str) -> str:
    make_job(title=title)
    claimed = repository.claim_next_job(controls=OPEN_CONTROLS)
    assert claimed is not None
    repository.record_outcome(
        job_id=claimed.job_id,
        outcome=EngineOutcome(status=OutcomeStatus.FAILED, error_summary="boom"),
    )
    return claimed.job_id


def test_stalled_job_alert_is_strict_and_deduplicated(
    repository: JobRepository,
    make_job,
) -> None:
    make_job(title="Long crawl")
    claimed = repository.claim_next_job(controls=OPEN_CONTROLS)
    assert claimed is not None and claimed.started_at is not None
    dispatch_settings = DispatchSettings(stall_timeout_seconds=600)

    at_boundary = claimed.started_at + timedelta(seconds=600)
    report = AutoDispatcher(repository, dispatch_settings, clock=lambda: at_boundary).sweep()
    assert report.stall_alerts == 0

    later = claimed.started_at + timedelta(minutes=15)
    dispatcher = AutoDispatcher(repository, dispatch_settings, clock=lambda: later)
    assert dispatcher.sweep().stall_alerts == 1
    assert dispatcher.sweep().stall_alerts == 0

    alerts = repository.list_notifications(category=NotificationCategory.ALERT)
    assert len(alerts) == 1
    assert alerts[0].title == "Stalled job: Long crawl"
    assert alerts[0].body == "Running for 15 minutes. May need investigation."
    assert alerts[0].metadata == {"job_id": claimed.job_id, "type": "stalled_job"}


def test_auto_retry_is_bounded_by_max_retries(repository: JobRepository, make_job) -> None:
    job_id = _fail_job(repository, make_job, "Flaky build")
    dispatcher = AutoDispatcher(repository, DispatchSettings(max_retries=2))

    for expected_attempt in (1, 2):
        report = dispatcher.sweep()
        assert report.retried == 1
        job = repository.require_job(job_id)
        assert job.status == JobStatus.QUEUED
        assert job.retry_count == expected_attempt
        assert job.last_error is None
        claimed = repository.claim_next_job(controls=OPEN_CONTROLS)
        assert claimed is not None
        repository.record_outcome(
            job_id=job_id,
            outcome=EngineOutcome(status=OutcomeStatus.FAILED, error_summary="again"),
        )

    assert dispatcher.sweep().retried == 0
    assert repository.require_job(job_id).status == JobStatus.FAILED

    titles = [
        item.title
        for item in repository.list_notifications(category=NotificationCategory.INFO)
    ]
    assert sorted(titles) == [
        "Auto-retry: Flaky build (attempt 1/2)",
        "Auto-retry: Flaky build (attempt 2/2)",
    ]


def test_auto_retry_respects_batch_size(repository: JobRepository, make_job) -> None:
    for index in range(4):
        _fail_job(repository, make_job, f"job {index}")

    report = AutoDispatcher(repository, DispatchSettings(retry_batch_size=3)).sweep()

    assert report.retried == 3
    assert repository.count_jobs([JobStatus.FAILED]) == 1
    assert repository.count_jobs([JobStatus.QUEUED]) == 3


def test_canceled_jobs_are_never_retried(repository: JobRepository, make_job) -> None:
    job = make_job()
    repository.cancel_job(job.job_id, max_retries=3)

    report = AutoDispatcher(repository, DispatchSettings(max_retries=3)).sweep()

    assert report.retried == 0
    assert repository.require_job(job.job_id).status == JobStatus.FAILED


def test_stale_research_is_dispatched_once(repository: JobRepository) -> None:
    now = utc_now()
    stale = repository.create_research_item(
        title="Vector DB benchmarks",
        url="https://example.com/bench",
        created_at=now - timedelta(hours=2),
    )
    repository.create_research_item(title="Fresh", url=None, created_at=now)
    dispatch_settings = DispatchSettings(research_stale_seconds=1800)
    dispatcher = AutoDispatcher(repository, dispatch_settings, clock=lambda: now)

    assert dispatcher.sweep().research_dispatched == 1
    assert dispatcher.sweep().research_dispatched == 0

    jobs = repository.list_jobs()
    assert len(jobs) == 1
    assert jobs[0].title == f"Scout: Vector DB benchmarks [research:{stale.item_id}]"
    assert jobs[0].priority == RESEARCH_JOB_PRIORITY
    assert jobs[0].source == JobSource.AUTO_DISPATCH.value
    assert "URL: https://example.com/bench." in jobs[0].prompt_text


def test_failing_agent_is_paused_once(
    repository: JobRepository,
    make_job,
    make_agent,
    complete_job,
) -> None:
    agent = make_agent("scout", AgentRole.RESEARCHER)
    low = ReviewScores(completeness=1, accuracy=1, actionability=1, relevance=1, evidence=1)
    for index in range(3):
        job = complete_job(make_job(title=f"scan {index}", agent_id=agent.agent_id))
        repository.insert_review_and_rollup(
            job_id=job.job_id,
            reviewer_agent_id=None,
            scores=low,
            feedback="thin",
            threshold=35,
            rolling_window=20,
        )
    dispatcher = AutoDispatcher(repository, DispatchSettings(max_consecutive_failures=3))

    assert dispatcher.sweep().agents_paused == 1
    assert dispatcher.sweep().agents_paused == 0

    paused = repository.get_agent(agent.agent_id)
    assert paused is not None
    assert paused.status == AgentStatus.PAUSED
    assert paused.eligible is False
    alert_titles = [
        item.title for item in repository.list_notifications(category=NotificationCategory.ALERT)
    ]
    assert alert_titles == ["Agent paused: scout"]


def test_failing_rule_does_not_stop_the_sweep(
    repository: JobRepository,
    make_job,
    monkeypatch,
) -> None:
    _fail_job(repository, make_job, "Retry me")

    def _broken(**_: object) -> list[object]:
        raise RuntimeError("db hiccup")

    monkeypatch.setattr(repository, "find_stalled_jobs", _broken)

    report = AutoDispatcher(repository, DispatchSettings()).sweep()

    assert report.failed_rules == ["stall_detection"]
    assert report.retried == 1
