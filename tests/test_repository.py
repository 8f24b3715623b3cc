from __future__ import annotations

import multiprocessing
import queue
import threading
from pathlib import Path

import allure
import pytest

from mission_control.jobs.models import (
    Engine,
    EngineOutcome,
    InvalidJobRequestError,
    JobNotFoundError,
    JobPatch,
    JobStatus,
    NotificationCategory,
    NotificationCreate,
    NotificationStatus,
    OutcomeStatus,
    RuntimeControls,
)
from mission_control.jobs.repository import (
    MAX_CONCURRENCY_KEY,
    PAUSE_ALL_KEY,
    QA_PASS_THRESHOLD_KEY,
    JobRepository,
)

pytestmark = [
    allure.epic("Job Core"),
    allure.feature("Job Store & Claim Protocol"),
]

OPEN_CONTROLS = RuntimeControls(pause_all=False, max_concurrency=50, qa_pass_threshold=35)


def _claim_worker(  # pragma: no cover - executed in worker threads
    db_path: str,
    start_event: threading.Event,
    result_queue: queue.Queue[str | None],
) -> None:
    repository = JobRepository(Path(db_path))
    try:
        start_event.wait(timeout=5)
        job = repository.claim_next_job(controls=OPEN_CONTROLS, worker_id="race")
        result_queue.put(job.job_id if job is not None else None)
    finally:
        repository.close()


def _run_manual_retry(  # pragma: no cover - executed in child process
    db_path: str,
    job_id: str,
    start_event: multiprocessing.synchronize.Event,
    result_queue: multiprocessing.queues.Queue[tuple[str, str]],
) -> None:
    repository = JobRepository(Path(db_path))
    try:
        start_event.wait(timeout=5)
        repository.retry_job(job_id)
        result_queue.put(("ok", ""))
    except Exception as error:  # noqa: BLE001
        result_queue.put(("error", str(error)))
    finally:
        repository.close()


def _finish(repository: JobRepository, status: OutcomeStatus, error: str | None = None) -> str:
    claimed = repository.claim_next_job(controls=OPEN_CONTROLS)
    assert claimed is not None
    recorded = repository.record_outcome(
        job_id=claimed.job_id,
        outcome=EngineOutcome(status=status, result_text="out", error_summary=error),
    )
    assert recorded is not None
    return claimed.job_id


def test_create_job_is_queued_with_audit_event(repository: JobRepository, make_job) -> None:
    job = make_job(priority=4)

    assert job.status == JobStatus.QUEUED
    assert job.retry_count == 0
    assert job.started_at is None
    assert job.completed_at is None

    details = repository.get_job_details(job.job_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["created"]
    assert details.events[0].status_to == JobStatus.QUEUED


@pytest.mark.parametrize("priority", [0, 11])
def test_create_job_rejects_out_of_range_priority(make_job, priority: int) -> None:
    with pytest.raises(InvalidJobRequestError, match="Priority"):
        make_job(priority=priority)


def test_create_job_rejects_unknown_agent(make_job) -> None:
    with pytest.raises(InvalidJobRequestError, match="Agent not found"):
        make_job(agent_id="missing-agent")


def test_create_child_job_on_fresh_store(repository: JobRepository, make_job) -> None:
    parent = make_job(title="parent")

    child = make_job(title="child", parent_job_id=parent.job_id)

    assert child.parent_job_id == parent.job_id
    details = repository.get_job_details(child.job_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["created"]
    assert [job.job_id for job in repository.list_jobs(parent_job_id=parent.job_id)] == [
        child.job_id,
    ]


def test_create_child_job_rejects_unknown_parent(make_job) -> None:
    with pytest.raises(InvalidJobRequestError, match="Parent job not found"):
        make_job(parent_job_id="missing-parent")


def test_claim_follows_priority_then_creation_order(repository: JobRepository, make_job) -> None:
    by_priority = {
        priority: make_job(title=f"p{priority}", priority=priority) for priority in (5, 1, 3)
    }
    same_priority = make_job(title="p3-late", priority=3)

    claimed = [
        repository.claim_next_job(controls=OPEN_CONTROLS) for _ in range(4)
    ]

    assert [job.job_id for job in claimed if job is not None] == [
        by_priority[1].job_id,
        by_priority[3].job_id,
        same_priority.job_id,
        by_priority[5].job_id,
    ]
    assert all(job is not None and job.status == JobStatus.RUNNING for job in claimed)
    assert all(job is not None and job.started_at is not None for job in claimed)
    assert repository.claim_next_job(controls=OPEN_CONTROLS) is None


def test_claim_respects_pause_and_concurrency(repository: JobRepository, make_job) -> None:
    make_job(title="first")
    make_job(title="second")

    paused = RuntimeControls(pause_all=True, max_concurrency=5)
    assert repository.claim_next_job(controls=paused) is None
    assert repository.count_jobs([JobStatus.QUEUED]) == 2

    single = RuntimeControls(pause_all=False, max_concurrency=1)
    assert repository.claim_next_job(controls=single) is not None
    assert repository.claim_next_job(controls=single) is None
    assert repository.count_jobs([JobStatus.QUEUED]) == 1


def test_claim_enforces_concurrency_even_with_stale_running_count(
    repository: JobRepository,
    make_job,
    monkeypatch,
) -> None:
    make_job(title="first")
    make_job(title="second")
    single = RuntimeControls(pause_all=False, max_concurrency=1)
    assert repository.claim_next_job(controls=single) is not None

    real_count = repository.count_jobs
    stale_reads = [0]

    def _count(statuses) -> int:
        # first read misses the running job, later reads see it
        if stale_reads:
            return stale_reads.pop()
        return real_count(statuses)

    monkeypatch.setattr(repository, "count_jobs", _count)

    assert repository.claim_next_job(controls=single) is None
    assert real_count([JobStatus.RUNNING]) == 1
    assert real_count([JobStatus.QUEUED]) == 1


def test_shell_jobs_end_to_end_lifecycle(repository: JobRepository, make_job) -> None:
    job_a = make_job(title="A", priority=1, engine=Engine.SHELL)
    job_b = make_job(title="B", priority=5, engine=Engine.SHELL)

    claimed = repository.claim_next_job(controls=OPEN_CONTROLS)
    assert claimed is not None
    assert claimed.job_id == job_a.job_id
    assert claimed.status == JobStatus.RUNNING
    assert claimed.started_at is not None

    status = repository.record_outcome(
        job_id=job_a.job_id,
        outcome=EngineOutcome(status=OutcomeStatus.OK, result_text="finished"),
    )
    assert status == JobStatus.DONE
    done = repository.require_job(job_a.job_id)
    assert done.completed_at is not None
    assert done.started_at is not None
    assert done.completed_at >= done.started_at
    assert done.result == "finished"
    assert done.last_error is None

    claimed_next = repository.claim_next_job(controls=OPEN_CONTROLS)
    assert claimed_next is not None
    assert claimed_next.job_id == job_b.job_id


def test_record_outcome_maps_every_outcome_status(repository: JobRepository, make_job) -> None:
    expected = {
        OutcomeStatus.FAILED: JobStatus.FAILED,
        OutcomeStatus.HUMAN_INTERVENTION_REQUESTED: JobStatus.PAUSED_HUMAN,
        OutcomeStatus.QUOTA_EXHAUSTED: JobStatus.PAUSED_QUOTA,
    }
    for outcome_status, job_status in expected.items():
        make_job(title=outcome_status.value)
        job_id = _finish(repository, outcome_status, error="boom")
        job = repository.require_job(job_id)
        assert job.status == job_status
        assert job.completed_at is not None
        assert job.last_error == "boom"


def test_record_outcome_is_noop_when_job_is_not_running(
    repository: JobRepository,
    make_job,
) -> None:
    job = make_job()

    status = repository.record_outcome(
        job_id=job.job_id,
        outcome=EngineOutcome(status=OutcomeStatus.OK),
    )

    assert status is None
    assert repository.require_job(job.job_id).status == JobStatus.QUEUED


def test_concurrent_claims_hand_out_a_job_at_most_once(
    repository: JobRepository,
    make_job,
    db_path: Path,
) -> None:
    job = make_job()
    start_event = threading.Event()
    result_queue: queue.Queue[str | None] = queue.Queue()
    threads = [
        threading.Thread(
            target=_claim_worker,
            args=(str(db_path), start_event, result_queue),
            daemon=True,
        )
        for _ in range(6)
    ]
    for thread in threads:
        thread.start()
    start_event.set()
    for thread in threads:
        thread.join(timeout=10)
        assert thread.is_alive() is False

    results = [result_queue.get() for _ in threads]
    assert results.count(job.job_id) == 1
    assert results.count(None) == len(threads) - 1

    details = repository.get_job_details(job.job_id)
    assert details is not None
    assert [event.event_type for event in details.events].count("claimed") == 1


def test_manual_retry_race_is_safe_across_processes(
    repository: JobRepository,
    make_job,
    db_path: Path,
) -> None:
    make_job()
    job_id = _finish(repository, OutcomeStatus.FAILED, error="seed failure")

    context = multiprocessing.get_context("spawn")
    start_event = context.Event()
    result_queue: multiprocessing.queues.Queue[tuple[str, str]] = context.Queue()
    processes = [
        context.Process(
            target=_run_manual_retry,
            args=(str(db_path), job_id, start_event, result_queue),
        )
        for _ in range(2)
    ]
    for process in processes:
        process.start()
    start_event.set()
    for process in processes:
        process.join(timeout=20)
        assert process.exitcode == 0

    results = sorted(result_queue.get()[0] for _ in processes)
    assert results == ["error", "ok"]

    details = repository.get_job_details(job_id)
    assert details is not None
    assert details.job.status == JobStatus.QUEUED
    assert [event.event_type for event in details.events].count("manual_retry") == 1


def test_manual_retry_resets_run_fields_and_keeps_retry_count(
    repository: JobRepository,
    make_job,
) -> None:
    make_job()
    job_id = _finish(repository, OutcomeStatus.FAILED, error="broken")
    assert repository.requeue_failed_job(job_id=job_id, observed_retry_count=0) == 1
    claimed = repository.claim_next_job(controls=OPEN_CONTROLS)
    assert claimed is not None
    repository.record_outcome(
        job_id=job_id,
        outcome=EngineOutcome(status=OutcomeStatus.QUOTA_EXHAUSTED, error_summary="429"),
    )

    retried = repository.retry_job(job_id)

    assert retried.status == JobStatus.QUEUED
    assert retried.retry_count == 1
    assert retried.started_at is None
    assert retried.completed_at is None
    assert retried.last_error is None
    assert retried.result is None

    with pytest.raises(InvalidJobRequestError, match="retried manually"):
        repository.retry_job(job_id)


def test_manual_retry_can_reset_retry_budget(repository: JobRepository, make_job) -> None:
    make_job()
    job_id = _finish(repository, OutcomeStatus.FAILED)
    repository.requeue_failed_job(job_id=job_id, observed_retry_count=0)
    repository.claim_next_job(controls=OPEN_CONTROLS)
    repository.record_outcome(job_id=job_id, outcome=EngineOutcome(status=OutcomeStatus.FAILED))

    retried = repository.retry_job(job_id, reset_retry_count=True)

    assert retried.retry_count == 0


def test_requeue_is_conditional_on_observed_retry_count(
    repository: JobRepository,
    make_job,
) -> None:
    make_job()
    job_id = _finish(repository, OutcomeStatus.FAILED)

    assert repository.requeue_failed_job(job_id=job_id, observed_retry_count=2) is None
    assert repository.require_job(job_id).status == JobStatus.FAILED

    assert repository.requeue_failed_job(job_id=job_id, observed_retry_count=0) == 1
    assert repository.requeue_failed_job(job_id=job_id, observed_retry_count=0) is None
    assert repository.require_job(job_id).retry_count == 1


def test_cancel_fails_job_with_exhausted_retries(repository: JobRepository, make_job) -> None:
    job = make_job()

    canceled = repository.cancel_job(job.job_id, max_retries=3)

    assert canceled.status == JobStatus.FAILED
    assert canceled.last_error == "Canceled by operator"
    assert canceled.retry_count == 3
    assert canceled.completed_at is not None
    assert repository.list_retryable_failed_jobs(max_retries=3, limit=10) == []


def test_cancel_rejects_running_job(repository: JobRepository, make_job) -> None:
    make_job()
    claimed = repository.claim_next_job(controls=OPEN_CONTROLS)
    assert claimed is not None

    with pytest.raises(InvalidJobRequestError, match="cannot be canceled"):
        repository.cancel_job(claimed.job_id, max_retries=3)


def test_patch_job_validates_transitions_and_fields(repository: JobRepository, make_job) -> None:
    job = make_job()

    with pytest.raises(InvalidJobRequestError, match="Invalid status transition"):
        repository.patch_job(job.job_id, JobPatch(status=JobStatus.DONE))
    with pytest.raises(InvalidJobRequestError, match="No valid fields"):
        repository.patch_job(job.job_id, JobPatch())
    with pytest.raises(InvalidJobRequestError, match="Priority"):
        repository.patch_job(job.job_id, JobPatch(priority=42))
    with pytest.raises(JobNotFoundError):
        repository.patch_job("missing", JobPatch(priority=2))

    patched = repository.patch_job(job.job_id, JobPatch(priority=2))
    assert patched.priority == 2
    assert patched.status == JobStatus.QUEUED

    assigned = repository.patch_job(job.job_id, JobPatch(status=JobStatus.ASSIGNED))
    assert assigned.status == JobStatus.ASSIGNED


def test_review_state_keeps_completion_timestamp(repository: JobRepository, make_job) -> None:
    make_job()
    job_id = _finish(repository, OutcomeStatus.OK)
    completed_at = repository.require_job(job_id).completed_at

    assert repository.mark_reviewing(job_id) is True
    reviewing = repository.require_job(job_id)
    assert reviewing.status == JobStatus.REVIEWING
    assert reviewing.completed_at == completed_at

    assert repository.mark_reviewing(job_id) is False


def test_runtime_controls_fall_back_to_defaults(repository: JobRepository) -> None:
    defaults = RuntimeControls(pause_all=False, max_concurrency=2, qa_pass_threshold=35)
    assert repository.read_runtime_controls(defaults) == defaults

    repository.set_setting(PAUSE_ALL_KEY, {"enabled": True})
    repository.set_setting(MAX_CONCURRENCY_KEY, {"limit": 4})
    repository.set_setting(QA_PASS_THRESHOLD_KEY, 40)

    controls = repository.read_runtime_controls(defaults)
    assert controls == RuntimeControls(pause_all=True, max_concurrency=4, qa_pass_threshold=40)

    repository.set_setting(MAX_CONCURRENCY_KEY, "not-a-dict")
    assert repository.read_runtime_controls(defaults).max_concurrency == 2


def test_open_alert_lookup_uses_metadata_job_id(repository: JobRepository, make_job) -> None:
    job = make_job()
    other = make_job(title="other")
    alert = repository.create_notification(
        NotificationCreate(
            title="Stalled job",
            category=NotificationCategory.ALERT,
            source_type="job",
            source_id=job.job_id,
            metadata={"job_id": job.job_id, "type": "stalled_job"},
        ),
    )

    assert repository.has_open_alert_for_job(job.job_id) is True
    assert repository.has_open_alert_for_job(other.job_id) is False

    assert repository.acknowledge_notification(alert.notification_id) is True
    assert repository.acknowledge_notification(alert.notification_id) is False
    assert repository.has_open_alert_for_job(job.job_id) is False

    acknowledged = repository.list_notifications(status=NotificationStatus.ACKNOWLEDGED)
    assert [item.notification_id for item in acknowledged] == [alert.notification_id]


def test_dismiss_closes_only_open_notifications(repository: JobRepository) -> None:
    note = repository.create_notification(
        NotificationCreate(title="Decide on launch", category=NotificationCategory.DECISION_NEEDED),
    )

    assert repository.dismiss_notification(note.notification_id) is True
    assert repository.dismiss_notification(note.notification_id) is False
    assert repository.acknowledge_notification(note.notification_id) is False
    assert repository.dismiss_notification("missing") is False

    dismissed = repository.list_notifications(status=NotificationStatus.DISMISSED)
    assert [item.notification_id for item in dismissed] == [note.notification_id]
