"""Auto-dispatch sweep: stall alerts, bounded retry, research re-dispatch, agent pause."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from mission_control.config import DispatchSettings
from mission_control.jobs.models import (
    GENERAL_PURPOSE_ENGINE,
    JobCreate,
    JobSource,
    JobType,
    NotificationCategory,
    NotificationCreate,
    NotificationPriority,
)
from mission_control.jobs.repository import JobRepository
from mission_control.storage.common import utc_now

logger = logging.getLogger(__name__)

RESEARCH_JOB_PRIORITY = 7


@dataclass(slots=True)
class SweepReport:
    """Per-rule counters of one sweep."""

    stall_alerts: int = 0
    retried: int = 0
    research_dispatched: int = 0
    agents_paused: int = 0
    failed_rules: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "stall_alerts": self.stall_alerts,
            "retried": self.retried,
            "research_dispatched": self.research_dispatched,
            "agents_paused": self.agents_paused,
            "failed_rules": list(self.failed_rules),
        }


class AutoDispatcher:
    """Runs the four self-healing rules; each rule is isolated and dedup-safe."""

    def __init__(
        self,
        repository: JobRepository,
        settings: DispatchSettings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.clock = clock

    def sweep(self) -> SweepReport:
        """Run every rule once. Never raises; rule errors are logged and reported."""

        report = SweepReport()
        now = self.clock()
        rules: list[tuple[str, Callable[[datetime, SweepReport], None]]] = [
            ("stall_detection", self._alert_stalled_jobs),
            ("auto_retry", self._retry_failed_jobs),
            ("research_redispatch", self._dispatch_stale_research),
            ("agent_auto_pause", self._pause_failing_agents),
        ]
        for name, rule in rules:
            try:
                rule(now, report)
            except Exception:  # noqa: BLE001
                logger.exception("Auto-dispatch rule %s failed", name)
                report.failed_rules.append(name)
        logger.info(
            "Auto-dispatch sweep: stalls=%d retried=%d research=%d paused=%d failed=%s",
            report.stall_alerts,
            report.retried,
            report.research_dispatched,
            report.agents_paused,
            ",".join(report.failed_rules) or "-",
        )
        return report

    def _alert_stalled_jobs(self, now: datetime, report: SweepReport) -> None:
        stalled = self.repository.find_stalled_jobs(
            now=now,
            stall_timeout_seconds=self.settings.stall_timeout_seconds,
        )
        for job in stalled:
            if job.started_at is None or self.repository.has_open_alert_for_job(job.job_id):
                continue
            elapsed_minutes = round((now - job.started_at).total_seconds() / 60)
            self.repository.create_notification(
                NotificationCreate(
                    title=f"Stalled job: {job.title}",
                    body=f"Running for {elapsed_minutes} minutes. May need investigation.",
                    category=NotificationCategory.ALERT,
                    priority=NotificationPriority.HIGH,
                    source_type="job",
                    source_id=job.job_id,
                    metadata={"job_id": job.job_id, "type": "stalled_job"},
                ),
            )
            report.stall_alerts += 1

    def _retry_failed_jobs(self, _now: datetime, report: SweepReport) -> None:
        max_retries = self.settings.max_retries
        candidates = self.repository.list_retryable_failed_jobs(
            max_retries=max_retries,
            limit=self.settings.retry_batch_size,
        )
        for job in candidates:
            attempt = self.repository.requeue_failed_job(
                job_id=job.job_id,
                observed_retry_count=job.retry_count,
            )
            if attempt is None:
                logger.info("Auto-retry skipped for job %s: state changed", job.job_id)
                continue
            self.repository.create_notification(
                NotificationCreate(
                    title=f"Auto-retry: {job.title} (attempt {attempt}/{max_retries})",
                    body="Job failed and was automatically requeued.",
                    category=NotificationCategory.INFO,
                    priority=NotificationPriority.NORMAL,
                    source_type="job",
                    source_id=job.job_id,
                    metadata={"job_id": job.job_id, "type": "auto_retry", "retry_count": attempt},
                ),
            )
            report.retried += 1

    def _dispatch_stale_research(self, now: datetime, report: SweepReport) -> None:
        items = self.repository.list_stale_research_items(
            captured_before=now - timedelta(seconds=self.settings.research_stale_seconds),
            limit=self.settings.research_batch_size,
        )
        for item in items:
            if self.repository.has_active_job_mentioning(item.item_id):
                continue
            label = item.title or item.url or "Research item"
            self.repository.create_job(
                JobCreate(
                    title=f"Scout: {label} [research:{item.item_id}]",
                    prompt_text=(
                        "Assess this research item for newsletter relevance. "
                        f"Research item ID: {item.item_id}. Title: {item.title}. "
                        f"URL: {item.url or 'N/A'}. Content type: {item.content_type}."
                    ),
                    engine=GENERAL_PURPOSE_ENGINE,
                    repo_path=self.settings.research_repo_path,
                    output_dir=self.settings.research_output_dir,
                    priority=RESEARCH_JOB_PRIORITY,
                    job_type=JobType.TASK,
                    source=JobSource.AUTO_DISPATCH,
                ),
            )
            report.research_dispatched += 1

    def _pause_failing_agents(self, _now: datetime, report: SweepReport) -> None:
        agents = self.repository.list_agents_over_failure_threshold(
            self.settings.max_consecutive_failures,
        )
        for agent in agents:
            if not self.repository.pause_agent(agent.agent_id):
                continue
            self.repository.create_notification(
                NotificationCreate(
                    title=f"Agent paused: {agent.name}",
                    body=(
                        f"{agent.consecutive_failures} consecutive failures. "
                        "Paused automatically. Review and reactivate when ready."
                    ),
                    category=NotificationCategory.ALERT,
                    priority=NotificationPriority.HIGH,
                    source_type="agent",
                    source_id=agent.agent_id,
                    metadata={
                        "agent_id": agent.agent_id,
                        "type": "agent_paused",
                        "failures": agent.consecutive_failures,
                    },
                ),
            )
            report.agents_paused += 1
