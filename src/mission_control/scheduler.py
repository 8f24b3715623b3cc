"""Prefect-based scheduler loop.

One tick reads the operator switches, claims and runs work (one job, or
several concurrently when the `parallel_jobs` setting asks for it) and then
runs the auto-dispatch sweep.  Claim itself enforces pause and concurrency,
so overlapping ticks from several schedulers stay safe.
"""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from prefect import flow, task

from mission_control.config import Settings
from mission_control.jobs.dispatch import AutoDispatcher, SweepReport
from mission_control.jobs.engines.registry import EngineRegistry
from mission_control.jobs.models import RuntimeControls
from mission_control.jobs.repository import JobRepository
from mission_control.jobs.worker import JobWorker, RunOutcome, read_controls

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TickResult:
    """What one scheduler tick did."""

    paused: bool = False
    outcomes: list[RunOutcome] = field(default_factory=list)
    sweep: SweepReport | None = None

    @property
    def claimed(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.idle)


@task
def read_controls_step(*, repository: JobRepository, settings: Settings) -> RuntimeControls:
    return read_controls(repository, settings)


@task
def claim_and_run_step(*, worker: JobWorker, parallel_jobs: int) -> list[RunOutcome]:
    """Claim and execute; each claim is independent and CAS-guarded."""

    if parallel_jobs > 1:
        return worker.run_parallel(parallel_jobs)
    return [worker.run_once()]


@task
def sweep_step(*, repository: JobRepository, settings: Settings) -> SweepReport:
    return AutoDispatcher(repository, settings.dispatch).sweep()


@flow(name="scheduler_cycle_flow")
def scheduler_cycle_flow(
    *,
    repository: JobRepository,
    engines: EngineRegistry,
    settings: Settings,
) -> TickResult:
    """Run one scheduler tick."""

    controls = read_controls_step(repository=repository, settings=settings)
    if controls.pause_all:
        logger.info("paused: pause_all flag is set")
        return TickResult(paused=True)

    # the tick sweeps once itself, so jobs run without their own sweep
    worker = JobWorker(
        repository=repository,
        engines=engines,
        settings=replace(settings, runner=replace(settings.runner, sweep_after_job=False)),
    )
    outcomes = claim_and_run_step(worker=worker, parallel_jobs=repository.read_parallel_jobs())
    for outcome in outcomes:
        if outcome.idle:
            logger.info("%s", outcome.message)
        else:
            logger.info("job=%s status=%s", outcome.job_id, outcome.status)
    report = sweep_step(repository=repository, settings=settings)
    return TickResult(outcomes=outcomes, sweep=report)


def run_scheduler(
    *,
    db_path: Path | None = None,
    interval_seconds: float | None = None,
    max_ticks: int | None = None,
) -> int:
    """Tick on a fixed interval until stopped by signal or `max_ticks`; return tick count."""

    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    interval = (
        settings.runner.poll_interval_seconds if interval_seconds is None else interval_seconds
    )
    repository = JobRepository(settings.db_path)
    repository.init_schema()
    engines = EngineRegistry.from_settings(settings)
    stop = _StopFlag()
    ticks = 0
    logger.info("scheduler started: interval=%ss db=%s", interval, settings.db_path)
    try:
        with stop.installed():
            while not stop.requested:
                try:
                    scheduler_cycle_flow(
                        repository=repository,
                        engines=engines,
                        settings=settings,
                    )
                except Exception:  # noqa: BLE001
                    logger.exception("scheduler tick failed")
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                stop.wait(interval)
    finally:
        engines.close()
        repository.close()
    logger.info("scheduler stopped after %d ticks", ticks)
    return ticks


class _StopFlag:
    def __init__(self) -> None:
        self.requested = False

    def wait(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self.requested and time.monotonic() < deadline:
            time.sleep(min(0.5, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def installed(self) -> Iterator[None]:
        def _handler(signum: int, _: object | None) -> None:
            logger.info("Stop requested by signal %s", signum)
            self.requested = True

        previous: dict[int, Any] = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                previous[signum] = signal.signal(signum, _handler)
            except ValueError:
                # Signal handlers can only be installed in main thread.
                break
        try:
            yield
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)
