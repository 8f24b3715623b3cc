from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from mission_control.main import mission_control

pytestmark = [
    allure.epic("Interfaces"),
    allure.feature("CLI"),
]


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.setenv("MISSION_CONTROL_POLL_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("MISSION_CONTROL_SWEEP_AFTER_JOB", "false")
    monkeypatch.delenv("MISSION_CONTROL_DB_PATH", raising=False)
    return tmp_path / "cli.db"


def _invoke(*args: str) -> str:
    result = CliRunner().invoke(mission_control, list(args))
    assert result.exit_code == 0, result.output
    return result.stdout


def _create_job(db_path: Path, tmp_path: Path, *extra: str) -> str:
    output = _invoke(
        "jobs",
        "create",
        "--db-path",
        str(db_path),
        "--repo-path",
        str(tmp_path),
        "--output-dir",
        str(tmp_path / "out"),
        *extra,
    )
    match = re.search(r"Job queued: (\S+)", output)
    assert match is not None
    return match.group(1)


def test_version() -> None:
    result = CliRunner().invoke(mission_control, ["--version"])

    assert result.exit_code == 0
    assert "0.1.0" in result.output


def test_create_run_and_inspect_shell_job(cli_env: Path, tmp_path: Path) -> None:
    job_id = _create_job(
        cli_env,
        tmp_path,
        "--title",
        "Say hello",
        "--prompt",
        "echo '{\"ok\": true, \"result\": \"hello\"}'",
        "--engine",
        "shell",
        "--priority",
        "2",
    )

    listed = _invoke("jobs", "list", "--db-path", str(cli_env))
    assert "Jobs: 1" in listed
    assert f"{job_id} status=queued priority=2 engine=shell" in listed

    run = _invoke("jobs", "run-once", "--db-path", str(cli_env))
    payload = json.loads(run.strip().removeprefix("Run: "))
    assert payload["job_id"] == job_id
    assert payload["status"] == "done"
    assert payload["ok"] is True

    inspect = _invoke("jobs", "inspect", "--db-path", str(cli_env), "--job-id", job_id)
    assert "Status: done" in inspect
    assert "claimed queued -> running" in inspect
    assert "finished running -> done" in inspect

    idle = _invoke("jobs", "run-once", "--db-path", str(cli_env))
    assert idle.strip() == "Run: no queued jobs"


def test_worker_loop_summary(cli_env: Path, tmp_path: Path) -> None:
    for title in ("one", "two"):
        _create_job(
            cli_env,
            tmp_path,
            "--title",
            title,
            "--prompt",
            "echo '{\"ok\": true}'",
            "--engine",
            "shell",
        )
    _create_job(
        cli_env,
        tmp_path,
        "--title",
        "three",
        "--prompt",
        "exit 3",
        "--engine",
        "shell",
        "--priority",
        "9",
    )

    output = _invoke("jobs", "worker", "--db-path", str(cli_env))

    assert output.strip() == (
        "Worker summary: processed=3 succeeded=2 failed=1 paused=0 idle_polls=1"
    )


def test_cancel_and_retry(cli_env: Path, tmp_path: Path) -> None:
    job_id = _create_job(cli_env, tmp_path, "--title", "Later", "--prompt", "noop")

    canceled = _invoke("jobs", "cancel", "--db-path", str(cli_env), "--job-id", job_id)
    kept = _invoke("jobs", "retry", "--db-path", str(cli_env), "--job-id", job_id)
    _invoke("jobs", "cancel", "--db-path", str(cli_env), "--job-id", job_id)
    reset = _invoke(
        "jobs",
        "retry",
        "--db-path",
        str(cli_env),
        "--job-id",
        job_id,
        "--reset-retry-count",
    )

    assert canceled.strip() == f"Job canceled: {job_id}"
    assert kept.strip() == f"Job re-queued: {job_id} retries=3"
    assert reset.strip() == f"Job re-queued: {job_id} retries=0"


def test_invalid_operations_exit_with_error(cli_env: Path, tmp_path: Path) -> None:
    job_id = _create_job(cli_env, tmp_path, "--title", "Queued", "--prompt", "noop")
    runner = CliRunner()

    retry = runner.invoke(
        mission_control,
        ["jobs", "retry", "--db-path", str(cli_env), "--job-id", job_id],
    )
    missing = runner.invoke(
        mission_control,
        ["jobs", "cancel", "--db-path", str(cli_env), "--job-id", "nope"],
    )
    bad_priority = runner.invoke(
        mission_control,
        ["jobs", "patch", "--db-path", str(cli_env), "--job-id", job_id, "--priority", "0"],
    )

    assert retry.exit_code == 1
    assert missing.exit_code == 1
    assert "Job not found: nope" in missing.output
    assert bad_priority.exit_code == 1


def test_patch_job(cli_env: Path, tmp_path: Path) -> None:
    job_id = _create_job(cli_env, tmp_path, "--title", "Tweak", "--prompt", "noop")

    output = _invoke(
        "jobs",
        "patch",
        "--db-path",
        str(cli_env),
        "--job-id",
        job_id,
        "--priority",
        "1",
        "--status",
        "assigned",
    )

    assert output.strip() == f"Job updated: {job_id} status=assigned priority=1"


def test_agents_route_and_review(cli_env: Path, tmp_path: Path) -> None:
    created = _invoke(
        "agents",
        "create",
        "--db-path",
        str(cli_env),
        "--name",
        "writer",
        "--role",
        "creative",
        "--cost-tier",
        "low",
        "--engine",
        "shell",
    )
    agent_id = re.search(r"Agent created: (\S+)", created).group(1)  # type: ignore[union-attr]
    job_id = _create_job(
        cli_env,
        tmp_path,
        "--title",
        "Draft post",
        "--prompt",
        "echo '{\"ok\": true, \"result\": \"draft\"}'",
        "--engine",
        "shell",
    )

    routed = _invoke("jobs", "route", "--db-path", str(cli_env), "--job-id", job_id)
    assert f"Job {job_id} routed to writer" in routed

    listed = _invoke("agents", "list", "--db-path", str(cli_env))
    assert "Agents: 1" in listed
    assert "load=0" in listed

    run = _invoke("jobs", "run-once", "--db-path", str(cli_env))
    assert json.loads(run.strip().removeprefix("Run: "))["status"] == "done"

    scored = _invoke(
        "review",
        "score",
        "--db-path",
        str(cli_env),
        "--job-id",
        job_id,
        "--completeness",
        "8",
        "--accuracy",
        "8",
        "--actionability",
        "8",
        "--relevance",
        "8",
        "--evidence",
        "8",
    )
    assert re.search(r"Review \S+: passed total=40/50 threshold=35", scored)

    resumed = _invoke("agents", "resume", "--db-path", str(cli_env), "--agent-id", agent_id)
    assert resumed.strip() == f"Agent resumed: {agent_id} name=writer"


def test_settings_commands(cli_env: Path) -> None:
    db = str(cli_env)

    assert "Pause all: on" in _invoke("settings", "set-pause", "--db-path", db, "on")
    assert "Max concurrency: 4" in _invoke("settings", "set-concurrency", "--db-path", db, "4")
    assert "QA pass threshold: 40" in _invoke("settings", "set-threshold", "--db-path", db, "40")
    assert "Parallel jobs: 2" in _invoke("settings", "set-parallel", "--db-path", db, "2")

    shown = _invoke("settings", "show", "--db-path", db).splitlines()
    assert shown == [
        "Pause all: on",
        "Max concurrency: 4",
        "QA pass threshold: 40",
        "Parallel jobs: 2",
        "Running: 0",
        "Queued: 0",
    ]

    too_high = CliRunner().invoke(
        mission_control,
        ["settings", "set-threshold", "--db-path", db, "60"],
    )
    assert too_high.exit_code == 2


def test_dispatch_sweep(cli_env: Path) -> None:
    output = _invoke("dispatch", "sweep", "--db-path", str(cli_env))

    assert output.strip() == (
        "Sweep: stall_alerts=0 retried=0 research_dispatched=0 agents_paused=0 failed_rules=-"
    )


def test_notifications_list_ack_and_dismiss(cli_env: Path, tmp_path: Path) -> None:
    _create_job(cli_env, tmp_path, "--title", "Broken", "--prompt", "exit 3", "--engine", "shell")
    _invoke("jobs", "run-once", "--db-path", str(cli_env))

    listed = _invoke("notifications", "list", "--db-path", str(cli_env), "--category", "job_failed")
    assert "Notifications: 1" in listed
    match = re.search(r"^  (\S+) status=pending category=job_failed priority=high", listed, re.M)
    assert match is not None
    notification_id = match.group(1)

    acked = _invoke(
        "notifications",
        "ack",
        "--db-path",
        str(cli_env),
        "--notification-id",
        notification_id,
    )
    again = CliRunner().invoke(
        mission_control,
        [
            "notifications",
            "dismiss",
            "--db-path",
            str(cli_env),
            "--notification-id",
            notification_id,
        ],
    )

    assert acked.strip() == f"Notification acknowledged: {notification_id}"
    assert again.exit_code == 1
    pending = _invoke("notifications", "list", "--db-path", str(cli_env), "--status", "pending")
    assert pending.strip() == "Notifications: 0"
