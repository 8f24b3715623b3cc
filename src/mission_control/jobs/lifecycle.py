"""Job lifecycle transitions and engine outcome mapping."""

from __future__ import annotations

import json
from dataclasses import dataclass

from mission_control.jobs.models import (
    EngineOutcome,
    InvalidJobRequestError,
    JobStatus,
    OutcomeStatus,
)

HUMAN_INTERVENTION_EXIT_CODE = 20
QUOTA_EXHAUSTED_EXIT_CODE = 21
RAW_EXCERPT_CHARS = 500

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.ASSIGNED, JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.ASSIGNED: frozenset({JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset(
        {
            JobStatus.DONE,
            JobStatus.FAILED,
            JobStatus.PAUSED_HUMAN,
            JobStatus.PAUSED_QUOTA,
        },
    ),
    JobStatus.DONE: frozenset({JobStatus.REVIEWING, JobStatus.REJECTED}),
    JobStatus.REVIEWING: frozenset({JobStatus.DONE, JobStatus.REJECTED}),
    JobStatus.FAILED: frozenset({JobStatus.QUEUED}),
    JobStatus.REJECTED: frozenset(),
    JobStatus.PAUSED_HUMAN: frozenset({JobStatus.QUEUED}),
    JobStatus.PAUSED_QUOTA: frozenset({JobStatus.QUEUED}),
}

_OUTCOME_TO_STATUS: dict[OutcomeStatus, JobStatus] = {
    OutcomeStatus.OK: JobStatus.DONE,
    OutcomeStatus.FAILED: JobStatus.FAILED,
    OutcomeStatus.HUMAN_INTERVENTION_REQUESTED: JobStatus.PAUSED_HUMAN,
    OutcomeStatus.QUOTA_EXHAUSTED: JobStatus.PAUSED_QUOTA,
}


@dataclass(slots=True)
class RunnerOutput:
    """Raw process output captured by an engine before parsing."""

    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False
    interrupted: bool = False
    timeout_seconds: int | None = None
    log_reference: str | None = None


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: JobStatus, target: JobStatus) -> None:
    """Raise when an administrative status change violates the state machine."""

    if current == target:
        return
    if not can_transition(current, target):
        raise InvalidJobRequestError(
            f"Invalid status transition: {current.value} -> {target.value}",
        )


def status_for_outcome(outcome: EngineOutcome) -> JobStatus:
    """Map a normalized engine outcome to the job's next status."""

    return _OUTCOME_TO_STATUS[outcome.status]


def parse_runner_output(output: RunnerOutput) -> EngineOutcome:
    """Build a normalized outcome from raw runner stdout/stderr/exit code.

    The structured outcome is the JSON object on the last non-empty stdout
    line. Debug chatter before it is tolerated by scanning upward for the
    nearest `{...}` line. Anything unparseable becomes a failed outcome that
    carries a bounded excerpt of the raw output.
    """

    if output.interrupted:
        return EngineOutcome(
            status=OutcomeStatus.FAILED,
            log_reference=output.log_reference,
            error_summary=(
                f"Runner stopped by shutdown request. {_excerpt(output.stdout or output.stderr)}"
            ).strip(),
            raw={"ok": False, "error": "shutdown", "exit_code": output.exit_code},
        )

    if output.timed_out:
        return EngineOutcome(
            status=OutcomeStatus.FAILED,
            log_reference=output.log_reference,
            error_summary=(
                f"Runner timed out after {output.timeout_seconds}s. "
                f"{_excerpt(output.stdout or output.stderr)}"
            ).strip(),
            raw={"ok": False, "error": "timeout", "exit_code": output.exit_code},
        )

    payload = _parse_last_json_line(output.stdout)
    if payload is None:
        raw_excerpt = _excerpt(output.stdout.strip())
        stderr_excerpt = _excerpt(output.stderr.strip())
        return EngineOutcome(
            status=OutcomeStatus.FAILED,
            log_reference=output.log_reference,
            error_summary=(
                f"Runner output could not be parsed (exit={output.exit_code}): "
                f"{raw_excerpt or stderr_excerpt or '<empty output>'}"
            ),
            raw={
                "ok": False,
                "error": "parse-failed",
                "raw": raw_excerpt,
                "stderr": stderr_excerpt,
                "exit_code": output.exit_code,
            },
        )

    status = _resolve_outcome_status(payload=payload, exit_code=output.exit_code)
    result_text = payload.get("result")
    if result_text is not None and not isinstance(result_text, str):
        result_text = json.dumps(result_text, ensure_ascii=False)

    error_summary: str | None = None
    if status != OutcomeStatus.OK:
        error = payload.get("error")
        if isinstance(error, str) and error.strip():
            error_summary = error.strip()
        elif output.stderr.strip():
            error_summary = _excerpt(output.stderr.strip())
        else:
            error_summary = f"exit={output.exit_code}"

    log_reference = payload.get("log_path")
    return EngineOutcome(
        status=status,
        result_text=result_text,
        log_reference=log_reference if isinstance(log_reference, str) else output.log_reference,
        error_summary=error_summary,
        raw=payload,
    )


def _resolve_outcome_status(*, payload: dict[str, object], exit_code: int) -> OutcomeStatus:
    explicit = payload.get("status")
    if isinstance(explicit, str):
        try:
            return OutcomeStatus(explicit.strip().lower())
        except ValueError:
            pass
    if payload.get("ok") is True:
        return OutcomeStatus.OK
    if exit_code == HUMAN_INTERVENTION_EXIT_CODE:
        return OutcomeStatus.HUMAN_INTERVENTION_REQUESTED
    if exit_code == QUOTA_EXHAUSTED_EXIT_CODE:
        return OutcomeStatus.QUOTA_EXHAUSTED
    return OutcomeStatus.FAILED


def _parse_last_json_line(stdout: str) -> dict[str, object] | None:
    lines = [line.strip() for line in stdout.splitlines() if line.strip()]
    if not lines:
        return None

    last = _try_load_dict(lines[-1])
    if last is not None:
        return last

    for line in reversed(lines[:-1]):
        if line.startswith("{") and line.endswith("}"):
            candidate = _try_load_dict(line)
            if candidate is not None:
                return candidate
    return None


def _try_load_dict(text: str) -> dict[str, object] | None:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def _excerpt(text: str) -> str:
    return text[:RAW_EXCERPT_CHARS]
