"""Subprocess engine that runs a job's prompt as a shell script."""

from __future__ import annotations

import logging
import os
import subprocess
import time
from pathlib import Path
from typing import IO

from mission_control.jobs.engines.base import EngineError, EngineRequest
from mission_control.jobs.lifecycle import RunnerOutput, parse_runner_output
from mission_control.jobs.models import EngineOutcome

logger = logging.getLogger(__name__)

SHELL_PATH = "/bin/sh"
TIMEOUT_EXIT_CODE = 124
SHUTDOWN_EXIT_CODE = 143
POLL_SECONDS = 0.1


class ShellEngine:
    """Run `/bin/sh -c <prompt>` in the job's working directory.

    stdout/stderr are captured to files in `<output_dir>/<job_id>/`, and the
    outcome is taken from the last JSON line printed on stdout.
    """

    def __init__(self, *, shell_path: str = SHELL_PATH) -> None:
        self.shell_path = shell_path

    def execute(self, request: EngineRequest) -> EngineOutcome:
        workdir = request.job_output_dir
        workdir.mkdir(parents=True, exist_ok=True)
        stdout_path = workdir / "stdout.log"
        stderr_path = workdir / "stderr.log"

        if not request.working_directory.is_dir():
            raise EngineError(
                f"Working directory does not exist: {request.working_directory}",
                transient=False,
            )

        env = os.environ.copy()
        env["MISSION_CONTROL_JOB_ID"] = request.job_id
        env["MISSION_CONTROL_OUTPUT_DIR"] = str(workdir)

        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code, stop_reason = _run_subprocess(
                    run_args=[self.shell_path, "-c", request.prompt],
                    cwd=request.working_directory,
                    env=env,
                    timeout_seconds=request.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    shutdown_requested=request.shutdown_requested,
                )
        except FileNotFoundError as error:
            raise EngineError(f"Shell not found: {self.shell_path}", transient=False) from error
        except OSError as error:
            raise EngineError(f"Shell failed to start: {error}", transient=True) from error

        logger.debug("Shell job %s exited with %s", request.job_id, exit_code)
        return parse_runner_output(
            RunnerOutput(
                stdout=_read_text(stdout_path),
                stderr=_read_text(stderr_path),
                exit_code=exit_code,
                timed_out=stop_reason == "timeout",
                interrupted=stop_reason == "shutdown",
                timeout_seconds=request.timeout_seconds,
                log_reference=str(stdout_path),
            ),
        )


def _run_subprocess(  # noqa: PLR0913
    *,
    run_args: list[str],
    cwd: Path,
    env: dict[str, str],
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    shutdown_requested,
) -> tuple[int, str | None]:
    """Return the exit code and why the process was stopped early, if it was."""

    process = subprocess.Popen(  # noqa: S603
        run_args,
        cwd=cwd,
        env=env,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, None

        if time.monotonic() - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, "timeout"

        if shutdown_requested is not None and shutdown_requested():
            _terminate_process(process)
            return SHUTDOWN_EXIT_CODE, "shutdown"

        time.sleep(POLL_SECONDS)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _read_text(path: Path) -> str:
    if not path.exists():
        return ""
    return path.read_text("utf-8", errors="replace")
