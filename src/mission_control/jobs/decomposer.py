"""Split a job into sub-task jobs owned by suggested agents."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

from mission_control.jobs.models import (
    GENERAL_PURPOSE_ENGINE,
    Engine,
    InvalidJobRequestError,
    JobCreate,
    JobNotFoundError,
    JobPatch,
    JobSource,
    JobType,
    SubTaskSpec,
)
from mission_control.jobs.repository import JobRepository

logger = logging.getLogger(__name__)

_SUBTASK_ARRAY_RE = re.compile(r"\[.*\]", re.DOTALL)


@dataclass(slots=True)
class DecompositionResult:
    parent_job_id: str
    job_ids: list[str]
    unresolved_agents: list[str]


def decompose_job(
    repository: JobRepository,
    parent_job_id: str,
    sub_tasks: list[SubTaskSpec],
) -> DecompositionResult:
    """Create one queued child job per sub-task and mark the parent as a decomposition."""

    parent = repository.get_job(parent_job_id)
    if parent is None:
        raise JobNotFoundError(f"Parent job not found: {parent_job_id}")
    if parent.parent_job_id is not None:
        raise InvalidJobRequestError(
            f"Job {parent_job_id} is already a sub-task; nested decomposition is not allowed.",
        )
    if not sub_tasks:
        raise InvalidJobRequestError("Decomposition requires at least one sub-task.")

    job_ids: list[str] = []
    unresolved: list[str] = []
    for task in sub_tasks:
        agent = repository.get_agent_by_name(task.suggested_agent)
        if agent is None:
            unresolved.append(task.suggested_agent)
        child = repository.create_job(
            JobCreate(
                title=task.title,
                prompt_text=task.prompt_text,
                engine=task.engine,
                repo_path=parent.repo_path,
                output_dir=parent.output_dir,
                priority=task.priority,
                parent_job_id=parent.job_id,
                project_id=parent.project_id,
                agent_id=agent.agent_id if agent is not None else None,
                job_type=JobType.TASK,
                source=JobSource.ORCHESTRATOR,
            ),
        )
        job_ids.append(child.job_id)

    if parent.job_type != JobType.DECOMPOSITION:
        repository.patch_job(parent.job_id, JobPatch(job_type=JobType.DECOMPOSITION))

    logger.info(
        "decomposition-created job=%s sub_tasks=%d unresolved_agents=%s",
        parent.job_id,
        len(job_ids),
        ",".join(unresolved) or "-",
    )
    return DecompositionResult(
        parent_job_id=parent.job_id,
        job_ids=job_ids,
        unresolved_agents=unresolved,
    )


def parse_sub_tasks(text: str | None) -> list[SubTaskSpec]:
    """Extract the sub-task array from an orchestrator's decomposition output.

    Entries without a title or suggested agent are skipped; priority falls
    back to 5 and engine to the general-purpose LLM.
    """

    match = _SUBTASK_ARRAY_RE.search(text or "")
    if match is None:
        return []
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError:
        return []
    if not isinstance(payload, list):
        return []

    specs: list[SubTaskSpec] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        title = item.get("title")
        agent_name = item.get("suggested_agent")
        if not title or not agent_name:
            continue
        prompt = item.get("prompt_text") or title
        specs.append(
            SubTaskSpec(
                title=str(title),
                suggested_agent=str(agent_name),
                prompt_text=str(prompt),
                priority=_coerce_priority(item.get("priority")),
                engine=_coerce_engine(item.get("estimated_engine", item.get("engine"))),
            ),
        )
    return specs


def _coerce_priority(value: object) -> int:
    if isinstance(value, bool):
        return 5
    try:
        priority = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 5
    if priority == 0:
        return 5
    return max(1, min(10, priority))


def _coerce_engine(value: object) -> Engine:
    if isinstance(value, str):
        try:
            return Engine(value.strip().lower())
        except ValueError:
            pass
    return GENERAL_PURPOSE_ENGINE
