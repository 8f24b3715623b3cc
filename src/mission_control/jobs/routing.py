"""Agent routing: pick the best-fit agent for a job."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

from mission_control.jobs.models import (
    COST_TIER_RANK,
    GENERAL_PURPOSE_ENGINE,
    AgentRole,
    AgentView,
    CostTier,
    Engine,
    JobType,
    JobView,
    RouteResult,
)
from mission_control.jobs.repository import JobRepository

logger = logging.getLogger(__name__)

DEPARTMENT_MATCH_BONUS = 10
COST_WEIGHT = 2
LOAD_PENALTY = 3
MAX_COST_RANK = 3

KEYWORD_ROUTES: tuple[tuple[tuple[str, ...], AgentRole, str], ...] = (
    (
        ("budget", "cashflow", "revenue", "roi", "finance", "cost", "projection", "reconcil"),
        AgentRole.ANALYST,
        "Finance keyword match",
    ),
    (
        ("security", "audit", "vulnerab", "monitor", "breach", "rls", "permission"),
        AgentRole.OPS,
        "Security keyword match",
    ),
)


def select_agent(
    job: JobView,
    agents: Sequence[AgentView],
    loads: Mapping[str, int],
    preferred_department_id: str | None = None,
) -> RouteResult | None:
    """Pure routing decision over a snapshot of agents and their current load.

    `agents` is expected in stable order (quality desc, name asc); ties in the
    general score keep that order. Ineligible agents are ignored.
    """

    eligible = [agent for agent in agents if agent.eligible]
    if not eligible:
        return None

    if job.job_type == JobType.REVIEW:
        match = _first_with_role(eligible, AgentRole.QA)
        if match is not None:
            return RouteResult(match.agent_id, match.name, "QA review assignment")

    if job.job_type in {JobType.DECOMPOSITION, JobType.INTEGRATION}:
        match = _first_with_role(eligible, AgentRole.ORCHESTRATOR)
        if match is not None:
            return RouteResult(match.agent_id, match.name, "Orchestrator assignment")

    title = job.title.lower()
    for keywords, role, reason in KEYWORD_ROUTES:
        if any(keyword in title for keyword in keywords):
            match = _first_with_role(eligible, role)
            if match is not None:
                return RouteResult(match.agent_id, match.name, reason)

    best: AgentView | None = None
    best_score = 0.0
    for agent in eligible:
        if agent.role == AgentRole.ORCHESTRATOR.value:
            continue
        if not is_engine_compatible(job.engine, agent.default_engine):
            continue
        score = score_agent(agent, loads.get(agent.agent_id, 0), preferred_department_id)
        if best is None or score > best_score:
            best = agent
            best_score = score

    if best is None:
        return None
    department_match = (
        preferred_department_id is not None and best.department_id == preferred_department_id
    )
    return RouteResult(
        agent_id=best.agent_id,
        agent_name=best.name,
        reason=(
            f"Best match: dept={'yes' if department_match else 'no'}, "
            f"cost={best.cost_tier}, quality={best.quality_score_avg}, "
            f"load={loads.get(best.agent_id, 0)}"
        ),
    )


def score_agent(agent: AgentView, load: int, preferred_department_id: str | None) -> float:
    """General routing score; higher is better."""

    score = 0.0
    if preferred_department_id is not None and agent.department_id == preferred_department_id:
        score += DEPARTMENT_MATCH_BONUS
    rank = COST_TIER_RANK.get(agent.cost_tier, COST_TIER_RANK[CostTier.MEDIUM.value])
    score += (MAX_COST_RANK - rank) * COST_WEIGHT
    score += agent.quality_score_avg
    score -= LOAD_PENALTY * load
    return score


def is_engine_compatible(job_engine: Engine, agent_engine: str) -> bool:
    if job_engine == Engine.SHELL:
        return agent_engine == Engine.SHELL.value
    return agent_engine in {job_engine.value, GENERAL_PURPOSE_ENGINE.value}


def route_job(repository: JobRepository, job_id: str) -> RouteResult | None:
    """Load the current snapshot and route one job; performs no writes."""

    job = repository.get_job(job_id)
    if job is None:
        return None
    agents = repository.list_agents()
    loads = repository.count_active_jobs_by_agent()
    department = repository.preferred_department_for_project(job.project_id)
    route = select_agent(job, agents, loads, department)
    if route is None:
        logger.info("No eligible agent for job_id=%s engine=%s", job_id, job.engine.value)
    return route


def _first_with_role(agents: Sequence[AgentView], role: AgentRole) -> AgentView | None:
    for agent in agents:
        if agent.role == role.value:
            return agent
    return None
