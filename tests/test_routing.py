from __future__ import annotations

import allure

from mission_control.jobs.models import (
    AgentRole,
    CostTier,
    Engine,
    JobType,
)
from mission_control.jobs.repository import JobRepository
from mission_control.jobs.routing import is_engine_compatible, route_job, select_agent

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Agent Routing"),
]


def test_review_jobs_go_to_first_qa_agent(repository: JobRepository, make_job, make_agent) -> None:
    make_agent("coder", AgentRole.CODER)
    qa = make_agent("checker", AgentRole.QA)
    job = make_job(title="Review: homepage copy", job_type=JobType.REVIEW)

    route = select_agent(job, repository.list_agents(), {})

    assert route is not None
    assert route.agent_id == qa.agent_id
    assert route.reason == "QA review assignment"


def test_integration_jobs_go_to_orchestrator(
    repository: JobRepository,
    make_job,
    make_agent,
) -> None:
    lead = make_agent("lead", AgentRole.ORCHESTRATOR)
    make_agent("coder", AgentRole.CODER)
    job = make_job(title="Integration: merge", job_type=JobType.INTEGRATION)

    route = select_agent(job, repository.list_agents(), {})

    assert route is not None
    assert route.agent_id == lead.agent_id


def test_keywords_route_by_role(repository: JobRepository, make_job, make_agent) -> None:
    analyst = make_agent("numbers", AgentRole.ANALYST)
    ops = make_agent("guard", AgentRole.OPS)
    make_agent("coder", AgentRole.CODER)
    agents = repository.list_agents()

    finance = select_agent(make_job(title="Q3 Revenue projection"), agents, {})
    security = select_agent(make_job(title="Quarterly security audit"), agents, {})

    assert finance is not None and finance.agent_id == analyst.agent_id
    assert finance.reason == "Finance keyword match"
    assert security is not None and security.agent_id == ops.agent_id


def test_keyword_without_matching_role_falls_through(
    repository: JobRepository,
    make_job,
    make_agent,
) -> None:
    coder = make_agent("coder", AgentRole.CODER)
    job = make_job(title="Budget dashboard")

    route = select_agent(job, repository.list_agents(), {})

    assert route is not None
    assert route.agent_id == coder.agent_id
    assert route.reason.startswith("Best match: dept=no")


def test_cheaper_agent_wins_until_loaded(repository: JobRepository, make_job, make_agent) -> None:
    pricey = make_agent("alpha", AgentRole.CODER, cost_tier=CostTier.HIGH)
    cheap = make_agent("beta", AgentRole.CODER, cost_tier=CostTier.LOW)
    agents = repository.list_agents()
    job = make_job(title="Write landing page")

    idle = select_agent(job, agents, {})
    busy = select_agent(job, agents, {cheap.agent_id: 2})

    assert idle is not None and idle.agent_id == cheap.agent_id
    assert busy is not None and busy.agent_id == pricey.agent_id


def test_free_tier_ranks_cheapest(repository: JobRepository, make_job, make_agent) -> None:
    make_agent("low", AgentRole.CODER, cost_tier=CostTier.LOW)
    free = make_agent("zero", AgentRole.CODER, cost_tier=CostTier.FREE)

    route = select_agent(make_job(title="Tidy docs"), repository.list_agents(), {})

    assert route is not None and route.agent_id == free.agent_id


def test_equal_scores_keep_listing_order(repository: JobRepository, make_job, make_agent) -> None:
    first = make_agent("anna", AgentRole.CODER)
    make_agent("bart", AgentRole.CODER)

    route = select_agent(make_job(title="Tidy docs"), repository.list_agents(), {})

    assert route is not None and route.agent_id == first.agent_id


def test_ineligible_and_orchestrator_agents_are_skipped(
    repository: JobRepository,
    make_job,
    make_agent,
) -> None:
    make_agent("lead", AgentRole.ORCHESTRATOR)
    make_agent("sleepy", AgentRole.CODER, active=False)
    paused = make_agent("paused", AgentRole.CODER)
    repository.pause_agent(paused.agent_id)

    route = select_agent(make_job(title="Tidy docs"), repository.list_agents(), {})

    assert route is None


def test_shell_jobs_need_shell_agents(repository: JobRepository, make_job, make_agent) -> None:
    make_agent("writer", AgentRole.CODER)
    job = make_job(title="Rotate logs", engine=Engine.SHELL)

    assert select_agent(job, repository.list_agents(), {}) is None

    runner = make_agent("runner", AgentRole.OPS, default_engine=Engine.SHELL)
    route = select_agent(job, repository.list_agents(), {})
    assert route is not None and route.agent_id == runner.agent_id


def test_engine_compatibility() -> None:
    assert is_engine_compatible(Engine.GEMINI, Engine.GEMINI.value) is True
    assert is_engine_compatible(Engine.GEMINI, Engine.CLAUDE.value) is True
    assert is_engine_compatible(Engine.GEMINI, Engine.OPENAI.value) is False
    assert is_engine_compatible(Engine.SHELL, Engine.CLAUDE.value) is False


def test_route_job_prefers_project_pm_department(
    repository: JobRepository,
    make_job,
    make_agent,
) -> None:
    make_agent("generalist", AgentRole.CODER, cost_tier=CostTier.FREE)
    specialist = make_agent(
        "growth-coder",
        AgentRole.CODER,
        cost_tier=CostTier.HIGH,
        department_id="growth",
    )
    pm = make_agent(
        "growth-pm",
        AgentRole.PRODUCT,
        department_id="growth",
        default_engine=Engine.SHELL,
    )
    project = repository.create_project(name="Growth site", pm_agent_id=pm.agent_id)
    job = make_job(title="Landing page A/B", project_id=project.project_id)

    route = route_job(repository, job.job_id)

    assert route is not None
    assert route.agent_id == specialist.agent_id
    assert route.reason.startswith("Best match: dept=yes")
    assert repository.require_job(job.job_id).agent_id is None


def test_inactive_pm_department_is_ignored(
    repository: JobRepository,
    make_job,
    make_agent,
) -> None:
    generalist = make_agent("generalist", AgentRole.CODER, cost_tier=CostTier.FREE)
    make_agent("growth-coder", AgentRole.CODER, cost_tier=CostTier.HIGH, department_id="growth")
    pm = make_agent("growth-pm", AgentRole.PRODUCT, department_id="growth", active=False)
    project = repository.create_project(name="Growth site", pm_agent_id=pm.agent_id)
    job = make_job(title="Landing page A/B", project_id=project.project_id)

    route = route_job(repository, job.job_id)

    assert repository.preferred_department_for_project(project.project_id) is None
    assert route is not None
    assert route.agent_id == generalist.agent_id
    assert route.reason.startswith("Best match: dept=no")

def test_route_job_unknown_job(repository: JobRepository) -> None:
    assert route_job(repository, "missing") is None
