"""Domain models for the job lifecycle, agents, reviews and notifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    ASSIGNED = "assigned"
    RUNNING = "running"
    REVIEWING = "reviewing"
    DONE = "done"
    FAILED = "failed"
    REJECTED = "rejected"
    PAUSED_HUMAN = "paused_human"
    PAUSED_QUOTA = "paused_quota"


TERMINAL_STATUSES = frozenset(
    {
        JobStatus.DONE,
        JobStatus.FAILED,
        JobStatus.REJECTED,
        JobStatus.PAUSED_HUMAN,
        JobStatus.PAUSED_QUOTA,
    },
)


class Engine(str, Enum):
    """Executor used to run a job."""

    SHELL = "shell"
    CLAUDE = "claude"
    GEMINI = "gemini"
    OPENAI = "openai"


GENERAL_PURPOSE_ENGINE = Engine.CLAUDE


class JobType(str, Enum):
    TASK = "task"
    DECOMPOSITION = "decomposition"
    REVIEW = "review"
    INTEGRATION = "integration"
    PM = "pm"


class JobSource(str, Enum):
    DASHBOARD = "dashboard"
    TELEGRAM = "telegram"
    CRON = "cron"
    ORCHESTRATOR = "orchestrator"
    API = "api"
    AUTO_DISPATCH = "auto-dispatch"


class AgentRole(str, Enum):
    ORCHESTRATOR = "orchestrator"
    CODER = "coder"
    RESEARCHER = "researcher"
    QA = "qa"
    OPS = "ops"
    ANALYST = "analyst"
    PRODUCT = "product"
    CREATIVE = "creative"
    MARKETING = "marketing"
    PUBLISHER = "publisher"


class AgentStatus(str, Enum):
    """Operational status of an agent, independent from job status."""

    ACTIVE = "active"
    PAUSED = "paused"


class CostTier(str, Enum):
    FREE = "free"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


COST_TIER_RANK: dict[str, int] = {
    CostTier.FREE.value: 0,
    CostTier.LOW.value: 1,
    CostTier.MEDIUM.value: 2,
    CostTier.HIGH.value: 3,
}


class OutcomeStatus(str, Enum):
    """Normalized engine runner outcome."""

    OK = "ok"
    FAILED = "failed"
    HUMAN_INTERVENTION_REQUESTED = "human-intervention-requested"
    QUOTA_EXHAUSTED = "quota-exhausted"


class NotificationCategory(str, Enum):
    JOB_COMPLETE = "job_complete"
    JOB_FAILED = "job_failed"
    DECISION_NEEDED = "decision_needed"
    APPROVAL_NEEDED = "approval_needed"
    DEPLOY_READY = "deploy_ready"
    ALERT = "alert"
    INFO = "info"
    REMINDER = "reminder"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    ACKNOWLEDGED = "acknowledged"
    DISMISSED = "dismissed"


OPEN_NOTIFICATION_STATUSES = (NotificationStatus.PENDING, NotificationStatus.DELIVERED)


class JobNotFoundError(LookupError):
    """Raised when a referenced job, agent or project does not exist."""


class InvalidJobRequestError(ValueError):
    """Raised for caller mistakes such as invalid status patches or scores."""


@dataclass(slots=True, frozen=True)
class RuntimeControls:
    """Snapshot of operator switches consumed by claim and review scoring."""

    pause_all: bool = False
    max_concurrency: int = 2
    qa_pass_threshold: int = 35


@dataclass(slots=True)
class JobCreate:
    """Input payload for creating a queued job."""

    title: str
    prompt_text: str
    engine: Engine
    repo_path: str
    output_dir: str
    priority: int = 5
    job_id: str | None = None
    parent_job_id: str | None = None
    project_id: str | None = None
    agent_id: str | None = None
    job_type: JobType = JobType.TASK
    source: JobSource = JobSource.DASHBOARD


@dataclass(slots=True)
class JobView:
    """Readable job view for runner, router and CLI."""

    job_id: str
    title: str
    prompt_text: str
    engine: Engine
    repo_path: str
    output_dir: str
    priority: int
    parent_job_id: str | None
    project_id: str | None
    agent_id: str | None
    job_type: JobType
    source: str
    status: JobStatus
    started_at: datetime | None
    completed_at: datetime | None
    retry_count: int
    last_error: str | None
    result: str | None
    last_run_outcome: dict[str, Any] | None
    log_path: str | None
    quality_score: int | None
    review_notes: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobPatch:
    """Administrative partial update; unset fields are left untouched."""

    status: JobStatus | None = None
    priority: int | None = None
    job_type: JobType | None = None
    agent_id: str | None = None


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job details with event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True)
class AgentCreate:
    name: str
    role: AgentRole
    default_engine: Engine
    cost_tier: CostTier = CostTier.MEDIUM
    department_id: str | None = None
    agent_id: str | None = None
    model_id: str | None = None
    system_prompt: str | None = None
    active: bool = True


@dataclass(slots=True)
class AgentView:
    """Agent routing and performance attributes."""

    agent_id: str
    name: str
    role: str
    default_engine: str
    cost_tier: str
    department_id: str | None
    active: bool
    status: AgentStatus
    model_id: str | None
    system_prompt: str | None
    quality_score_avg: float
    total_jobs_completed: int
    consecutive_failures: int

    @property
    def eligible(self) -> bool:
        return self.active and self.status == AgentStatus.ACTIVE


@dataclass(slots=True)
class ProjectView:
    project_id: str
    name: str
    pm_agent_id: str | None


@dataclass(slots=True)
class EngineOutcome:
    """Normalized result of one engine invocation."""

    status: OutcomeStatus
    result_text: str | None = None
    log_reference: str | None = None
    error_summary: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ReviewScores:
    """Five 1-10 quality dimensions of one review."""

    completeness: int
    accuracy: int
    actionability: int
    relevance: int
    evidence: int

    @property
    def total(self) -> int:
        return (
            self.completeness + self.accuracy + self.actionability + self.relevance + self.evidence
        )

    def as_dict(self) -> dict[str, int]:
        return {
            "completeness": self.completeness,
            "accuracy": self.accuracy,
            "actionability": self.actionability,
            "relevance": self.relevance,
            "evidence": self.evidence,
        }


@dataclass(slots=True)
class ReviewResult:
    passed: bool
    total: int
    review_id: str
    feedback: str = ""


@dataclass(slots=True)
class RouteResult:
    agent_id: str
    agent_name: str
    reason: str


@dataclass(slots=True)
class NotificationCreate:
    title: str
    category: NotificationCategory
    body: str | None = None
    priority: NotificationPriority = NotificationPriority.NORMAL
    source_type: str | None = None
    source_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class NotificationView:
    notification_id: str
    title: str
    body: str | None
    category: str
    priority: str
    status: NotificationStatus
    source_type: str | None
    source_id: str | None
    metadata: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class ResearchItemView:
    item_id: str
    title: str | None
    url: str | None
    content_type: str
    status: str
    created_at: datetime


@dataclass(slots=True)
class SubTaskSpec:
    """One sub-task proposed by a decomposition."""

    title: str
    suggested_agent: str
    prompt_text: str
    priority: int = 5
    engine: Engine = GENERAL_PURPOSE_ENGINE
