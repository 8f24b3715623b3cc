"""SQLModel ORM tables for mission control storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class AgentRow(SQLModel, table=True):
    __tablename__ = "agents"  # type: ignore[bad-override]

    agent_id: str = Field(primary_key=True)
    name: str = Field(unique=True, index=True)
    role: str = Field(index=True)
    default_engine: str
    cost_tier: str = "medium"
    department_id: str | None = Field(default=None, index=True)
    active: bool = True
    status: str = Field(default="active", index=True)
    model_id: str | None = None
    system_prompt: str | None = Field(default=None, sa_column=Column(Text))
    quality_score_avg: float = 0.0
    total_jobs_completed: int = 0
    consecutive_failures: int = 0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ProjectRow(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]

    project_id: str = Field(primary_key=True)
    name: str
    pm_agent_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("agents.agent_id", ondelete="SET NULL"), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobRow(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_status_priority_created", "status", "priority", "created_at"),
    )

    job_id: str = Field(primary_key=True)
    title: str
    prompt_text: str = Field(sa_column=Column(Text, nullable=False))
    engine: str = Field(index=True)
    repo_path: str
    output_dir: str
    priority: int = 5
    parent_job_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    project_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    agent_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("agents.agent_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    job_type: str = "task"
    source: str = "dashboard"
    status: str = Field(index=True)
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    retry_count: int | None = 0
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    result: str | None = Field(default=None, sa_column=Column(Text))
    last_run_json: str | None = Field(default=None, sa_column=Column(Text))
    log_path: str | None = None
    quality_score: int | None = None
    review_notes: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEventRow(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobReviewRow(SQLModel, table=True):
    __tablename__ = "job_reviews"  # type: ignore[bad-override]

    review_id: str = Field(primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    reviewer_agent_id: str | None = None
    completeness: int
    accuracy: int
    actionability: int
    relevance: int
    evidence: int
    total_score: int
    passed: bool
    feedback: str = Field(default="", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False),
    )


class NotificationRow(SQLModel, table=True):
    __tablename__ = "notifications"  # type: ignore[bad-override]

    notification_id: str = Field(primary_key=True)
    title: str
    body: str | None = Field(default=None, sa_column=Column(Text))
    category: str = Field(index=True)
    priority: str = "normal"
    status: str = Field(default="pending", index=True)
    source_type: str | None = None
    source_id: str | None = None
    metadata_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    acknowledged_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class ResearchItemRow(SQLModel, table=True):
    __tablename__ = "research_items"  # type: ignore[bad-override]

    item_id: str = Field(primary_key=True)
    title: str | None = None
    url: str | None = None
    content_type: str = "article"
    status: str = Field(default="captured", index=True)
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False),
    )


class SettingRow(SQLModel, table=True):
    __tablename__ = "settings"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value_json: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
