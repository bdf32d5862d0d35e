"""SQLModel ORM tables for the job pipeline."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_jobs_status_created", "status", "created_at"),)

    job_id: str = Field(primary_key=True)
    job_type: str = Field(index=True)
    status: str = Field(index=True)
    repo_id: str = Field(index=True)
    repo_full_name: str = Field(index=True)
    pr_number: int | None = None
    pr_action: str | None = None
    head_sha: str | None = None
    head_ref: str | None = None
    base_ref: str | None = None
    ref: str | None = None
    before_sha: str | None = None
    after_sha: str | None = None
    changed_files_json: str | None = Field(default=None, sa_column=Column(Text))
    commit_count: int | None = None
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    dispatched_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    result_id: str | None = None
    error: str | None = Field(default=None, sa_column=Column(Text))
    processing_time_ms: int | None = None


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None, index=True)
    status_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RelayEntry(SQLModel, table=True):
    __tablename__ = "relay_entries"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "idx_relay_entries_retry_scan",
            "published",
            "permanently_failed",
            "last_attempt_at",
        ),
    )

    entry_id: str = Field(primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    topic: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    published: bool = Field(default=False)
    message_id: str | None = None
    error: str | None = Field(default=None, sa_column=Column(Text))
    retry_count: int = Field(default=0)
    permanently_failed: bool = Field(default=False)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_attempt_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    published_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class JobResult(SQLModel, table=True):
    __tablename__ = "job_results"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("job_id", name="uq_job_results_job"),)

    result_id: str = Field(primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    job_type: str = Field(index=True)
    repo_id: str = Field(index=True)
    repo_full_name: str
    status: str
    analysis_json: str = Field(sa_column=Column(Text, nullable=False))
    processing_time_ms: int
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BusTopic(SQLModel, table=True):
    __tablename__ = "bus_topics"  # type: ignore[bad-override]

    name: str = Field(primary_key=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BusMessage(SQLModel, table=True):
    __tablename__ = "bus_messages"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_bus_messages_pull", "topic", "status", "available_at"),)

    message_id: str = Field(primary_key=True)
    topic: str = Field(
        sa_column=Column(
            ForeignKey("bus_topics.name", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    data_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    delivery_attempts: int = Field(default=0)
    available_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    leased_until: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    lease_owner: str | None = None
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    published_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WebhookDelivery(SQLModel, table=True):
    __tablename__ = "webhook_deliveries"  # type: ignore[bad-override]

    delivery_id: str = Field(primary_key=True)
    event: str = Field(index=True)
    repo_id: str = Field(index=True)
    repo_full_name: str
    action: str | None = None
    processed: bool = Field(default=False)
    job_id: str | None = Field(default=None, index=True)
    received_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
