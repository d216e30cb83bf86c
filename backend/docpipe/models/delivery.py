"""
ORM Models — Email delivery log & queue job bookkeeping

EmailDeliveryLog is written BEFORE the broker is touched, so every logical
send has a durable row even if the enqueue fails. Rows are never deleted by
the pipeline.

JobRecord mirrors each broker job (id, queue, state, attempts). The unique
job_id column is what turns a repeated enqueue of the same logical unit of
work into a no-op, and it backs per-queue counts and retention pruning.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from docpipe.models.documents import Base, utcnow


EMAIL_STATUSES = ("QUEUED", "SENDING", "SENT", "FAILED_RETRYING", "FAILED_PERMANENT")

JOB_STATES = ("waiting", "active", "delayed", "completed", "failed", "dead_letter")


# ---------------------------------------------------------------------------
# EmailDeliveryLog — email_delivery_logs
# ---------------------------------------------------------------------------

class EmailDeliveryLog(Base):
    """
    One logical email send (possibly to several recipients in batch mode).

    State machine:
        QUEUED           — row written, job enqueued
        SENDING          — a worker is attempting delivery
        SENT             — provider accepted the message
        FAILED_RETRYING  — transient / rate-limit failure; broker will retry
        FAILED_PERMANENT — permanent rejection, attempts exhausted, or enqueue failure
    """

    __tablename__ = "email_delivery_logs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('QUEUED', 'SENDING', 'SENT', 'FAILED_RETRYING', 'FAILED_PERMANENT')",
            name="email_logs_status_check",
        ),
        Index("idx_email_logs_job_id", "job_id", unique=True),
        Index("idx_email_logs_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    to: Mapped[str] = mapped_column("to_address", Text, nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    template_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="QUEUED")
    provider: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    message_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts:  Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    recipient_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    error_type: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    company_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    log_metadata: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)

    sent_at:    Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    def __repr__(self) -> str:
        return f"<EmailDeliveryLog id={self.id} status={self.status} to={self.to!r}>"


# ---------------------------------------------------------------------------
# JobRecord — job_records
# ---------------------------------------------------------------------------

class JobRecord(Base):
    __tablename__ = "job_records"
    __table_args__ = (
        Index("idx_job_records_job_id", "job_id", unique=True),
        Index("idx_job_records_queue_state", "queue_name", "state"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[str] = mapped_column(String(128), nullable=False)
    queue_name: Mapped[str] = mapped_column(String(32), nullable=False)
    task_name: Mapped[str] = mapped_column(Text, nullable=False)

    state: Mapped[str] = mapped_column(String(16), nullable=False, default="waiting")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts:  Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at:  Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at:  Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<JobRecord job_id={self.job_id} queue={self.queue_name} state={self.state}>"
