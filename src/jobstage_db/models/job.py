"""Job-side ORM models: stage pointer, responses, audit trail, pending moves.

Jobs themselves live in the surrounding product; these tables only hold
what the workflow engine owns for each job.  All of them reference stages
of the job's own company, which the engine checks on every write.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Float, ForeignKey, Index, String, Text, text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import Mapped, mapped_column

from jobstage_db.models.base import Base
from jobstage_db.models.enums import JobStatus, PendingStatus, TriggerSource


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStageState(Base):
    """A job's position in its company's stage graph (one row per job)."""

    __tablename__ = "job_stage_states"

    job_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True,
    )
    current_stage_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("job_stages.id"), nullable=False, index=True,
    )
    stage_entered_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow,
    )
    # Mirrors the current stage's maps_to_status
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.PLANNING,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"<JobStageState(job={self.job_id!s}, "
            f"stage={self.current_stage_id!s}, status={self.status!r})>"
        )


class StageResponse(Base):
    """A recorded answer to a question for a job.

    Older answers are kept with ``is_current = false`` so the history of a
    (job, question) pair can be replayed.
    """

    __tablename__ = "stage_responses"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    job_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    company_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    question_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("stage_questions.id"), nullable=False,
    )
    raw_value: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_value: Mapped[str] = mapped_column(Text, nullable=False)
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    submitted_by: Mapped[str] = mapped_column(Text, nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow,
    )

    __table_args__ = (
        Index("ix_response_job_question", "job_id", "question_id"),
        # At most one current answer per (job, question)
        Index(
            "uq_current_response",
            "job_id",
            "question_id",
            unique=True,
            postgresql_where=text("is_current"),
        ),
    )


class StageAuditEntry(Base):
    """Immutable record of a stage transition.  Rows are never updated."""

    __tablename__ = "stage_audit_log"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True,
    )
    company_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    from_stage_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("job_stages.id"), nullable=True,
    )
    to_stage_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("job_stages.id"), nullable=False,
    )
    triggering_response_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("stage_responses.id"), nullable=True,
    )
    # No FK: the rule may be torn down later while the audit row survives
    rule_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    trigger_source: Mapped[str] = mapped_column(
        String(30), nullable=False, default=TriggerSource.QUESTION_RESPONSE,
    )
    applied_automatically: Mapped[bool] = mapped_column(Boolean, nullable=False)
    applied_by: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_in_previous_stage_hours: Mapped[float | None] = mapped_column(
        Float, nullable=True,
    )
    applied_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow,
    )


class PendingTransition(Base):
    """A matched transition waiting for an admin to confirm it."""

    __tablename__ = "pending_transitions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True,
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True,
    )
    rule_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    from_stage_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("job_stages.id"), nullable=False,
    )
    to_stage_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("job_stages.id"), nullable=False,
    )
    triggering_response_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("stage_responses.id"), nullable=True,
    )
    requested_by: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PendingStatus.PENDING, index=True,
    )
    resolved_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow,
    )

    __table_args__ = (
        # One open request per rule and departure stage; resubmitting the
        # same answer does not queue another one
        Index(
            "uq_open_pending_transition",
            "job_id",
            "rule_id",
            "from_stage_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
        ),
    )
