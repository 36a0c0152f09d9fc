"""Stage graph ORM models: stages, their questions, and transition rules.

The three tables form a directed graph owned by one company (tenant):
stages are nodes, transition rules are edges keyed to a question, and every
row carries ``company_id`` so reads can be partitioned by tenant without a
join.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import Mapped, mapped_column

from jobstage_db.models.base import Base
from jobstage_db.models.enums import JobStatus, StageType

# Sequence orders at or above this value belong to retired stages.  Must
# match ``jobstage_engine.constants.RETIRED_ORDER_OFFSET``.
_RETIRED_ORDER_FLOOR = 10000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Stage(Base):
    """One step in a company's workflow."""

    __tablename__ = "job_stages"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True,
    )

    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    color: Mapped[str | None] = mapped_column(String(16), nullable=True)
    sequence_order: Mapped[int] = mapped_column(Integer, nullable=False)
    stage_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=StageType.STANDARD,
    )
    maps_to_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.PLANNING,
    )
    min_duration_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_duration_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    requires_approval: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False,
    )

    # Retired by the archive strategy; row stays resolvable from history
    archived: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false"),
    )
    # Set when the row was created by a template provisioning run
    provisioning_run_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    __table_args__ = (
        CheckConstraint("sequence_order >= 1", name="ck_stage_order_positive"),
        CheckConstraint(
            "min_duration_hours IS NULL OR max_duration_hours IS NULL "
            "OR min_duration_hours <= max_duration_hours",
            name="ck_stage_duration_range",
        ),
        # sequence_order is unique per company among active stages only, so
        # retired rows never collide with a freshly provisioned graph.
        Index(
            "uq_active_stage_order",
            "company_id",
            "sequence_order",
            unique=True,
            postgresql_where=text(
                f"archived = false AND sequence_order < {_RETIRED_ORDER_FLOOR}"
            ),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Stage(id={self.id!s}, company={self.company_id!s}, "
            f"order={self.sequence_order}, name={self.name!r})>"
        )


class StageQuestion(Base):
    """A data-capture point attached to a stage."""

    __tablename__ = "stage_questions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    # Plain FK (no cascade): responses pin questions, so deletes must be
    # resolved by the caller.
    stage_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("job_stages.id"), nullable=False, index=True,
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True,
    )

    question_text: Mapped[str] = mapped_column(Text, nullable=False)
    help_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_type: Mapped[str] = mapped_column(String(20), nullable=False)
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # Ordered list of labels; only for multiple_choice
    response_options: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    sequence_order: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    # {"previous_responses": [{"question_id": ..., "response_value": ...}]}
    skip_conditions: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    provisioning_run_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    __table_args__ = (
        CheckConstraint(
            "(response_type = 'multiple_choice') = "
            "(response_options IS NOT NULL AND jsonb_array_length(response_options) > 0)",
            name="ck_question_options_iff_choice",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<StageQuestion(id={self.id!s}, stage={self.stage_id!s}, "
            f"type={self.response_type!r})>"
        )


class StageTransition(Base):
    """A conditional edge from one stage to another, keyed to a question."""

    __tablename__ = "stage_transitions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True,
    )
    from_stage_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("job_stages.id"), nullable=False, index=True,
    )
    to_stage_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("job_stages.id"), nullable=False,
    )
    question_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("stage_questions.id"), nullable=False,
    )

    # --- Predicate: either a string trigger or a numeric comparison ---
    trigger_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    numeric_operator: Mapped[str | None] = mapped_column(String(20), nullable=True)
    numeric_value: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    numeric_value_max: Mapped[Decimal | None] = mapped_column(
        Numeric(18, 6), nullable=True,
    )

    is_automatic: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requires_admin_override: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False,
    )

    provisioning_run_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow,
    )

    __table_args__ = (
        CheckConstraint("from_stage_id <> to_stage_id", name="ck_no_self_transition"),
        CheckConstraint(
            "(trigger_response IS NULL) <> (numeric_operator IS NULL)",
            name="ck_exactly_one_predicate",
        ),
        CheckConstraint(
            "numeric_operator IS NULL OR numeric_value IS NOT NULL",
            name="ck_numeric_has_value",
        ),
        Index("ix_transition_from_question", "from_stage_id", "question_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<StageTransition(id={self.id!s}, {self.from_stage_id!s} -> "
            f"{self.to_stage_id!s}, question={self.question_id!s})>"
        )
