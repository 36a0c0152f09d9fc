"""Graph models: the public view of stages, questions and transition rules.

These models are intentionally decoupled from the ORM models in
``jobstage_db`` so that SDK consumers never see database internals.

  - *Info models are read views built from ORM rows (``from_attributes``)
  - *Create models carry the fields a caller supplies for a new row
  - *Update models carry a partial change; only fields explicitly set are
    applied (``model_dump(exclude_unset=True)``)

``TransitionRuleCreate`` accepts the flat wire shape (``trigger_response`` or
``numeric_operator`` + bounds); the graph store folds it into a typed
:data:`Predicate` and rejects rules carrying both forms or neither.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from jobstage_db.models.enums import JobStatus, NumericOperator, ResponseType, StageType

from .predicates import NumericPredicate, Predicate, TriggerPredicate


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

class StageInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    company_id: uuid.UUID
    name: str
    description: Optional[str] = None
    color: Optional[str] = None
    sequence_order: int
    stage_type: StageType
    maps_to_status: JobStatus
    min_duration_hours: Optional[int] = None
    max_duration_hours: Optional[int] = None
    requires_approval: bool = False
    archived: bool = False
    created_at: Optional[datetime] = None


class StageCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    color: Optional[str] = None
    sequence_order: int = Field(ge=1)
    stage_type: StageType = StageType.STANDARD
    maps_to_status: JobStatus = JobStatus.PLANNING
    min_duration_hours: Optional[int] = Field(default=None, ge=0)
    max_duration_hours: Optional[int] = Field(default=None, ge=0)
    requires_approval: bool = False

    @model_validator(mode="after")
    def _check_duration(self) -> "StageCreate":
        lo, hi = self.min_duration_hours, self.max_duration_hours
        if lo is not None and hi is not None and lo > hi:
            raise ValueError("min_duration_hours must be <= max_duration_hours")
        return self


class StageUpdate(BaseModel):
    """Partial stage change.  ``company_id`` is accepted only to be rejected."""

    company_id: Optional[uuid.UUID] = None
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    color: Optional[str] = None
    sequence_order: Optional[int] = Field(default=None, ge=1)
    stage_type: Optional[StageType] = None
    maps_to_status: Optional[JobStatus] = None
    min_duration_hours: Optional[int] = Field(default=None, ge=0)
    max_duration_hours: Optional[int] = Field(default=None, ge=0)
    requires_approval: Optional[bool] = None


# ---------------------------------------------------------------------------
# Questions
# ---------------------------------------------------------------------------

class PreviousResponseCondition(BaseModel):
    """Skip the question when *question_id* currently holds *response_value*."""

    question_id: uuid.UUID
    response_value: str = Field(min_length=1)


class SkipConditions(BaseModel):
    """Conditional skipping for a question.

    The store normalizes each ``response_value`` against the referenced
    question's type when the conditions are written, so the check at read
    time is an exact comparison with the stored answer.
    """

    previous_responses: list[PreviousResponseCondition] = []

    def matches(self, answers: dict[uuid.UUID, str]) -> bool:
        """True when any condition holds for *answers* (question id -> value)."""
        return any(
            answers.get(c.question_id) == c.response_value
            for c in self.previous_responses
        )


class QuestionInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    stage_id: uuid.UUID
    company_id: uuid.UUID
    question_text: str
    help_text: Optional[str] = None
    response_type: ResponseType
    is_required: bool = True
    response_options: Optional[list[str]] = None
    sequence_order: int
    skip_conditions: Optional[SkipConditions] = None


class QuestionCreate(BaseModel):
    stage_id: uuid.UUID
    question_text: str = Field(min_length=1)
    help_text: Optional[str] = None
    response_type: ResponseType
    is_required: bool = True
    response_options: Optional[list[str]] = None
    sequence_order: int = Field(ge=1)
    skip_conditions: Optional[SkipConditions] = None


class QuestionUpdate(BaseModel):
    company_id: Optional[uuid.UUID] = None
    question_text: Optional[str] = Field(default=None, min_length=1)
    help_text: Optional[str] = None
    response_type: Optional[ResponseType] = None
    is_required: Optional[bool] = None
    response_options: Optional[list[str]] = None
    sequence_order: Optional[int] = Field(default=None, ge=1)
    skip_conditions: Optional[SkipConditions] = None


# ---------------------------------------------------------------------------
# Transition rules
# ---------------------------------------------------------------------------

class TransitionRuleInfo(BaseModel):
    id: uuid.UUID
    company_id: uuid.UUID
    from_stage_id: uuid.UUID
    to_stage_id: uuid.UUID
    question_id: uuid.UUID
    predicate: Predicate
    is_automatic: bool = False
    requires_admin_override: bool = False
    created_at: datetime

    @classmethod
    def from_row(cls, row) -> "TransitionRuleInfo":
        """Build from a ``StageTransition`` row, folding the predicate columns."""
        if row.numeric_operator is not None:
            predicate = NumericPredicate(
                operator=row.numeric_operator,
                value=row.numeric_value,
                value_max=row.numeric_value_max,
            )
        else:
            predicate = TriggerPredicate(value=row.trigger_response)
        return cls(
            id=row.id,
            company_id=row.company_id,
            from_stage_id=row.from_stage_id,
            to_stage_id=row.to_stage_id,
            question_id=row.question_id,
            predicate=predicate,
            is_automatic=row.is_automatic,
            requires_admin_override=row.requires_admin_override,
            created_at=row.created_at,
        )


class PredicateFields(BaseModel):
    """Flat predicate columns as they arrive over the wire."""

    trigger_response: Optional[str] = None
    numeric_operator: Optional[NumericOperator] = None
    numeric_value: Optional[Decimal] = None
    numeric_value_max: Optional[Decimal] = None

    def has_predicate_fields(self) -> bool:
        return any(
            getattr(self, name) is not None
            for name in ("trigger_response", "numeric_operator", "numeric_value", "numeric_value_max")
        )


class TransitionRuleCreate(PredicateFields):
    from_stage_id: uuid.UUID
    to_stage_id: uuid.UUID
    question_id: uuid.UUID
    is_automatic: bool = False
    requires_admin_override: bool = False


class TransitionRuleUpdate(PredicateFields):
    """Partial rule change.  Predicate fields, when present, replace the
    whole predicate."""

    company_id: Optional[uuid.UUID] = None
    from_stage_id: Optional[uuid.UUID] = None
    to_stage_id: Optional[uuid.UUID] = None
    question_id: Optional[uuid.UUID] = None
    is_automatic: Optional[bool] = None
    requires_admin_override: Optional[bool] = None


class RuleWriteResult(BaseModel):
    """Outcome of a rule write: the stored rule plus any rules it overlaps.

    Overlapping rules on the same question make evaluation ambiguous; the
    write still succeeds and evaluation falls back to the earliest rule.
    """

    rule: TransitionRuleInfo
    overlaps: list[uuid.UUID] = []


class StageDeletion(BaseModel):
    """Which strategy ``delete_stage`` ended up using."""

    stage_id: uuid.UUID
    strategy: str
