"""Job-side models: the contract between the state machine and its callers.

Apply outcomes:
  - NotApplied: the decision was a NoMatch
  - AlreadyAtStage: the job already sits at the target (nothing written)
  - PendingApproval: an admin has to confirm the move first
  - Applied: the job moved and an audit entry was written

The ``ApplyResult`` union is discriminated on ``result``.
"""

import uuid
from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from jobstage_db.models.enums import JobStatus, PendingStatus, TriggerSource

from .decision import Diagnostic
from .graph import QuestionInfo


class ActingUser(BaseModel):
    """Caller identity, already authenticated and company-scoped upstream."""

    user_id: str
    company_id: uuid.UUID
    is_admin: bool = False


# ---------------------------------------------------------------------------
# Read views
# ---------------------------------------------------------------------------

class JobStageInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: uuid.UUID
    company_id: uuid.UUID
    current_stage_id: uuid.UUID
    stage_entered_at: datetime
    status: JobStatus


class ResponseInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    job_id: uuid.UUID
    question_id: uuid.UUID
    raw_value: str
    normalized_value: str
    is_current: bool
    submitted_by: str
    submitted_at: datetime


class AuditEntryInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    job_id: uuid.UUID
    from_stage_id: Optional[uuid.UUID] = None
    to_stage_id: uuid.UUID
    triggering_response_id: Optional[uuid.UUID] = None
    rule_id: Optional[uuid.UUID] = None
    trigger_source: TriggerSource
    applied_automatically: bool
    applied_by: str
    reason: Optional[str] = None
    duration_in_previous_stage_hours: Optional[float] = None
    applied_at: datetime


class PendingTransitionInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    job_id: uuid.UUID
    rule_id: Optional[uuid.UUID] = None
    from_stage_id: uuid.UUID
    to_stage_id: uuid.UUID
    triggering_response_id: Optional[uuid.UUID] = None
    requested_by: str
    status: PendingStatus
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime


# ---------------------------------------------------------------------------
# Ingestion outcomes
# ---------------------------------------------------------------------------

class ValidationIssue(BaseModel):
    code: str
    message: str


class ResponseAccepted(BaseModel):
    outcome: Literal["accepted"] = "accepted"
    response: ResponseInfo


class ResponseRejected(BaseModel):
    outcome: Literal["rejected"] = "rejected"
    issue: ValidationIssue


IngestionResult = Annotated[
    Union[ResponseAccepted, ResponseRejected], Field(discriminator="outcome"),
]


# ---------------------------------------------------------------------------
# Apply outcomes
# ---------------------------------------------------------------------------

class NotApplied(BaseModel):
    result: Literal["not_applied"] = "not_applied"
    diagnostics: list[Diagnostic] = []


class AlreadyAtStage(BaseModel):
    result: Literal["already_at_stage"] = "already_at_stage"
    job: JobStageInfo


class PendingApproval(BaseModel):
    result: Literal["pending_approval"] = "pending_approval"
    pending: PendingTransitionInfo


class Applied(BaseModel):
    result: Literal["applied"] = "applied"
    job: JobStageInfo
    audit_entry: AuditEntryInfo


ApplyResult = Annotated[
    Union[NotApplied, AlreadyAtStage, PendingApproval, Applied],
    Field(discriminator="result"),
]


class QuestionFlow(BaseModel):
    """Where a job stands within its current stage's questions."""

    job_id: uuid.UUID
    current_stage_id: uuid.UUID
    current_question: Optional[QuestionInfo] = None
    remaining_questions: list[QuestionInfo] = []
    answered_question_ids: list[uuid.UUID] = []
    skipped_question_ids: list[uuid.UUID] = []
    can_proceed: bool = False


class SubmissionOutcome(BaseModel):
    """Result of submit-then-apply: the ingestion outcome, and the transition
    outcome when the answer was accepted."""

    ingestion: IngestionResult
    transition: Optional[ApplyResult] = None
