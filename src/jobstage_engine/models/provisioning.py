"""Provisioning models: the plan, the teardown states, and the run report.

Plan entries use symbolic local ids (``stage:<key>``, ``question:<stage>/<key>``,
``rule:<n>``) so the plan can be built and inspected without a database.
Realizing the plan maps each local id to the generated row id.

Teardown state machine::

    Attempting(tier) --ok--------> Succeeded(tier)
    Attempting(tier) --conflict--> Blocked(tier, next_tier) --> Attempting(next_tier)
    Blocked(tier, None) ---------> Exhausted
"""

import uuid
from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from .template import TemplateQuestion, TemplateStage, TemplateTransition


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------

class PlannedStage(BaseModel):
    local_id: str
    stage: TemplateStage


class PlannedQuestion(BaseModel):
    local_id: str
    stage_local_id: str
    question: TemplateQuestion
    # (local id of the earlier question, answer that skips this one)
    skip_when: list[tuple[str, str]] = []


class PlannedTransition(BaseModel):
    local_id: str
    from_local_id: str
    to_local_id: str
    question_local_id: str
    transition: TemplateTransition

    @property
    def is_self_transition(self) -> bool:
        return self.from_local_id == self.to_local_id


class ProvisioningPlan(BaseModel):
    template_id: str
    stages: list[PlannedStage]
    questions: list[PlannedQuestion]
    transitions: list[PlannedTransition]


# ---------------------------------------------------------------------------
# Teardown states
# ---------------------------------------------------------------------------

class Attempting(BaseModel):
    state: Literal["attempting"] = "attempting"
    tier: str


class Succeeded(BaseModel):
    state: Literal["succeeded"] = "succeeded"
    tier: str


class Blocked(BaseModel):
    state: Literal["blocked"] = "blocked"
    tier: str
    next_tier: Optional[str] = None
    reason: str


class Exhausted(BaseModel):
    state: Literal["exhausted"] = "exhausted"


TeardownState = Annotated[
    Union[Attempting, Succeeded, Blocked, Exhausted], Field(discriminator="state"),
]


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

class TierAttempt(BaseModel):
    tier: str
    succeeded: bool
    error: Optional[str] = None
    blocking_table: Optional[str] = None


class ProvisioningReport(BaseModel):
    """Everything a provisioning run did, for logs and for resuming."""

    run_id: str
    company_id: uuid.UUID
    template_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    tier_attempts: list[TierAttempt] = []
    final_tier: Optional[str] = None
    deleted_stage_ids: list[uuid.UUID] = []
    retired_stage_ids: list[uuid.UUID] = []
    deleted_question_ids: list[uuid.UUID] = []
    deleted_rule_ids: list[uuid.UUID] = []
    created_stage_ids: list[uuid.UUID] = []
    created_question_ids: list[uuid.UUID] = []
    created_rule_ids: list[uuid.UUID] = []
    reused_ids: list[uuid.UUID] = []
    skipped_transitions: list[str] = []
    id_map: dict[str, uuid.UUID] = {}
