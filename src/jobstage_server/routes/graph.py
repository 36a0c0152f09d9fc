"""Stage graph endpoints: stages, their questions, and transition rules.

Every endpoint is scoped to the caller's company (``X-Company-ID``); rows of
another company are reported as 404.
"""

import uuid

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from jobstage_engine.models.graph import (
    QuestionCreate,
    QuestionInfo,
    QuestionUpdate,
    RuleWriteResult,
    StageCreate,
    StageDeletion,
    StageInfo,
    StageUpdate,
    TransitionRuleCreate,
    TransitionRuleInfo,
    TransitionRuleUpdate,
)
from jobstage_engine.models.job import ActingUser
from jobstage_engine.workflow import StageWorkflow

from jobstage_server.dependencies import get_acting_user, get_db, get_workflow

router = APIRouter(tags=["graph"])


# ------------------------------------------------------------------
# Request models
# ------------------------------------------------------------------

class ReorderQuestionsRequest(BaseModel):
    """Body for PUT /stages/{stage_id}/questions/order."""
    question_ids: list[uuid.UUID]


# ------------------------------------------------------------------
# Stages
# ------------------------------------------------------------------

@router.get("/stages")
async def list_stages(
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> list[StageInfo]:
    """Active stages of the caller's company, ordered by sequence_order."""
    return await workflow.store.list_stages(db, user.company_id)


@router.post("/stages", status_code=201)
async def create_stage(
    body: StageCreate,
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> StageInfo:
    """Create a stage.  Raises 422 if the sequence_order is taken."""
    return await workflow.store.create_stage(
        db, company_id=user.company_id, data=body, created_by=user.user_id,
    )


@router.get("/stages/{stage_id}")
async def get_stage(
    stage_id: uuid.UUID,
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> StageInfo:
    return await workflow.store.get_stage(db, company_id=user.company_id, stage_id=stage_id)


@router.patch("/stages/{stage_id}")
async def update_stage(
    stage_id: uuid.UUID,
    body: StageUpdate,
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> StageInfo:
    return await workflow.store.update_stage(
        db, company_id=user.company_id, stage_id=stage_id, data=body,
    )


@router.delete("/stages/{stage_id}")
async def delete_stage(
    stage_id: uuid.UUID,
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> StageDeletion:
    """Delete a stage, falling back to archive or rename when it is referenced.

    The response names the strategy that was used.
    """
    return await workflow.store.delete_stage(db, company_id=user.company_id, stage_id=stage_id)


# ------------------------------------------------------------------
# Questions
# ------------------------------------------------------------------

@router.get("/stages/{stage_id}/questions")
async def list_questions(
    stage_id: uuid.UUID,
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> list[QuestionInfo]:
    return await workflow.store.get_questions(db, company_id=user.company_id, stage_id=stage_id)


@router.put("/stages/{stage_id}/questions/order")
async def reorder_questions(
    stage_id: uuid.UUID,
    body: ReorderQuestionsRequest,
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> list[QuestionInfo]:
    """Renumber the stage's questions in the given order (all or nothing)."""
    return await workflow.store.reorder_questions(
        db, company_id=user.company_id, stage_id=stage_id, question_ids=body.question_ids,
    )


@router.post("/questions", status_code=201)
async def create_question(
    body: QuestionCreate,
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> QuestionInfo:
    return await workflow.store.create_question(db, company_id=user.company_id, data=body)


@router.patch("/questions/{question_id}")
async def update_question(
    question_id: uuid.UUID,
    body: QuestionUpdate,
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> QuestionInfo:
    return await workflow.store.update_question(
        db, company_id=user.company_id, question_id=question_id, data=body,
    )


@router.delete("/questions/{question_id}", status_code=204)
async def delete_question(
    question_id: uuid.UUID,
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> None:
    """Delete a question.  Raises 409 when answers were recorded against it."""
    await workflow.store.delete_question(db, company_id=user.company_id, question_id=question_id)


# ------------------------------------------------------------------
# Transition rules
# ------------------------------------------------------------------

@router.get("/stages/{stage_id}/transitions")
async def list_transitions(
    stage_id: uuid.UUID,
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> list[TransitionRuleInfo]:
    """Outbound rules of a stage, oldest first."""
    return await workflow.store.get_transition_rules(
        db, company_id=user.company_id, stage_id=stage_id,
    )


@router.post("/transitions", status_code=201)
async def create_transition(
    body: TransitionRuleCreate,
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> RuleWriteResult:
    """Create a rule.  ``overlaps`` lists existing rules that could fire
    for the same answer.
    """
    return await workflow.store.create_transition_rule(db, company_id=user.company_id, data=body)


@router.patch("/transitions/{rule_id}")
async def update_transition(
    rule_id: uuid.UUID,
    body: TransitionRuleUpdate,
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> RuleWriteResult:
    return await workflow.store.update_transition_rule(
        db, company_id=user.company_id, rule_id=rule_id, data=body,
    )


@router.delete("/transitions/{rule_id}", status_code=204)
async def delete_transition(
    rule_id: uuid.UUID,
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> None:
    await workflow.store.delete_transition_rule(db, company_id=user.company_id, rule_id=rule_id)
