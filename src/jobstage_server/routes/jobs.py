"""Job endpoints: place a job on the graph, answer questions, move it.

``POST /jobs/{job_id}/responses`` is the main entry point: it stores the
answer and, when the answer is valid, evaluates the current stage's rules
and applies the outcome in the same transaction.
"""

import uuid

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from jobstage_engine.models.job import (
    ActingUser,
    ApplyResult,
    AuditEntryInfo,
    JobStageInfo,
    QuestionFlow,
    SubmissionOutcome,
)
from jobstage_engine.workflow import StageWorkflow

from jobstage_server.dependencies import get_acting_user, get_db, get_workflow

router = APIRouter(tags=["jobs"])


# ------------------------------------------------------------------
# Request models
# ------------------------------------------------------------------

class InitializeJobRequest(BaseModel):
    """Body for PUT /jobs/{job_id}.  Omit stage_id to start at the first stage."""
    stage_id: uuid.UUID | None = None


class SubmitResponseRequest(BaseModel):
    """Body for POST /jobs/{job_id}/responses."""
    question_id: uuid.UUID
    value: str


class OverrideStageRequest(BaseModel):
    """Body for POST /jobs/{job_id}/override."""
    target_stage_id: uuid.UUID
    reason: str


# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------

@router.put("/jobs/{job_id}")
async def initialize_job(
    job_id: uuid.UUID,
    body: InitializeJobRequest,
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> JobStageInfo:
    """Place a job on the company's graph; idempotent for an existing job."""
    return await workflow.state_machine.initialize_job(
        db, job_id=job_id, company_id=user.company_id, stage_id=body.stage_id,
    )


@router.get("/jobs/{job_id}")
async def get_job_stage(
    job_id: uuid.UUID,
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> JobStageInfo:
    return await workflow.state_machine.get_job_stage(db, company_id=user.company_id, job_id=job_id)


@router.get("/jobs/{job_id}/current-question")
async def get_current_question(
    job_id: uuid.UUID,
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> QuestionFlow:
    """The next unanswered question of the job's current stage."""
    return await workflow.get_current_question(db, company_id=user.company_id, job_id=job_id)


@router.post("/jobs/{job_id}/responses")
async def submit_response(
    job_id: uuid.UUID,
    body: SubmitResponseRequest,
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> SubmissionOutcome:
    """Submit an answer and apply any transition it triggers.

    A rejected answer is returned as ``ingestion.outcome == "rejected"`` with
    200; nothing is stored in that case.  Raises 409 if the job moved
    concurrently (safe to retry).
    """
    return await workflow.submit_and_apply(
        db,
        acting_user=user,
        job_id=job_id,
        question_id=body.question_id,
        raw_value=body.value,
    )


@router.get("/jobs/{job_id}/audit")
async def list_audit_entries(
    job_id: uuid.UUID,
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> list[AuditEntryInfo]:
    """Stage history of a job, oldest first."""
    return await workflow.state_machine.list_audit_entries(
        db, company_id=user.company_id, job_id=job_id,
    )


@router.post("/jobs/{job_id}/override")
async def override_stage(
    job_id: uuid.UUID,
    body: OverrideStageRequest,
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> ApplyResult:
    """Admin-only: move a job to any active stage, bypassing rules."""
    return await workflow.state_machine.override_stage(
        db,
        job_id=job_id,
        target_stage_id=body.target_stage_id,
        admin=user,
        reason=body.reason,
    )
