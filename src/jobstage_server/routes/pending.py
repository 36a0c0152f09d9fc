"""Pending transition endpoints: the admin approval queue.

Rules flagged ``requires_admin_override`` park the move here when a
non-admin triggers them.  Approving moves the job; rejecting leaves it.
"""

import uuid

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from jobstage_engine.models.job import ActingUser, ApplyResult, PendingTransitionInfo
from jobstage_engine.workflow import StageWorkflow

from jobstage_server.dependencies import get_acting_user, get_db, get_workflow

router = APIRouter(tags=["pending"])


class ApprovePendingRequest(BaseModel):
    """Body for POST /pending/{pending_id}/approve."""
    reason: str | None = None


@router.get("/pending")
async def list_pending(
    job_id: uuid.UUID | None = Query(None, description="Only this job's requests"),
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> list[PendingTransitionInfo]:
    """Open requests of the caller's company."""
    return await workflow.state_machine.list_pending(
        db, company_id=user.company_id, job_id=job_id,
    )


@router.post("/pending/{pending_id}/approve")
async def approve_pending(
    pending_id: uuid.UUID,
    body: ApprovePendingRequest | None = None,
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> ApplyResult:
    return await workflow.state_machine.approve_pending(
        db, pending_id=pending_id, admin=user, reason=body.reason if body else None,
    )


@router.post("/pending/{pending_id}/reject")
async def reject_pending(
    pending_id: uuid.UUID,
    user: ActingUser = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    workflow: StageWorkflow = Depends(get_workflow),
) -> PendingTransitionInfo:
    return await workflow.state_machine.reject_pending(db, pending_id=pending_id, admin=user)
