"""JobStateMachine: owns each job's stage pointer and its audit trail.

Stateless: each call loads the job's ``JobStageState`` row, decides, and
writes through the repositories.  Moves use a compare-and-set on
``current_stage_id`` so two writers racing on one job cannot both succeed;
the loser gets :class:`ConcurrentModification` and may retry.

Every applied move appends exactly one audit entry.  Replaying a decision
for a job that already sits at the target writes nothing.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from jobstage_db.models.enums import PendingStatus, TriggerSource
from jobstage_db.models.graph import Stage
from jobstage_db.models.job import JobStageState
from jobstage_db.repository import JobRepository, StageGraphRepository

from jobstage_engine.constants import RETIRED_ORDER_OFFSET, SYSTEM_ACTOR
from jobstage_engine.errors import (
    ConcurrentModification,
    CrossTenantReference,
    GraphValidationError,
    NotFoundError,
    PermissionDenied,
)
from jobstage_engine.models.decision import Decision, NoMatch
from jobstage_engine.models.job import (
    ActingUser,
    AlreadyAtStage,
    Applied,
    ApplyResult,
    AuditEntryInfo,
    JobStageInfo,
    NotApplied,
    PendingApproval,
    PendingTransitionInfo,
)

logger = logging.getLogger(__name__)


def _hours_since(moment: datetime | None) -> float | None:
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    delta = datetime.now(timezone.utc) - moment
    return round(delta.total_seconds() / 3600, 2)


class JobStateMachine:
    """Applies decisions and admin actions to a job's current stage."""

    def __init__(self) -> None:
        self._graph = StageGraphRepository()
        self._jobs = JobRepository()

    # ==================================================================
    # Job lifecycle
    # ==================================================================

    async def initialize_job(
        self,
        db: AsyncSession,
        *,
        job_id: uuid.UUID,
        company_id: uuid.UUID,
        stage_id: uuid.UUID | None = None,
    ) -> JobStageInfo:
        """Place a new job on its company's graph.

        Without *stage_id* the job starts at the active stage with the lowest
        sequence_order.  Calling again for an existing job returns its state.
        """
        existing = await self._jobs.get_state(db, job_id)
        if existing is not None:
            if existing.company_id != company_id:
                raise CrossTenantReference(f"Job {job_id} belongs to another company")
            return JobStageInfo.model_validate(existing)

        if stage_id is None:
            stages = await self._graph.list_stages(
                db, company_id, retired_floor=RETIRED_ORDER_OFFSET,
            )
            if not stages:
                raise GraphValidationError(f"Company {company_id} has no active stages")
            stage = stages[0]
        else:
            stage = await self._target_stage(db, company_id, stage_id)

        state = await self._jobs.create_state(
            db,
            job_id=job_id,
            company_id=company_id,
            stage_id=stage.id,
            status=stage.maps_to_status,
        )
        logger.info("Job %s initialized at stage %s (%s)", job_id, stage.id, stage.name)
        return JobStageInfo.model_validate(state)

    async def get_job_stage(
        self, db: AsyncSession, *, company_id: uuid.UUID, job_id: uuid.UUID
    ) -> JobStageInfo:
        return JobStageInfo.model_validate(await self._state(db, company_id, job_id))

    async def list_audit_entries(
        self, db: AsyncSession, *, company_id: uuid.UUID, job_id: uuid.UUID
    ) -> list[AuditEntryInfo]:
        await self._state(db, company_id, job_id)
        rows = await self._jobs.list_audit_entries(db, job_id)
        return [AuditEntryInfo.model_validate(r) for r in rows]

    # ==================================================================
    # Applying decisions
    # ==================================================================

    async def apply_decision(
        self,
        db: AsyncSession,
        *,
        job_id: uuid.UUID,
        decision: Decision,
        acting_user: ActingUser,
        triggering_response_id: uuid.UUID | None = None,
        expected_stage_id: uuid.UUID | None = None,
    ) -> ApplyResult:
        """Apply an evaluator decision to a job.

        ``expected_stage_id`` is the stage the decision was evaluated
        against; if the job has since moved elsewhere the call raises
        :class:`ConcurrentModification`.  The caller must
        ``await db.commit()`` to persist.
        """
        if isinstance(decision, NoMatch):
            return NotApplied(diagnostics=decision.diagnostics)

        state = await self._state(db, acting_user.company_id, job_id)
        if state.current_stage_id == decision.to_stage_id:
            return AlreadyAtStage(job=JobStageInfo.model_validate(state))
        if expected_stage_id is not None and state.current_stage_id != expected_stage_id:
            raise ConcurrentModification(
                f"Job {job_id} moved from stage {expected_stage_id}",
                job_id=job_id,
                expected_stage_id=expected_stage_id,
            )

        target = await self._target_stage(db, state.company_id, decision.to_stage_id)

        if decision.requires_override and not acting_user.is_admin:
            pending = await self._jobs.find_open_pending(
                db,
                job_id=job_id,
                rule_id=decision.rule_id,
                from_stage_id=state.current_stage_id,
            )
            if pending is None:
                pending = await self._jobs.create_pending(
                    db,
                    job_id=job_id,
                    company_id=state.company_id,
                    rule_id=decision.rule_id,
                    from_stage_id=state.current_stage_id,
                    to_stage_id=target.id,
                    triggering_response_id=triggering_response_id,
                    requested_by=acting_user.user_id,
                    status=PendingStatus.PENDING,
                )
                logger.info(
                    "Job %s: transition to %s awaits admin approval (pending %s)",
                    job_id, target.id, pending.id,
                )
            return PendingApproval(pending=PendingTransitionInfo.model_validate(pending))

        automatic = decision.is_automatic and not decision.requires_override
        return await self._move(
            db,
            state,
            target,
            expected_stage_id=expected_stage_id or state.current_stage_id,
            rule_id=decision.rule_id,
            triggering_response_id=triggering_response_id,
            trigger_source=TriggerSource.QUESTION_RESPONSE,
            automatic=automatic,
            applied_by=SYSTEM_ACTOR if automatic else acting_user.user_id,
        )

    # ==================================================================
    # Admin actions
    # ==================================================================

    async def list_pending(
        self,
        db: AsyncSession,
        *,
        company_id: uuid.UUID,
        job_id: uuid.UUID | None = None,
    ) -> list[PendingTransitionInfo]:
        rows = await self._jobs.list_pending(db, company_id, job_id=job_id)
        return [PendingTransitionInfo.model_validate(r) for r in rows]

    async def approve_pending(
        self,
        db: AsyncSession,
        *,
        pending_id: uuid.UUID,
        admin: ActingUser,
        reason: str | None = None,
    ) -> ApplyResult:
        """Confirm a pending transition and move the job."""
        self._require_admin(admin)
        pending = await self._open_pending(db, admin.company_id, pending_id)
        state = await self._state(db, admin.company_id, pending.job_id)

        if state.current_stage_id == pending.to_stage_id:
            await self._jobs.resolve_pending(
                db, pending, status=PendingStatus.APPROVED, resolved_by=admin.user_id,
            )
            return AlreadyAtStage(job=JobStageInfo.model_validate(state))
        if state.current_stage_id != pending.from_stage_id:
            raise ConcurrentModification(
                f"Job {pending.job_id} left stage {pending.from_stage_id} "
                "after the transition was requested",
                job_id=pending.job_id,
                expected_stage_id=pending.from_stage_id,
            )

        target = await self._target_stage(db, state.company_id, pending.to_stage_id)
        result = await self._move(
            db,
            state,
            target,
            expected_stage_id=pending.from_stage_id,
            rule_id=pending.rule_id,
            triggering_response_id=pending.triggering_response_id,
            trigger_source=TriggerSource.ADMIN_APPROVAL,
            automatic=False,
            applied_by=admin.user_id,
            reason=reason,
        )
        await self._jobs.resolve_pending(
            db, pending, status=PendingStatus.APPROVED, resolved_by=admin.user_id,
        )
        return result

    async def reject_pending(
        self,
        db: AsyncSession,
        *,
        pending_id: uuid.UUID,
        admin: ActingUser,
    ) -> PendingTransitionInfo:
        self._require_admin(admin)
        pending = await self._open_pending(db, admin.company_id, pending_id)
        pending = await self._jobs.resolve_pending(
            db, pending, status=PendingStatus.REJECTED, resolved_by=admin.user_id,
        )
        logger.info("Pending transition %s rejected by %s", pending_id, admin.user_id)
        return PendingTransitionInfo.model_validate(pending)

    async def override_stage(
        self,
        db: AsyncSession,
        *,
        job_id: uuid.UUID,
        target_stage_id: uuid.UUID,
        admin: ActingUser,
        reason: str,
    ) -> ApplyResult:
        """Move a job to any active stage of its company, bypassing rules."""
        self._require_admin(admin)
        if not reason or not reason.strip():
            raise GraphValidationError("An override needs a reason")
        state = await self._state(db, admin.company_id, job_id)
        target = await self._target_stage(db, state.company_id, target_stage_id)
        if state.current_stage_id == target.id:
            return AlreadyAtStage(job=JobStageInfo.model_validate(state))
        return await self._move(
            db,
            state,
            target,
            expected_stage_id=state.current_stage_id,
            rule_id=None,
            triggering_response_id=None,
            trigger_source=TriggerSource.ADMIN_OVERRIDE,
            automatic=False,
            applied_by=admin.user_id,
            reason=reason.strip(),
        )

    # ==================================================================
    # Internal helpers
    # ==================================================================

    async def _move(
        self,
        db: AsyncSession,
        state: JobStageState,
        target: Stage,
        *,
        expected_stage_id: uuid.UUID,
        rule_id: uuid.UUID | None,
        triggering_response_id: uuid.UUID | None,
        trigger_source: TriggerSource,
        automatic: bool,
        applied_by: str,
        reason: str | None = None,
    ) -> Applied:
        """Compare-and-set the pointer, then append the audit entry."""
        from_stage_id = state.current_stage_id
        hours = _hours_since(state.stage_entered_at)
        moved = await self._jobs.compare_and_set_stage(
            db,
            state,
            expected_stage_id=expected_stage_id,
            new_stage_id=target.id,
            status=target.maps_to_status,
        )
        if not moved:
            raise ConcurrentModification(
                f"Job {state.job_id} is no longer at stage {expected_stage_id}",
                job_id=state.job_id,
                expected_stage_id=expected_stage_id,
            )
        entry = await self._jobs.append_audit_entry(
            db,
            job_id=state.job_id,
            company_id=state.company_id,
            from_stage_id=from_stage_id,
            to_stage_id=target.id,
            triggering_response_id=triggering_response_id,
            rule_id=rule_id,
            trigger_source=trigger_source,
            applied_automatically=automatic,
            applied_by=applied_by,
            reason=reason,
            duration_in_previous_stage_hours=hours,
            applied_at=datetime.now(timezone.utc),
        )
        logger.info(
            "Job %s moved %s -> %s (%s, by %s)",
            state.job_id, from_stage_id, target.id, trigger_source.value, applied_by,
        )
        return Applied(
            job=JobStageInfo.model_validate(state),
            audit_entry=AuditEntryInfo.model_validate(entry),
        )

    async def _state(
        self, db: AsyncSession, company_id: uuid.UUID, job_id: uuid.UUID
    ) -> JobStageState:
        state = await self._jobs.get_state(db, job_id)
        if state is None:
            raise NotFoundError(f"Job not found: {job_id}")
        if state.company_id != company_id:
            logger.error("Company %s touched job %s of another company", company_id, job_id)
            raise CrossTenantReference(f"Job {job_id} belongs to another company")
        return state

    async def _target_stage(
        self, db: AsyncSession, company_id: uuid.UUID, stage_id: uuid.UUID
    ) -> Stage:
        stage = await self._graph.get_stage(db, stage_id)
        if stage is None:
            raise NotFoundError(f"Stage not found: {stage_id}")
        if stage.company_id != company_id:
            logger.error(
                "Company %s referenced stage %s of company %s",
                company_id, stage_id, stage.company_id,
            )
            raise CrossTenantReference(f"Stage {stage_id} belongs to another company")
        if stage.archived or stage.sequence_order >= RETIRED_ORDER_OFFSET:
            raise GraphValidationError(f"Stage {stage_id} is retired")
        return stage

    async def _open_pending(self, db: AsyncSession, company_id: uuid.UUID, pending_id: uuid.UUID):
        pending = await self._jobs.get_pending(db, pending_id)
        if pending is None or pending.company_id != company_id:
            raise NotFoundError(f"Pending transition not found: {pending_id}")
        if pending.status != PendingStatus.PENDING:
            raise ConcurrentModification(
                f"Pending transition {pending_id} is already {pending.status}",
                job_id=pending.job_id,
            )
        return pending

    @staticmethod
    def _require_admin(user: ActingUser) -> None:
        if not user.is_admin:
            raise PermissionDenied("This action needs an admin")
