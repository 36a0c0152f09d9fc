"""StageWorkflow: the SDK facade callers drive the engine through.

Bundles the graph store, ingestion, evaluator, state machine and
provisioning service behind the operations a job-tracking product needs:

    workflow = StageWorkflow(templates)
    result = await workflow.submit_and_apply(
        db, acting_user=user, job_id=job_id, question_id=qid, raw_value="Yes",
    )
    await db.commit()

Like the components it wraps, the facade never commits except during
provisioning, which commits step by step.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from jobstage_db.repository import JobRepository, StageGraphRepository

from jobstage_engine.errors import CrossTenantReference
from jobstage_engine.evaluator import TransitionEvaluator
from jobstage_engine.graph_store import StageGraphStore
from jobstage_engine.ingestion import ResponseIngestion
from jobstage_engine.models.decision import DiagnosticCode
from jobstage_engine.models.graph import QuestionInfo
from jobstage_engine.models.job import (
    ActingUser,
    ApplyResult,
    IngestionResult,
    QuestionFlow,
    ResponseAccepted,
    ResponseInfo,
    SubmissionOutcome,
)
from jobstage_engine.models.provisioning import ProvisioningReport
from jobstage_engine.provisioning import ProvisioningService
from jobstage_engine.state_machine import JobStateMachine
from jobstage_engine.templates import TemplateStore

logger = logging.getLogger(__name__)


class StageWorkflow:
    """Entry point for submitting answers, moving jobs and provisioning.

    Args:
        templates: a loaded :class:`TemplateStore`
    """

    def __init__(self, templates: TemplateStore) -> None:
        self.templates = templates
        self.store = StageGraphStore()
        self.ingestion = ResponseIngestion()
        self.evaluator = TransitionEvaluator()
        self.state_machine = JobStateMachine()
        self.provisioning = ProvisioningService(self.store)
        self._graph = StageGraphRepository()
        self._jobs = JobRepository()

    # ==================================================================
    # Answers and transitions
    # ==================================================================

    async def submit_response(
        self,
        db: AsyncSession,
        *,
        acting_user: ActingUser,
        job_id: uuid.UUID,
        question_id: uuid.UUID,
        raw_value: str,
    ) -> IngestionResult:
        return await self.ingestion.submit_response(
            db,
            company_id=acting_user.company_id,
            job_id=job_id,
            question_id=question_id,
            raw_value=raw_value,
            submitted_by=acting_user.user_id,
        )

    async def evaluate_and_apply(
        self,
        db: AsyncSession,
        *,
        job_id: uuid.UUID,
        question_id: uuid.UUID,
        response: ResponseInfo,
        acting_user: ActingUser,
    ) -> ApplyResult:
        """Evaluate a stored response against the job's current stage and
        apply the outcome.

        A cross-company reference in the graph is raised as
        ``CrossTenantReference`` rather than returned as a diagnostic.
        """
        state = await self.state_machine.get_job_stage(
            db, company_id=acting_user.company_id, job_id=job_id,
        )
        decision = await self.evaluator.evaluate(
            db,
            from_stage_id=state.current_stage_id,
            question_id=question_id,
            normalized_value=response.normalized_value,
            company_id=acting_user.company_id,
        )
        for diag in decision.diagnostics:
            if diag.code == DiagnosticCode.CROSS_TENANT_REFERENCE:
                raise CrossTenantReference(diag.message)

        return await self.state_machine.apply_decision(
            db,
            job_id=job_id,
            decision=decision,
            acting_user=acting_user,
            triggering_response_id=response.id,
            expected_stage_id=state.current_stage_id,
        )

    async def submit_and_apply(
        self,
        db: AsyncSession,
        *,
        acting_user: ActingUser,
        job_id: uuid.UUID,
        question_id: uuid.UUID,
        raw_value: str,
    ) -> SubmissionOutcome:
        """Submit an answer and, if it was accepted, evaluate and apply it."""
        ingestion = await self.submit_response(
            db,
            acting_user=acting_user,
            job_id=job_id,
            question_id=question_id,
            raw_value=raw_value,
        )
        if not isinstance(ingestion, ResponseAccepted):
            return SubmissionOutcome(ingestion=ingestion)
        transition = await self.evaluate_and_apply(
            db,
            job_id=job_id,
            question_id=question_id,
            response=ingestion.response,
            acting_user=acting_user,
        )
        return SubmissionOutcome(ingestion=ingestion, transition=transition)

    async def get_current_question(
        self, db: AsyncSession, *, company_id: uuid.UUID, job_id: uuid.UUID
    ) -> QuestionFlow:
        """First question of the job's current stage that is still open.

        A question is open when it has no current answer and none of its
        skip conditions holds against the job's current answers.
        ``can_proceed`` is true once no required question is open.
        """
        state = await self.state_machine.get_job_stage(
            db, company_id=company_id, job_id=job_id,
        )
        questions = [
            QuestionInfo.model_validate(q)
            for q in await self._graph.list_questions(db, state.current_stage_id)
        ]
        answered = await self._jobs.current_responses(db, job_id)
        values = {qid: r.normalized_value for qid, r in answered.items()}
        skipped = {
            q.id for q in questions
            if q.id not in answered and q.skip_conditions is not None
            and q.skip_conditions.matches(values)
        }
        remaining = [q for q in questions if q.id not in answered and q.id not in skipped]
        return QuestionFlow(
            job_id=job_id,
            current_stage_id=state.current_stage_id,
            current_question=remaining[0] if remaining else None,
            remaining_questions=remaining,
            answered_question_ids=[q.id for q in questions if q.id in answered],
            skipped_question_ids=[q.id for q in questions if q.id in skipped],
            can_proceed=not any(q.is_required for q in remaining),
        )

    # ==================================================================
    # Provisioning
    # ==================================================================

    async def provision_template(
        self,
        db: AsyncSession,
        *,
        company_id: uuid.UUID,
        template_id: str,
        initiated_by: str,
        run_id: str | None = None,
    ) -> ProvisioningReport:
        template = self.templates.get(template_id)
        return await self.provisioning.provision(
            db,
            company_id=company_id,
            template=template,
            initiated_by=initiated_by,
            run_id=run_id,
        )
