"""End-to-end StageWorkflow tests on a provisioned builder workflow.

Each test provisions ``builder_preset`` into the in-memory tables, places
a job on it and drives answers through ``submit_and_apply``.
"""

import uuid
from decimal import Decimal

import pytest
import pytest_asyncio

from jobstage_engine.errors import CrossTenantReference
from jobstage_engine.models.graph import TransitionRuleCreate
from jobstage_engine.models.job import (
    ActingUser,
    Applied,
    NotApplied,
    PendingApproval,
    ResponseAccepted,
    ResponseRejected,
)


@pytest_asyncio.fixture
async def ids(workflow, mock_db, company_id):
    """Local-id → row-id map of the provisioned builder workflow."""
    report = await workflow.provision_template(
        mock_db, company_id=company_id, template_id="builder_preset", initiated_by="owner-1",
    )
    return report.id_map


@pytest_asyncio.fixture
async def job_id(workflow, mock_db, company_id, ids):
    job = await workflow.state_machine.initialize_job(
        mock_db, job_id=uuid.uuid4(), company_id=company_id,
    )
    return job.job_id


LEAD = "stage:lead_qualification"
QUALIFIED = "question:lead_qualification/lead_qualified"
ESTIMATE = "question:lead_qualification/estimated_value"


async def _answer(workflow, mock_db, user, job_id, question_id, value):
    return await workflow.submit_and_apply(
        mock_db, acting_user=user, job_id=job_id, question_id=question_id, raw_value=value,
    )


class TestSubmitAndApply:
    @pytest.mark.asyncio
    async def test_job_starts_at_first_stage(self, workflow, mock_db, company_id, ids, job_id):
        state = await workflow.state_machine.get_job_stage(
            mock_db, company_id=company_id, job_id=job_id,
        )
        assert state.current_stage_id == ids[LEAD]
        assert state.status == "planning"

    @pytest.mark.asyncio
    async def test_automatic_yes_moves_job(self, workflow, tables, mock_db, worker, ids, job_id):
        outcome = await _answer(workflow, mock_db, worker, job_id, ids[QUALIFIED], "Yes")

        assert isinstance(outcome.ingestion, ResponseAccepted)
        assert outcome.ingestion.response.normalized_value == "yes"
        result = outcome.transition
        assert isinstance(result, Applied)
        assert result.job.current_stage_id == ids["stage:initial_client_meeting"]
        assert result.audit_entry.applied_automatically is True
        assert result.audit_entry.applied_by == "system"
        assert result.audit_entry.from_stage_id == ids[LEAD]
        assert result.audit_entry.triggering_response_id == outcome.ingestion.response.id
        assert len(tables.audit) == 1

    @pytest.mark.asyncio
    async def test_manual_no_is_applied_by_worker(self, workflow, mock_db, worker, ids, job_id):
        outcome = await _answer(workflow, mock_db, worker, job_id, ids[QUALIFIED], "no")
        result = outcome.transition
        assert isinstance(result, Applied)
        assert result.job.current_stage_id == ids["stage:handover_close"]
        assert result.audit_entry.applied_automatically is False
        assert result.audit_entry.applied_by == "worker-1"

    @pytest.mark.asyncio
    async def test_invalid_answer_changes_nothing(self, workflow, tables, mock_db, worker, ids,
                                                  job_id):
        outcome = await _answer(workflow, mock_db, worker, job_id, ids[QUALIFIED], "maybe")
        assert isinstance(outcome.ingestion, ResponseRejected)
        assert outcome.transition is None
        assert tables.responses == {}
        assert tables.audit == {}
        assert tables.states[job_id].current_stage_id == ids[LEAD]

    @pytest.mark.asyncio
    async def test_answer_without_rule_is_not_applied(self, workflow, mock_db, worker, ids,
                                                      job_id):
        outcome = await _answer(workflow, mock_db, worker, job_id, ids[ESTIMATE], "250000")
        assert isinstance(outcome.ingestion, ResponseAccepted)
        assert isinstance(outcome.transition, NotApplied)

    @pytest.mark.asyncio
    async def test_numeric_threshold(self, workflow, mock_db, worker, admin, ids, job_id):
        await workflow.state_machine.override_stage(
            mock_db, job_id=job_id, target_stage_id=ids["stage:construction_execution"],
            admin=admin, reason="skip ahead for test",
        )
        completion = ids["question:construction_execution/completion_percentage"]

        below = await _answer(workflow, mock_db, worker, job_id, completion, "80")
        assert isinstance(below.transition, NotApplied)

        reached = await _answer(workflow, mock_db, worker, job_id, completion, "90.0")
        assert isinstance(reached.transition, Applied)
        assert reached.transition.job.current_stage_id == ids["stage:inspections_payments"]
        assert reached.transition.job.status == "active"

    @pytest.mark.asyncio
    async def test_override_rule_waits_for_admin(self, workflow, tables, mock_db, worker, admin,
                                                 company_id, ids, job_id):
        await workflow.store.create_transition_rule(
            mock_db,
            company_id=company_id,
            data=TransitionRuleCreate(
                from_stage_id=ids[LEAD],
                to_stage_id=ids["stage:contract_deposit"],
                question_id=ids[ESTIMATE],
                numeric_operator="gte",
                numeric_value=Decimal("1000000"),
                is_automatic=True,
                requires_admin_override=True,
            ),
        )

        outcome = await _answer(workflow, mock_db, worker, job_id, ids[ESTIMATE], "2500000")
        pending = outcome.transition
        assert isinstance(pending, PendingApproval)
        assert tables.audit == {}
        assert tables.states[job_id].current_stage_id == ids[LEAD]

        approved = await workflow.state_machine.approve_pending(
            mock_db, pending_id=pending.pending.id, admin=admin,
        )
        assert isinstance(approved, Applied)
        assert approved.job.current_stage_id == ids["stage:contract_deposit"]
        assert approved.audit_entry.triggering_response_id == outcome.ingestion.response.id

    @pytest.mark.asyncio
    async def test_other_company_cannot_answer(self, workflow, mock_db, ids, job_id):
        intruder = ActingUser(user_id="x", company_id=uuid.uuid4())
        with pytest.raises(CrossTenantReference):
            await _answer(workflow, mock_db, intruder, job_id, ids[QUALIFIED], "Yes")


class TestCurrentQuestion:
    @pytest.mark.asyncio
    async def test_first_unanswered_question(self, workflow, mock_db, worker, company_id, ids,
                                             job_id):
        flow = await workflow.get_current_question(mock_db, company_id=company_id, job_id=job_id)
        assert flow.current_question.id == ids[QUALIFIED]
        assert len(flow.remaining_questions) == 3
        assert flow.can_proceed is False

        await _answer(workflow, mock_db, worker, job_id, ids[ESTIMATE], "1000")
        flow = await workflow.get_current_question(mock_db, company_id=company_id, job_id=job_id)
        assert flow.current_question.id == ids[QUALIFIED]
        assert flow.answered_question_ids == [ids[ESTIMATE]]

    @pytest.mark.asyncio
    async def test_new_stage_starts_fresh(self, workflow, mock_db, worker, company_id, ids,
                                          job_id):
        await _answer(workflow, mock_db, worker, job_id, ids[QUALIFIED], "Yes")
        flow = await workflow.get_current_question(mock_db, company_id=company_id, job_id=job_id)
        assert flow.current_stage_id == ids["stage:initial_client_meeting"]
        assert flow.current_question.id == ids["question:initial_client_meeting/meeting_held"]
        assert flow.answered_question_ids == []

    @pytest.mark.asyncio
    async def test_earlier_answer_skips_question(self, workflow, mock_db, worker, company_id,
                                                 ids, job_id):
        await _answer(workflow, mock_db, worker, job_id, ids[QUALIFIED], "Yes")
        held = ids["question:initial_client_meeting/meeting_held"]
        site_date = ids["question:initial_client_meeting/site_meeting_date"]
        notes = ids["question:initial_client_meeting/meeting_notes"]

        outcome = await _answer(workflow, mock_db, worker, job_id, held, "No")
        assert isinstance(outcome.transition, NotApplied)

        flow = await workflow.get_current_question(mock_db, company_id=company_id, job_id=job_id)
        assert flow.skipped_question_ids == [site_date]
        assert [q.id for q in flow.remaining_questions] == [notes]
        assert flow.current_question.id == notes
        assert flow.can_proceed is True
