"""JobStateMachine tests: applying decisions, pending approvals, overrides.

Uses the in-memory repositories from ``helpers.mock_db``; decisions are
built by hand so each outcome can be exercised in isolation.
"""

import uuid

import pytest

from jobstage_engine.errors import (
    ConcurrentModification,
    CrossTenantReference,
    GraphValidationError,
    NotFoundError,
    PermissionDenied,
)
from jobstage_engine.models.decision import Match, NoMatch
from jobstage_engine.models.job import ActingUser, AlreadyAtStage, Applied, NotApplied, PendingApproval
from jobstage_engine.state_machine import JobStateMachine


@pytest.fixture
def machine(graph_repo, job_repo):
    m = JobStateMachine()
    m._graph = graph_repo
    m._jobs = job_repo
    return m


@pytest.fixture
def stages(tables, company_id):
    lead = tables.add_stage(company_id, "Lead", 1, maps_to_status="planning")
    build = tables.add_stage(company_id, "Build", 2, maps_to_status="active")
    close = tables.add_stage(company_id, "Close", 3, maps_to_status="completed")
    return lead, build, close


@pytest.fixture
def job(tables, stages):
    lead, *_ = stages
    return tables.add_job(lead)


def _match(to_stage, *, automatic=True, override=False):
    return Match(
        rule_id=uuid.uuid4(), to_stage_id=to_stage.id,
        is_automatic=automatic, requires_override=override,
    )


# =====================================================================
# Job lifecycle
# =====================================================================


class TestInitializeJob:
    @pytest.mark.asyncio
    async def test_defaults_to_lowest_active_stage(self, machine, tables, mock_db, company_id):
        tables.add_stage(company_id, "Retired", 10001)
        tables.add_stage(company_id, "Later", 5)
        first = tables.add_stage(company_id, "First", 2)

        info = await machine.initialize_job(mock_db, job_id=uuid.uuid4(), company_id=company_id)
        assert info.current_stage_id == first.id

    @pytest.mark.asyncio
    async def test_explicit_stage_and_status(self, machine, mock_db, company_id, stages):
        _, build, _ = stages
        info = await machine.initialize_job(
            mock_db, job_id=uuid.uuid4(), company_id=company_id, stage_id=build.id,
        )
        assert info.current_stage_id == build.id
        assert info.status == "active"

    @pytest.mark.asyncio
    async def test_existing_job_is_returned_unchanged(self, machine, mock_db, company_id, stages,
                                                      job):
        _, build, _ = stages
        info = await machine.initialize_job(
            mock_db, job_id=job.job_id, company_id=company_id, stage_id=build.id,
        )
        assert info.current_stage_id == job.current_stage_id

    @pytest.mark.asyncio
    async def test_company_without_stages(self, machine, mock_db, company_id):
        with pytest.raises(GraphValidationError):
            await machine.initialize_job(mock_db, job_id=uuid.uuid4(), company_id=company_id)

    @pytest.mark.asyncio
    async def test_stage_of_other_company(self, machine, tables, mock_db, company_id):
        foreign = tables.add_stage(uuid.uuid4(), "X", 1)
        with pytest.raises(CrossTenantReference):
            await machine.initialize_job(
                mock_db, job_id=uuid.uuid4(), company_id=company_id, stage_id=foreign.id,
            )


# =====================================================================
# apply_decision
# =====================================================================


class TestApplyDecision:
    @pytest.mark.asyncio
    async def test_no_match_is_not_applied(self, machine, tables, mock_db, worker, job):
        result = await machine.apply_decision(
            mock_db, job_id=job.job_id, decision=NoMatch(), acting_user=worker,
        )
        assert isinstance(result, NotApplied)
        assert tables.audit == {}

    @pytest.mark.asyncio
    async def test_automatic_move_writes_one_audit_entry(self, machine, tables, mock_db, worker,
                                                         stages, job):
        lead, build, _ = stages
        decision = _match(build)
        response_id = uuid.uuid4()

        result = await machine.apply_decision(
            mock_db, job_id=job.job_id, decision=decision, acting_user=worker,
            triggering_response_id=response_id, expected_stage_id=lead.id,
        )
        assert isinstance(result, Applied)
        assert result.job.current_stage_id == build.id
        assert result.job.status == "active"
        entry = result.audit_entry
        assert entry.from_stage_id == lead.id
        assert entry.to_stage_id == build.id
        assert entry.rule_id == decision.rule_id
        assert entry.triggering_response_id == response_id
        assert entry.applied_automatically is True
        assert entry.applied_by == "system"
        assert entry.trigger_source == "question_response"
        assert entry.duration_in_previous_stage_hours is not None
        assert len(tables.audit) == 1

    @pytest.mark.asyncio
    async def test_manual_rule_is_applied_by_the_user(self, machine, mock_db, worker, stages, job):
        _, build, _ = stages
        result = await machine.apply_decision(
            mock_db, job_id=job.job_id, decision=_match(build, automatic=False), acting_user=worker,
        )
        assert isinstance(result, Applied)
        assert result.audit_entry.applied_automatically is False
        assert result.audit_entry.applied_by == "worker-1"

    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self, machine, tables, mock_db, worker, stages, job):
        _, build, _ = stages
        decision = _match(build)
        await machine.apply_decision(mock_db, job_id=job.job_id, decision=decision,
                                     acting_user=worker)
        again = await machine.apply_decision(mock_db, job_id=job.job_id, decision=decision,
                                             acting_user=worker)
        assert isinstance(again, AlreadyAtStage)
        assert len(tables.audit) == 1

    @pytest.mark.asyncio
    async def test_stale_expected_stage_raises(self, machine, tables, mock_db, worker, stages,
                                               job):
        lead, build, close = stages
        job.current_stage_id = build.id
        with pytest.raises(ConcurrentModification) as exc_info:
            await machine.apply_decision(
                mock_db, job_id=job.job_id, decision=_match(close), acting_user=worker,
                expected_stage_id=lead.id,
            )
        assert exc_info.value.expected_stage_id == lead.id
        assert tables.audit == {}

    @pytest.mark.asyncio
    async def test_lost_compare_and_set_raises(self, machine, tables, job_repo, mock_db, worker,
                                               stages, job):
        _, build, _ = stages
        job_repo.fail_next_cas = True
        with pytest.raises(ConcurrentModification):
            await machine.apply_decision(
                mock_db, job_id=job.job_id, decision=_match(build), acting_user=worker,
            )
        assert tables.audit == {}

    @pytest.mark.asyncio
    async def test_override_rule_by_non_admin_creates_pending(self, machine, tables, mock_db,
                                                               worker, stages, job):
        lead, _, close = stages
        decision = _match(close, automatic=False, override=True)
        response_id = uuid.uuid4()

        result = await machine.apply_decision(
            mock_db, job_id=job.job_id, decision=decision, acting_user=worker,
            triggering_response_id=response_id,
        )
        assert isinstance(result, PendingApproval)
        assert result.pending.to_stage_id == close.id
        assert result.pending.requested_by == "worker-1"
        assert job.current_stage_id == lead.id
        assert tables.audit == {}

        # Same decision again does not open a second request
        again = await machine.apply_decision(
            mock_db, job_id=job.job_id, decision=decision, acting_user=worker,
            triggering_response_id=response_id,
        )
        assert again.pending.id == result.pending.id
        assert len(tables.pending) == 1

    @pytest.mark.asyncio
    async def test_resubmitted_answer_reuses_open_request(self, machine, tables, mock_db,
                                                          worker, stages, job):
        _, _, close = stages
        decision = _match(close, automatic=False, override=True)

        first = await machine.apply_decision(
            mock_db, job_id=job.job_id, decision=decision, acting_user=worker,
            triggering_response_id=uuid.uuid4(),
        )
        # A fresh response id for the same answer still maps to the open request
        second = await machine.apply_decision(
            mock_db, job_id=job.job_id, decision=decision, acting_user=worker,
            triggering_response_id=uuid.uuid4(),
        )
        assert isinstance(second, PendingApproval)
        assert second.pending.id == first.pending.id
        assert len(tables.pending) == 1

    @pytest.mark.asyncio
    async def test_override_rule_by_admin_applies(self, machine, mock_db, admin, stages, job):
        _, _, close = stages
        result = await machine.apply_decision(
            mock_db, job_id=job.job_id, decision=_match(close, override=True), acting_user=admin,
        )
        assert isinstance(result, Applied)
        assert result.audit_entry.applied_automatically is False
        assert result.audit_entry.applied_by == "owner-1"

    @pytest.mark.asyncio
    async def test_retired_target_rejected(self, machine, tables, mock_db, worker, job,
                                           company_id):
        archived = tables.add_stage(company_id, "Old", 4, archived=True)
        with pytest.raises(GraphValidationError):
            await machine.apply_decision(
                mock_db, job_id=job.job_id, decision=_match(archived), acting_user=worker,
            )

    @pytest.mark.asyncio
    async def test_job_of_other_company(self, machine, tables, mock_db, stages):
        _, build, _ = stages
        foreign_stage = tables.add_stage(uuid.uuid4(), "X", 1)
        foreign_job = tables.add_job(foreign_stage)
        intruder = ActingUser(user_id="x", company_id=uuid.uuid4())
        with pytest.raises(CrossTenantReference):
            await machine.apply_decision(
                mock_db, job_id=foreign_job.job_id, decision=_match(build), acting_user=intruder,
            )

    @pytest.mark.asyncio
    async def test_unknown_job(self, machine, mock_db, worker, stages):
        _, build, _ = stages
        with pytest.raises(NotFoundError):
            await machine.apply_decision(
                mock_db, job_id=uuid.uuid4(), decision=_match(build), acting_user=worker,
            )


# =====================================================================
# Admin actions
# =====================================================================


class TestAdminActions:
    async def _pending(self, machine, mock_db, worker, stages, job):
        _, _, close = stages
        result = await machine.apply_decision(
            mock_db, job_id=job.job_id, decision=_match(close, automatic=False, override=True),
            acting_user=worker, triggering_response_id=uuid.uuid4(),
        )
        return result.pending

    @pytest.mark.asyncio
    async def test_approve_moves_job(self, machine, tables, mock_db, worker, admin, stages, job):
        _, _, close = stages
        pending = await self._pending(machine, mock_db, worker, stages, job)

        listed = await machine.list_pending(mock_db, company_id=admin.company_id)
        assert [p.id for p in listed] == [pending.id]

        result = await machine.approve_pending(
            mock_db, pending_id=pending.id, admin=admin, reason="checked",
        )
        assert isinstance(result, Applied)
        assert job.current_stage_id == close.id
        assert result.audit_entry.trigger_source == "admin_approval"
        assert result.audit_entry.applied_by == "owner-1"
        assert result.audit_entry.rule_id == pending.rule_id
        assert tables.pending[pending.id].status == "approved"
        assert await machine.list_pending(mock_db, company_id=admin.company_id) == []

    @pytest.mark.asyncio
    async def test_reject_leaves_job(self, machine, tables, mock_db, worker, admin, stages, job):
        lead, *_ = stages
        pending = await self._pending(machine, mock_db, worker, stages, job)
        info = await machine.reject_pending(mock_db, pending_id=pending.id, admin=admin)
        assert info.status == "rejected"
        assert info.resolved_by == "owner-1"
        assert job.current_stage_id == lead.id
        assert tables.audit == {}

    @pytest.mark.asyncio
    async def test_resolved_request_cannot_be_approved(self, machine, mock_db, worker, admin,
                                                       stages, job):
        pending = await self._pending(machine, mock_db, worker, stages, job)
        await machine.reject_pending(mock_db, pending_id=pending.id, admin=admin)
        with pytest.raises(ConcurrentModification):
            await machine.approve_pending(mock_db, pending_id=pending.id, admin=admin)

    @pytest.mark.asyncio
    async def test_approve_after_job_moved_elsewhere(self, machine, mock_db, worker, admin,
                                                     stages, job):
        _, build, _ = stages
        pending = await self._pending(machine, mock_db, worker, stages, job)
        job.current_stage_id = build.id
        with pytest.raises(ConcurrentModification):
            await machine.approve_pending(mock_db, pending_id=pending.id, admin=admin)

    @pytest.mark.asyncio
    async def test_non_admin_cannot_approve(self, machine, mock_db, worker, stages, job):
        pending = await self._pending(machine, mock_db, worker, stages, job)
        with pytest.raises(PermissionDenied):
            await machine.approve_pending(mock_db, pending_id=pending.id, admin=worker)

    @pytest.mark.asyncio
    async def test_pending_of_other_company_not_found(self, machine, mock_db, worker, stages, job):
        pending = await self._pending(machine, mock_db, worker, stages, job)
        other_admin = ActingUser(user_id="a2", company_id=uuid.uuid4(), is_admin=True)
        with pytest.raises(NotFoundError):
            await machine.approve_pending(mock_db, pending_id=pending.id, admin=other_admin)

    @pytest.mark.asyncio
    async def test_override_stage(self, machine, mock_db, admin, stages, job):
        _, _, close = stages
        result = await machine.override_stage(
            mock_db, job_id=job.job_id, target_stage_id=close.id, admin=admin,
            reason="  client cancelled  ",
        )
        assert isinstance(result, Applied)
        assert result.job.status == "completed"
        assert result.audit_entry.trigger_source == "admin_override"
        assert result.audit_entry.reason == "client cancelled"
        assert result.audit_entry.rule_id is None

    @pytest.mark.asyncio
    async def test_override_needs_reason_and_admin(self, machine, mock_db, worker, admin, stages,
                                                   job):
        _, _, close = stages
        with pytest.raises(GraphValidationError):
            await machine.override_stage(
                mock_db, job_id=job.job_id, target_stage_id=close.id, admin=admin, reason="  ",
            )
        with pytest.raises(PermissionDenied):
            await machine.override_stage(
                mock_db, job_id=job.job_id, target_stage_id=close.id, admin=worker, reason="x",
            )

    @pytest.mark.asyncio
    async def test_audit_entries_in_order(self, machine, mock_db, admin, stages, job):
        lead, build, close = stages
        await machine.override_stage(mock_db, job_id=job.job_id, target_stage_id=build.id,
                                     admin=admin, reason="a")
        await machine.override_stage(mock_db, job_id=job.job_id, target_stage_id=close.id,
                                     admin=admin, reason="b")
        entries = await machine.list_audit_entries(
            mock_db, company_id=admin.company_id, job_id=job.job_id,
        )
        assert [(e.from_stage_id, e.to_stage_id) for e in entries] == [
            (lead.id, build.id), (build.id, close.id),
        ]
