"""Provisioning tests: teardown tiers, plan building, rebuild and resume.

The teardown scenarios seed an "old" graph in MockTables and turn on the
failure knobs (pinned stages, no archive column, blocked retire) to force
each tier in turn.
"""

import uuid

import pytest

from jobstage_engine.constants import RETIRED_ORDER_OFFSET
from jobstage_engine.errors import NotFoundError, ProvisioningFailed
from jobstage_engine.graph_store import StageGraphStore
from jobstage_engine.models.provisioning import Attempting, Blocked, Exhausted, Succeeded
from jobstage_engine.provisioning import ProvisioningService, TeardownMachine, build_plan
from jobstage_engine.templates import TemplateStore

SMALL_TEMPLATE = {
    "id": "small",
    "name": "Small",
    "stages": [
        {
            "key": "intake",
            "name": "Intake",
            "sequence_order": 1,
            "questions": [
                {"key": "ready", "question_text": "Ready?", "sequence_order": 1},
                {"key": "size", "question_text": "How big?", "response_type": "number",
                 "sequence_order": 2},
            ],
        },
        {"key": "done", "name": "Done", "sequence_order": 2, "maps_to_status": "completed"},
    ],
    "transitions": [
        {"from_stage": "intake", "question": "ready", "to_stage": "done",
         "trigger_response": "Yes", "is_automatic": True},
        {"from_stage": "intake", "question": "ready", "to_stage": "intake",
         "trigger_response": "No"},
    ],
}


@pytest.fixture
def small_template():
    return TemplateStore.parse(SMALL_TEMPLATE)


@pytest.fixture
def service(graph_repo):
    store = StageGraphStore()
    store._repo = graph_repo
    svc = ProvisioningService(store)
    svc._repo = graph_repo
    return svc


@pytest.fixture
def old_graph(tables, company_id):
    """A company graph with one job on it and some history."""
    a = tables.add_stage(company_id, "Old A", 1)
    b = tables.add_stage(company_id, "Old B", 2)
    c = tables.add_stage(company_id, "Old C", 3)
    question = tables.add_question(a, "Old question?", "yes_no")
    tables.add_rule(question, b, trigger_response="yes")
    job = tables.add_job(a)
    tables.add_audit(job, b, a)
    return a, b, c, question, job


def _active_names(tables, company_id):
    return sorted(
        s.name for s in tables.stages.values()
        if s.company_id == company_id and not s.archived
        and s.sequence_order < RETIRED_ORDER_OFFSET
    )


# =====================================================================
# TeardownMachine
# =====================================================================


class TestTeardownMachine:
    def test_starts_at_first_tier(self):
        machine = TeardownMachine(("one", "two"))
        assert machine.state == Attempting(tier="one")
        assert not machine.done

    def test_block_then_advance(self):
        machine = TeardownMachine(("one", "two"))
        blocked = machine.block("fk")
        assert blocked == Blocked(tier="one", next_tier="two", reason="fk")
        assert machine.advance() == Attempting(tier="two")
        assert machine.succeed() == Succeeded(tier="two")
        assert machine.done

    def test_last_tier_blocked_is_exhausted(self):
        machine = TeardownMachine(("only",))
        machine.block("fk")
        assert machine.advance() == Exhausted()
        assert machine.done

    def test_illegal_moves(self):
        machine = TeardownMachine(("one",))
        with pytest.raises(RuntimeError):
            machine.advance()
        machine.succeed()
        with pytest.raises(RuntimeError):
            machine.block("late")

    def test_needs_a_tier(self):
        with pytest.raises(ValueError):
            TeardownMachine(())


# =====================================================================
# Plan
# =====================================================================


class TestBuildPlan:
    def test_local_ids(self, small_template):
        plan = build_plan(small_template)
        assert [s.local_id for s in plan.stages] == ["stage:intake", "stage:done"]
        assert [q.local_id for q in plan.questions] == ["question:intake/ready",
                                                       "question:intake/size"]
        assert plan.questions[0].stage_local_id == "stage:intake"
        first, second = plan.transitions
        assert first.local_id == "rule:1"
        assert first.question_local_id == "question:intake/ready"
        assert not first.is_self_transition
        assert second.is_self_transition

    def test_builder_preset_shape(self, templates):
        plan = build_plan(templates.get("builder_preset"))
        assert len(plan.stages) == 12
        assert len(plan.questions) == 36
        assert len(plan.transitions) == 13
        assert plan.stages[0].local_id == "stage:lead_qualification"
        site_date = next(
            q for q in plan.questions
            if q.local_id == "question:initial_client_meeting/site_meeting_date"
        )
        assert site_date.skip_when == [("question:initial_client_meeting/meeting_held", "No")]


# =====================================================================
# Provisioning runs
# =====================================================================


class TestProvision:
    @pytest.mark.asyncio
    async def test_empty_company_gets_builder_preset(self, service, tables, mock_db, templates,
                                                     company_id):
        report = await service.provision(
            mock_db, company_id=company_id, template=templates.get("builder_preset"),
            initiated_by="owner-1",
        )
        assert report.final_tier == "hard_delete"
        assert len(report.created_stage_ids) == 12
        assert len(report.created_question_ids) == 36
        assert len(report.created_rule_ids) == 13
        assert report.reused_ids == []
        assert report.finished_at is not None
        assert len(tables.stages) == 12
        assert all(s.provisioning_run_id == report.run_id for s in tables.stages.values())
        assert all(s.created_by == "owner-1" for s in tables.stages.values())
        # one commit after teardown and one per rebuild step
        assert mock_db.commit.await_count == 4

    @pytest.mark.asyncio
    async def test_self_transition_skipped(self, service, tables, mock_db, small_template,
                                           company_id):
        report = await service.provision(
            mock_db, company_id=company_id, template=small_template, initiated_by="owner-1",
        )
        assert report.skipped_transitions == ["rule:2"]
        assert len(tables.rules) == 1
        rule = next(iter(tables.rules.values()))
        assert rule.from_stage_id == report.id_map["stage:intake"]
        assert rule.to_stage_id == report.id_map["stage:done"]
        assert rule.is_automatic is True

    @pytest.mark.asyncio
    async def test_graph_without_history_is_hard_deleted(self, service, tables, mock_db,
                                                         small_template, company_id):
        old = tables.add_stage(company_id, "Unused", 1)
        tables.add_question(old, "Unused?", "yes_no")

        report = await service.provision(
            mock_db, company_id=company_id, template=small_template, initiated_by="owner-1",
        )
        assert report.final_tier == "hard_delete"
        assert report.deleted_stage_ids == [old.id]
        assert old.id not in tables.stages
        assert _active_names(tables, company_id) == ["Done", "Intake"]

    @pytest.mark.asyncio
    async def test_history_falls_back_to_smart_clear(self, service, tables, mock_db,
                                                     small_template, company_id, old_graph):
        a, b, c, question, job = old_graph
        answered = tables.add_question(b, "Answered?", "text")
        tables.add_response(job, answered, "kept")
        audit_before = {k: vars(v).copy() for k, v in tables.audit.items()}

        report = await service.provision(
            mock_db, company_id=company_id, template=small_template, initiated_by="owner-1",
        )

        first = report.tier_attempts[0]
        assert first.tier == "hard_delete"
        assert first.succeeded is False
        assert first.blocking_table == "stage_responses"
        assert report.final_tier == "smart_clear"

        # history-bearing stages retired, the unused one deleted
        assert set(report.retired_stage_ids) == {a.id, b.id}
        assert report.deleted_stage_ids == [c.id]
        assert a.sequence_order == 1 + RETIRED_ORDER_OFFSET
        assert b.sequence_order == 2 + RETIRED_ORDER_OFFSET
        # the answered question survives, the unanswered one is gone
        assert answered.id in tables.questions
        assert question.id not in tables.questions

        # audit rows and the job pointer are untouched
        assert {k: vars(v) for k, v in tables.audit.items()} == audit_before
        assert job.current_stage_id == a.id
        assert _active_names(tables, company_id) == ["Done", "Intake"]

    @pytest.mark.asyncio
    async def test_pinned_stage_falls_back_to_archive(self, service, tables, mock_db,
                                                      small_template, company_id, old_graph):
        a, b, c, *_ = old_graph
        tables.pinned_stage_ids.add(c.id)

        report = await service.provision(
            mock_db, company_id=company_id, template=small_template, initiated_by="owner-1",
        )
        assert [t.tier for t in report.tier_attempts] == ["hard_delete", "smart_clear", "archive"]
        assert report.tier_attempts[1].blocking_table == "job_tasks"
        assert report.final_tier == "archive"
        assert a.archived and b.archived and c.archived
        assert _active_names(tables, company_id) == ["Done", "Intake"]

    @pytest.mark.asyncio
    async def test_no_archive_column_falls_back_to_rename(self, service, tables, mock_db,
                                                          small_template, company_id,
                                                          old_graph):
        a, _, c, *_ = old_graph
        tables.pinned_stage_ids.add(c.id)
        tables.archive_supported = False

        report = await service.provision(
            mock_db, company_id=company_id, template=small_template, initiated_by="owner-1",
        )
        assert report.final_tier == "rename"
        assert a.name.startswith("[ARCHIVED_")
        assert a.name.endswith("Old A")
        assert a.sequence_order == 1 + RETIRED_ORDER_OFFSET
        assert _active_names(tables, company_id) == ["Done", "Intake"]

    @pytest.mark.asyncio
    async def test_every_tier_blocked(self, service, tables, mock_db, small_template, company_id,
                                      old_graph):
        a, b, c, question, _ = old_graph
        tables.pinned_stage_ids.add(c.id)
        tables.archive_supported = False
        tables.retire_blocked = True

        with pytest.raises(ProvisioningFailed) as exc_info:
            await service.provision(
                mock_db, company_id=company_id, template=small_template,
                initiated_by="owner-1",
            )
        report = exc_info.value.report
        assert [t.tier for t in report.tier_attempts] == [
            "hard_delete", "smart_clear", "archive", "rename",
        ]
        assert not any(t.succeeded for t in report.tier_attempts)
        assert report.final_tier is None
        mock_db.rollback.assert_awaited_once()
        mock_db.commit.assert_not_awaited()
        # savepoints undid every partial step
        assert question.id in tables.questions
        assert len(tables.rules) == 1
        assert _active_names(tables, company_id) == ["Old A", "Old B", "Old C"]

    @pytest.mark.asyncio
    async def test_resume_with_same_run_id(self, service, tables, mock_db, small_template,
                                           company_id):
        first = await service.provision(
            mock_db, company_id=company_id, template=small_template, initiated_by="owner-1",
            run_id="prov_resume",
        )
        # interrupted before the transitions step
        tables.rules.clear()

        second = await service.provision(
            mock_db, company_id=company_id, template=small_template, initiated_by="owner-1",
            run_id="prov_resume",
        )
        assert second.created_stage_ids == []
        assert second.created_question_ids == []
        assert len(second.created_rule_ids) == 1
        assert set(first.created_stage_ids) <= set(second.reused_ids)
        assert second.id_map["stage:intake"] == first.id_map["stage:intake"]
        assert len(tables.stages) == 2
        assert len(tables.questions) == 2

    @pytest.mark.asyncio
    async def test_rerun_of_complete_run_creates_nothing(self, service, tables, mock_db,
                                                         small_template, company_id):
        await service.provision(
            mock_db, company_id=company_id, template=small_template, initiated_by="owner-1",
            run_id="prov_again",
        )
        again = await service.provision(
            mock_db, company_id=company_id, template=small_template, initiated_by="owner-1",
            run_id="prov_again",
        )
        assert again.created_stage_ids == []
        assert again.created_rule_ids == []
        assert len(again.reused_ids) == 2 + 2 + 1
        assert len(tables.rules) == 1

    @pytest.mark.asyncio
    async def test_identical_texts_stay_distinct_rows(self, service, tables, mock_db,
                                                      company_id):
        template = TemplateStore.parse({
            "id": "twins",
            "name": "Twins",
            "stages": [
                {"key": "a", "name": "Check", "sequence_order": 1, "questions": [
                    {"key": "q1", "question_text": "Confirm?", "sequence_order": 1},
                    {"key": "q2", "question_text": "Confirm?", "sequence_order": 2},
                ]},
                {"key": "b", "name": "Check", "sequence_order": 2},
            ],
            "transitions": [
                {"from_stage": "a", "question": "q2", "to_stage": "b",
                 "trigger_response": "yes"},
            ],
        })
        first = await service.provision(
            mock_db, company_id=company_id, template=template, initiated_by="owner-1",
            run_id="prov_twins",
        )
        ids = first.id_map
        assert ids["stage:a"] != ids["stage:b"]
        assert ids["question:a/q1"] != ids["question:a/q2"]
        assert sum(q.stage_id == ids["stage:a"] for q in tables.questions.values()) == 2
        rule = next(iter(tables.rules.values()))
        assert rule.question_id == ids["question:a/q2"]

        tables.rules.clear()
        second = await service.provision(
            mock_db, company_id=company_id, template=template, initiated_by="owner-1",
            run_id="prov_twins",
        )
        assert {k: v for k, v in second.id_map.items() if not k.startswith("rule:")} == {
            k: v for k, v in ids.items() if not k.startswith("rule:")
        }
        assert len(tables.stages) == 2
        assert len(tables.questions) == 2
        assert next(iter(tables.rules.values())).question_id == ids["question:a/q2"]

    @pytest.mark.asyncio
    async def test_skip_conditions_point_at_created_questions(self, service, tables, mock_db,
                                                              company_id):
        template = TemplateStore.parse({
            "id": "skips",
            "name": "Skips",
            "stages": [
                {"key": "visit", "name": "Visit", "sequence_order": 1, "questions": [
                    {"key": "held", "question_text": "Meeting held?", "sequence_order": 1},
                    {"key": "when", "question_text": "Site visit date?", "response_type": "date",
                     "sequence_order": 2,
                     "skip_when": [{"question": "held", "response_value": "No"}]},
                ]},
            ],
        })
        report = await service.provision(
            mock_db, company_id=company_id, template=template, initiated_by="owner-1",
        )
        when = tables.questions[report.id_map["question:visit/when"]]
        assert when.skip_conditions == {"previous_responses": [
            {"question_id": str(report.id_map["question:visit/held"]), "response_value": "no"},
        ]}


class TestWorkflowProvisioning:
    @pytest.mark.asyncio
    async def test_unknown_template(self, workflow, mock_db, company_id):
        with pytest.raises(NotFoundError):
            await workflow.provision_template(
                mock_db, company_id=company_id, template_id="nope", initiated_by="owner-1",
            )

    @pytest.mark.asyncio
    async def test_other_companies_untouched(self, workflow, tables, mock_db, company_id):
        other = uuid.uuid4()
        kept = tables.add_stage(other, "Elsewhere", 1)
        await workflow.provision_template(
            mock_db, company_id=company_id, template_id="builder_preset",
            initiated_by="owner-1",
        )
        assert kept.id in tables.stages
        assert kept.sequence_order == 1
