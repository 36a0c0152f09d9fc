"""ProvisioningService: replaces a company's stage graph with a template.

A run has two halves:

**Teardown** moves the company's current graph out of the way.  Four
strategies are tried in order, each inside its own SAVEPOINT so a blocked
strategy leaves nothing half-done:

  1. ``hard_delete`` : delete rules, questions and stages outright
  2. ``smart_clear`` : delete what has no history, retire the rest by
     moving its sequence_order past ``RETIRED_ORDER_OFFSET``
  3. ``archive``     : flag every old stage as archived
  4. ``rename``      : prefix old stage names and retire their orders

A strategy signals failure by raising ``ReferentialConflict`` (or
``ArchiveUnsupported``).  When all four fail the run raises
``ProvisioningFailed`` with the report.  Audit rows are never touched.

**Rebuild** turns the template into a plan with symbolic local ids, then
realizes it: stages, then questions, then transitions.  Each step is
committed on its own.  Every creation is looked up first within the run
id (stages and questions by sequence_order, rules by edge and predicate),
and teardown skips rows tagged with the current run, so calling
:meth:`ProvisioningService.provision` again with the same ``run_id`` after
an interruption converges on the same graph.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from jobstage_db.errors import ReferentialConflict
from jobstage_db.models.graph import Stage
from jobstage_db.repository import StageGraphRepository

from jobstage_engine.constants import (
    RENAMED_STAGE_PREFIX,
    RETIRED_ORDER_OFFSET,
    TEARDOWN_TIERS,
)
from jobstage_engine.errors import ProvisioningFailed
from jobstage_engine.graph_store import StageGraphStore, build_predicate
from jobstage_engine.models.graph import (
    PreviousResponseCondition,
    QuestionCreate,
    SkipConditions,
    StageCreate,
    TransitionRuleCreate,
    TransitionRuleInfo,
)
from jobstage_engine.models.provisioning import (
    Attempting,
    Blocked,
    Exhausted,
    PlannedQuestion,
    PlannedStage,
    PlannedTransition,
    ProvisioningPlan,
    ProvisioningReport,
    Succeeded,
    TeardownState,
    TierAttempt,
)
from jobstage_engine.models.template import WorkflowTemplate

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_run_id() -> str:
    return f"prov_{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------

def build_plan(template: WorkflowTemplate) -> ProvisioningPlan:
    """Flatten a template into ordered creation steps with local ids."""
    stages: list[PlannedStage] = []
    questions: list[PlannedQuestion] = []
    for stage in sorted(template.stages, key=lambda s: s.sequence_order):
        stage_local = f"stage:{stage.key}"
        stages.append(PlannedStage(local_id=stage_local, stage=stage))
        for question in sorted(stage.questions, key=lambda q: q.sequence_order):
            questions.append(PlannedQuestion(
                local_id=f"question:{stage.key}/{question.key}",
                stage_local_id=stage_local,
                question=question,
                skip_when=[
                    (f"question:{stage.key}/{s.question}", s.response_value)
                    for s in question.skip_when
                ],
            ))
    transitions = [
        PlannedTransition(
            local_id=f"rule:{i}",
            from_local_id=f"stage:{t.from_stage}",
            to_local_id=f"stage:{t.to_stage}",
            question_local_id=f"question:{t.from_stage}/{t.question}",
            transition=t,
        )
        for i, t in enumerate(template.transitions, start=1)
    ]
    return ProvisioningPlan(
        template_id=template.id, stages=stages, questions=questions, transitions=transitions,
    )



def _skip_conditions(
    planned: PlannedQuestion, ids: dict[str, uuid.UUID]
) -> SkipConditions | None:
    if not planned.skip_when:
        return None
    return SkipConditions(previous_responses=[
        PreviousResponseCondition(question_id=ids[local_id], response_value=value)
        for local_id, value in planned.skip_when
    ])

# ---------------------------------------------------------------------------
# Teardown state machine
# ---------------------------------------------------------------------------

class TeardownMachine:
    """Walks the teardown tiers; holds no I/O so it can be driven by tests."""

    def __init__(self, tiers: tuple[str, ...] = TEARDOWN_TIERS) -> None:
        if not tiers:
            raise ValueError("at least one teardown tier is required")
        self._tiers = tiers
        self.state: TeardownState = Attempting(tier=tiers[0])

    @property
    def done(self) -> bool:
        return isinstance(self.state, (Succeeded, Exhausted))

    def succeed(self) -> TeardownState:
        if not isinstance(self.state, Attempting):
            raise RuntimeError(f"cannot succeed from {self.state.state}")
        self.state = Succeeded(tier=self.state.tier)
        return self.state

    def block(self, reason: str) -> TeardownState:
        if not isinstance(self.state, Attempting):
            raise RuntimeError(f"cannot block from {self.state.state}")
        idx = self._tiers.index(self.state.tier)
        next_tier = self._tiers[idx + 1] if idx + 1 < len(self._tiers) else None
        self.state = Blocked(tier=self.state.tier, next_tier=next_tier, reason=reason)
        return self.state

    def advance(self) -> TeardownState:
        if not isinstance(self.state, Blocked):
            raise RuntimeError(f"cannot advance from {self.state.state}")
        if self.state.next_tier is None:
            self.state = Exhausted()
        else:
            self.state = Attempting(tier=self.state.next_tier)
        return self.state


@dataclass
class TeardownScope:
    """The rows a teardown tier works on."""

    company_id: uuid.UUID
    run_id: str
    stages: list[Stage]


@dataclass
class TeardownOutcome:
    deleted_stage_ids: list[uuid.UUID] = field(default_factory=list)
    retired_stage_ids: list[uuid.UUID] = field(default_factory=list)
    deleted_question_ids: list[uuid.UUID] = field(default_factory=list)
    deleted_rule_ids: list[uuid.UUID] = field(default_factory=list)


TierStrategy = Callable[[AsyncSession, TeardownScope], Awaitable[TeardownOutcome]]


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class ProvisioningService:
    """Runs template provisioning for one company at a time."""

    def __init__(self, store: StageGraphStore | None = None) -> None:
        self._repo = StageGraphRepository()
        self._store = store or StageGraphStore()
        self._strategies: dict[str, TierStrategy] = {
            "hard_delete": self._hard_delete,
            "smart_clear": self._smart_clear,
            "archive": self._archive,
            "rename": self._rename,
        }

    async def provision(
        self,
        db: AsyncSession,
        *,
        company_id: uuid.UUID,
        template: WorkflowTemplate,
        initiated_by: str,
        run_id: str | None = None,
    ) -> ProvisioningReport:
        """Tear down the company's graph and build *template* in its place.

        Commits after teardown and after each rebuild step.  Pass the
        ``run_id`` of an interrupted run to resume it.
        """
        run_id = run_id or new_run_id()
        report = ProvisioningReport(
            run_id=run_id,
            company_id=company_id,
            template_id=template.id,
            started_at=_utcnow(),
        )
        logger.info(
            "Provisioning run %s: template %s for company %s (by %s)",
            run_id, template.id, company_id, initiated_by,
        )

        await self.teardown(db, company_id=company_id, run_id=run_id, report=report)
        await db.commit()

        plan = build_plan(template)
        await self.realize(
            db, plan, company_id=company_id, run_id=run_id,
            initiated_by=initiated_by, report=report,
        )
        report.finished_at = _utcnow()
        logger.info(
            "Provisioning run %s finished via %s: %d stages, %d questions, %d rules "
            "created; %d reused",
            run_id, report.final_tier, len(report.created_stage_ids),
            len(report.created_question_ids), len(report.created_rule_ids),
            len(report.reused_ids),
        )
        return report

    # ==================================================================
    # Teardown
    # ==================================================================

    async def teardown(
        self,
        db: AsyncSession,
        *,
        company_id: uuid.UUID,
        run_id: str,
        report: ProvisioningReport,
    ) -> str:
        """Clear the company's active graph, leaving rows of *run_id* alone.

        Returns the tier that succeeded.  Raises ``ProvisioningFailed`` when
        every tier was blocked.
        """
        machine = TeardownMachine()
        while not machine.done:
            tier = machine.state.tier
            scope = TeardownScope(
                company_id=company_id,
                run_id=run_id,
                stages=await self._old_stages(db, company_id, run_id),
            )
            try:
                async with db.begin_nested():
                    outcome = await self._strategies[tier](db, scope)
            except ReferentialConflict as exc:
                report.tier_attempts.append(TierAttempt(
                    tier=tier, succeeded=False, error=str(exc), blocking_table=exc.table,
                ))
                machine.block(str(exc))
                logger.warning(
                    "Run %s: teardown tier %s blocked (%s); next: %s",
                    run_id, tier, exc, machine.state.next_tier,
                )
                machine.advance()
                continue
            report.tier_attempts.append(TierAttempt(tier=tier, succeeded=True))
            report.deleted_stage_ids.extend(outcome.deleted_stage_ids)
            report.retired_stage_ids.extend(outcome.retired_stage_ids)
            report.deleted_question_ids.extend(outcome.deleted_question_ids)
            report.deleted_rule_ids.extend(outcome.deleted_rule_ids)
            machine.succeed()

        if isinstance(machine.state, Exhausted):
            report.finished_at = _utcnow()
            logger.error(
                "Run %s: every teardown tier failed for company %s", run_id, company_id,
            )
            await db.rollback()
            raise ProvisioningFailed(
                f"Could not clear the stage graph of company {company_id}", report,
            )
        report.final_tier = machine.state.tier
        return machine.state.tier

    async def _old_stages(
        self, db: AsyncSession, company_id: uuid.UUID, run_id: str
    ) -> list[Stage]:
        stages = await self._repo.list_stages(
            db, company_id, retired_floor=RETIRED_ORDER_OFFSET,
        )
        return [s for s in stages if s.provisioning_run_id != run_id]

    async def _delete_rules(self, db: AsyncSession, scope: TeardownScope) -> list[uuid.UUID]:
        rules = await self._repo.list_transitions_touching(db, [s.id for s in scope.stages])
        rules = [r for r in rules if r.provisioning_run_id != scope.run_id]
        await self._repo.delete_transitions(db, rules)
        return [r.id for r in rules]

    async def _hard_delete(self, db: AsyncSession, scope: TeardownScope) -> TeardownOutcome:
        outcome = TeardownOutcome(deleted_rule_ids=await self._delete_rules(db, scope))
        questions = await self._repo.list_company_questions(db, [s.id for s in scope.stages])
        await self._repo.delete_questions(db, questions)
        await self._repo.delete_stages(db, scope.stages)
        outcome.deleted_question_ids = [q.id for q in questions]
        outcome.deleted_stage_ids = [s.id for s in scope.stages]
        return outcome

    async def _smart_clear(self, db: AsyncSession, scope: TeardownScope) -> TeardownOutcome:
        outcome = TeardownOutcome(deleted_rule_ids=await self._delete_rules(db, scope))
        stage_ids = [s.id for s in scope.stages]

        questions = await self._repo.list_company_questions(db, stage_ids)
        answered = await self._repo.questions_with_responses(db, [q.id for q in questions])
        removable = [q for q in questions if q.id not in answered]
        await self._repo.delete_questions(db, removable)
        outcome.deleted_question_ids = [q.id for q in removable]

        counts = await self._repo.stage_reference_counts(db, stage_ids)
        pinned = {q.stage_id for q in questions if q.id in answered}
        unreferenced = [s for s in scope.stages if not counts.get(s.id) and s.id not in pinned]
        referenced = [s for s in scope.stages if counts.get(s.id) or s.id in pinned]

        await self._repo.delete_stages(db, unreferenced)
        await self._repo.retire_stages(db, referenced, order_offset=RETIRED_ORDER_OFFSET)
        outcome.deleted_stage_ids = [s.id for s in unreferenced]
        outcome.retired_stage_ids = [s.id for s in referenced]
        return outcome

    async def _archive(self, db: AsyncSession, scope: TeardownScope) -> TeardownOutcome:
        outcome = TeardownOutcome(deleted_rule_ids=await self._delete_rules(db, scope))
        await self._repo.archive_stages(db, scope.stages)
        outcome.retired_stage_ids = [s.id for s in scope.stages]
        return outcome

    async def _rename(self, db: AsyncSession, scope: TeardownScope) -> TeardownOutcome:
        outcome = TeardownOutcome(deleted_rule_ids=await self._delete_rules(db, scope))
        prefix = RENAMED_STAGE_PREFIX.format(ts=_utcnow().strftime("%Y%m%dT%H%M%S"))
        await self._repo.retire_stages(
            db, scope.stages, order_offset=RETIRED_ORDER_OFFSET, name_prefix=prefix,
        )
        outcome.retired_stage_ids = [s.id for s in scope.stages]
        return outcome

    # ==================================================================
    # Rebuild
    # ==================================================================

    async def realize(
        self,
        db: AsyncSession,
        plan: ProvisioningPlan,
        *,
        company_id: uuid.UUID,
        run_id: str,
        initiated_by: str,
        report: ProvisioningReport,
    ) -> dict[str, uuid.UUID]:
        """Create the plan's rows, reusing any this run already created.

        Rows from an earlier attempt are recognised by ``sequence_order``,
        which a template keeps unique per company and per stage.
        """
        ids = report.id_map

        # --- Stages ---
        existing = {
            s.sequence_order: s
            for s in await self._repo.list_stages(db, company_id)
            if s.provisioning_run_id == run_id
        }
        for planned in plan.stages:
            entry = planned.stage
            row = existing.get(entry.sequence_order)
            if row is not None:
                ids[planned.local_id] = row.id
                report.reused_ids.append(row.id)
                continue
            info = await self._store.create_stage(
                db,
                company_id=company_id,
                data=StageCreate(**entry.model_dump(exclude={"key", "questions"})),
                created_by=initiated_by,
                provisioning_run_id=run_id,
            )
            ids[planned.local_id] = info.id
            report.created_stage_ids.append(info.id)
        await db.commit()

        # --- Questions ---
        for planned in plan.questions:
            stage_id = ids[planned.stage_local_id]
            entry = planned.question
            match = next(
                (q for q in await self._repo.list_questions(db, stage_id)
                 if q.provisioning_run_id == run_id
                 and q.sequence_order == entry.sequence_order),
                None,
            )
            if match is not None:
                ids[planned.local_id] = match.id
                report.reused_ids.append(match.id)
                continue
            info = await self._store.create_question(
                db,
                company_id=company_id,
                data=QuestionCreate(
                    stage_id=stage_id,
                    skip_conditions=_skip_conditions(planned, ids),
                    **entry.model_dump(exclude={"key", "skip_when"}),
                ),
                provisioning_run_id=run_id,
            )
            ids[planned.local_id] = info.id
            report.created_question_ids.append(info.id)
        await db.commit()

        # --- Transitions ---
        for planned in plan.transitions:
            if planned.is_self_transition:
                logger.warning(
                    "Run %s: skipping self transition %s on %s",
                    run_id, planned.local_id, planned.from_local_id,
                )
                report.skipped_transitions.append(planned.local_id)
                continue
            entry = planned.transition
            from_id = ids[planned.from_local_id]
            to_id = ids[planned.to_local_id]
            question_id = ids[planned.question_local_id]
            predicate = build_predicate(entry)

            rows = await self._repo.list_transitions(db, from_id)
            match = next(
                (r for r in rows
                 if r.provisioning_run_id == run_id
                 and r.question_id == question_id
                 and r.to_stage_id == to_id
                 and TransitionRuleInfo.from_row(r).predicate == predicate),
                None,
            )
            if match is not None:
                ids[planned.local_id] = match.id
                report.reused_ids.append(match.id)
                continue
            result = await self._store.create_transition_rule(
                db,
                company_id=company_id,
                data=TransitionRuleCreate(
                    from_stage_id=from_id,
                    to_stage_id=to_id,
                    question_id=question_id,
                    **entry.model_dump(exclude={"from_stage", "to_stage", "question"}),
                ),
                provisioning_run_id=run_id,
            )
            ids[planned.local_id] = result.rule.id
            report.created_rule_ids.append(result.rule.id)
        await db.commit()
        return ids
