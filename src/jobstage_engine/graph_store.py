"""StageGraphStore: company-scoped CRUD over stages, questions and rules.

Every read and write takes the caller's ``company_id``; a row owned by
another company is reported as not found.  Writes are validated here so the
graph never holds a self transition, a rule keyed to a question of another
stage, or a predicate the question type cannot satisfy.

Like the rest of the SDK, the store accepts an ``AsyncSession`` and only
flushes; the caller commits.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from jobstage_db.errors import ArchiveUnsupported, ReferentialConflict
from jobstage_db.models.enums import ResponseType
from jobstage_db.models.graph import Stage, StageQuestion, StageTransition
from jobstage_db.repository import StageGraphRepository

from jobstage_engine.constants import RENAMED_STAGE_PREFIX, RETIRED_ORDER_OFFSET, NO, YES
from jobstage_engine.errors import GraphValidationError, NotFoundError
from jobstage_engine.evaluator import normalize_text, predicates_overlap
from jobstage_engine.ingestion import InvalidResponse, normalize_response
from jobstage_engine.models.graph import (
    PredicateFields,
    QuestionCreate,
    QuestionInfo,
    QuestionUpdate,
    RuleWriteResult,
    SkipConditions,
    StageCreate,
    StageDeletion,
    StageInfo,
    StageUpdate,
    TransitionRuleCreate,
    TransitionRuleInfo,
    TransitionRuleUpdate,
)
from jobstage_engine.models.predicates import NumericPredicate, Predicate, TriggerPredicate

logger = logging.getLogger(__name__)

# Columns that may never be set to NULL through an update
_REQUIRED_STAGE_FIELDS = {
    "name", "sequence_order", "stage_type", "maps_to_status", "requires_approval",
}
_REQUIRED_QUESTION_FIELDS = {
    "question_text", "response_type", "is_required", "sequence_order",
}


def build_predicate(fields: PredicateFields) -> Predicate:
    """Fold flat predicate columns into a typed predicate.

    Raises :class:`GraphValidationError` when both forms or neither are set,
    or the numeric bounds are inconsistent.
    """
    has_trigger = fields.trigger_response is not None
    has_numeric = any(
        v is not None
        for v in (fields.numeric_operator, fields.numeric_value, fields.numeric_value_max)
    )
    if has_trigger == has_numeric:
        raise GraphValidationError(
            "a rule needs exactly one of trigger_response or numeric_operator"
        )
    if has_trigger:
        if not fields.trigger_response.strip():
            raise GraphValidationError("trigger_response must not be blank")
        return TriggerPredicate(value=fields.trigger_response)
    if fields.numeric_operator is None or fields.numeric_value is None:
        raise GraphValidationError("numeric rules need numeric_operator and numeric_value")
    try:
        return NumericPredicate(
            operator=fields.numeric_operator,
            value=fields.numeric_value,
            value_max=fields.numeric_value_max,
        )
    except ValidationError as exc:
        raise GraphValidationError(exc.errors()[0]["msg"]) from exc


def predicate_columns(predicate: Predicate) -> dict[str, Any]:
    """Inverse of :func:`build_predicate`: typed predicate -> row columns."""
    if isinstance(predicate, TriggerPredicate):
        return {
            "trigger_response": predicate.value,
            "numeric_operator": None,
            "numeric_value": None,
            "numeric_value_max": None,
        }
    return {
        "trigger_response": None,
        "numeric_operator": predicate.operator.value,
        "numeric_value": predicate.value,
        "numeric_value_max": predicate.value_max,
    }


def is_active(stage: Stage) -> bool:
    return not stage.archived and stage.sequence_order < RETIRED_ORDER_OFFSET


def _conditions_on(question: StageQuestion, source_id: uuid.UUID) -> list[dict[str, str]]:
    """Skip conditions of *question* that read *source_id*'s answer."""
    stored = question.skip_conditions or {}
    return [
        c for c in stored.get("previous_responses", [])
        if c["question_id"] == str(source_id)
    ]


class StageGraphStore:
    """Company-scoped access to a company's stage graph."""

    def __init__(self) -> None:
        self._repo = StageGraphRepository()

    # ==================================================================
    # Reads
    # ==================================================================

    async def list_stages(
        self, db: AsyncSession, company_id: uuid.UUID
    ) -> list[StageInfo]:
        """Active stages of a company, ordered by sequence_order."""
        rows = await self._repo.list_stages(
            db, company_id, retired_floor=RETIRED_ORDER_OFFSET,
        )
        return [StageInfo.model_validate(r) for r in rows]

    async def get_stage(
        self, db: AsyncSession, *, company_id: uuid.UUID, stage_id: uuid.UUID
    ) -> StageInfo:
        """Any stage of the company, retired ones included."""
        return StageInfo.model_validate(await self._stage(db, company_id, stage_id))

    async def get_questions(
        self, db: AsyncSession, *, company_id: uuid.UUID, stage_id: uuid.UUID
    ) -> list[QuestionInfo]:
        await self._stage(db, company_id, stage_id)
        rows = await self._repo.list_questions(db, stage_id)
        return [QuestionInfo.model_validate(r) for r in rows]

    async def get_question(
        self, db: AsyncSession, *, company_id: uuid.UUID, question_id: uuid.UUID
    ) -> QuestionInfo:
        return QuestionInfo.model_validate(await self._question(db, company_id, question_id))

    async def get_transition_rules(
        self, db: AsyncSession, *, company_id: uuid.UUID, stage_id: uuid.UUID
    ) -> list[TransitionRuleInfo]:
        """Outbound rules of a stage, oldest first."""
        await self._stage(db, company_id, stage_id)
        rows = await self._repo.list_transitions(db, stage_id)
        return [TransitionRuleInfo.from_row(r) for r in rows if r.company_id == company_id]

    # ==================================================================
    # Stage writes
    # ==================================================================

    async def create_stage(
        self,
        db: AsyncSession,
        *,
        company_id: uuid.UUID,
        data: StageCreate,
        created_by: str | None = None,
        provisioning_run_id: str | None = None,
    ) -> StageInfo:
        await self._check_order_free(db, company_id, data.sequence_order)
        row = await self._repo.create_stage(
            db,
            company_id=company_id,
            created_by=created_by,
            provisioning_run_id=provisioning_run_id,
            **data.model_dump(),
        )
        logger.info("Created stage %s (%s) for company %s", row.id, row.name, company_id)
        return StageInfo.model_validate(row)

    async def update_stage(
        self,
        db: AsyncSession,
        *,
        company_id: uuid.UUID,
        stage_id: uuid.UUID,
        data: StageUpdate,
    ) -> StageInfo:
        stage = await self._stage(db, company_id, stage_id)
        changes = self._changes(data, company_id, _REQUIRED_STAGE_FIELDS)

        lo = changes.get("min_duration_hours", stage.min_duration_hours)
        hi = changes.get("max_duration_hours", stage.max_duration_hours)
        if lo is not None and hi is not None and lo > hi:
            raise GraphValidationError("min_duration_hours must be <= max_duration_hours")

        new_order = changes.get("sequence_order")
        if new_order is not None and new_order != stage.sequence_order and is_active(stage):
            await self._check_order_free(db, company_id, new_order, exclude=stage.id)

        row = await self._repo.update_stage(db, stage, changes)
        return StageInfo.model_validate(row)

    async def delete_stage(
        self, db: AsyncSession, *, company_id: uuid.UUID, stage_id: uuid.UUID
    ) -> StageDeletion:
        """Remove a stage from the active graph.

        Rules touching the stage are always deleted.  The stage itself is
        hard-deleted with its questions when nothing references it, otherwise
        archived, otherwise renamed and moved past the retired offset.
        """
        stage = await self._stage(db, company_id, stage_id)
        rules = await self._repo.list_transitions_touching(db, [stage.id])
        await self._repo.delete_transitions(db, rules)

        try:
            async with db.begin_nested():
                questions = await self._repo.list_questions(db, stage.id)
                await self._repo.delete_questions(db, questions)
                await self._repo.delete_stages(db, [stage])
            strategy = "hard_delete"
        except ReferentialConflict as exc:
            logger.warning(
                "Stage %s still referenced (%s); archiving instead", stage.id, exc.table,
            )
            try:
                await self._repo.archive_stages(db, [stage])
                strategy = "archive"
            except ArchiveUnsupported:
                logger.warning("Archive unsupported; renaming stage %s", stage.id)
                ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
                await self._repo.retire_stages(
                    db,
                    [stage],
                    order_offset=RETIRED_ORDER_OFFSET,
                    name_prefix=RENAMED_STAGE_PREFIX.format(ts=ts),
                )
                strategy = "rename"
        logger.info("Deleted stage %s via %s", stage_id, strategy)
        return StageDeletion(stage_id=stage_id, strategy=strategy)

    # ==================================================================
    # Question writes
    # ==================================================================

    async def create_question(
        self,
        db: AsyncSession,
        *,
        company_id: uuid.UUID,
        data: QuestionCreate,
        provisioning_run_id: str | None = None,
    ) -> QuestionInfo:
        await self._stage(db, company_id, data.stage_id)
        self._check_options(data.response_type, data.response_options)
        skip_conditions = await self._normalize_skips(db, company_id, data.skip_conditions)
        row = await self._repo.create_question(
            db,
            company_id=company_id,
            provisioning_run_id=provisioning_run_id,
            skip_conditions=skip_conditions,
            **data.model_dump(exclude={"skip_conditions"}),
        )
        return QuestionInfo.model_validate(row)

    async def update_question(
        self,
        db: AsyncSession,
        *,
        company_id: uuid.UUID,
        question_id: uuid.UUID,
        data: QuestionUpdate,
    ) -> QuestionInfo:
        question = await self._question(db, company_id, question_id)
        changes = self._changes(data, company_id, _REQUIRED_QUESTION_FIELDS)

        response_type = ResponseType(changes.get("response_type", question.response_type))
        options = changes.get("response_options", question.response_options)
        if "response_type" in changes and response_type != ResponseType.MULTIPLE_CHOICE:
            # Switching away from multiple_choice drops the options
            if "response_options" not in changes:
                options = None
                changes["response_options"] = None
        self._check_options(response_type, options)

        if "skip_conditions" in changes:
            changes["skip_conditions"] = await self._normalize_skips(
                db, company_id, data.skip_conditions, question_id=question.id,
            )

        # Rules and other questions' skip conditions compare against this
        # question's answers; a new type or option list must still admit them
        if response_type != ResponseType(question.response_type) or "response_options" in changes:
            for rule in await self._rules_on_question(db, question):
                self._check_predicate_fits(rule.predicate, response_type, options)
            answers_to = QuestionInfo.model_validate(question).model_copy(
                update={"response_type": response_type, "response_options": options},
            )
            for dependent in await self._skip_dependents(db, question):
                for cond in _conditions_on(dependent, question.id):
                    value = cond["response_value"]
                    if self._check_skip_value(answers_to, value) != value:
                        raise GraphValidationError(
                            f"question {dependent.id} skips on {value!r}, "
                            "which this change would make unreachable"
                        )

        row = await self._repo.update_question(db, question, changes)
        return QuestionInfo.model_validate(row)

    async def delete_question(
        self, db: AsyncSession, *, company_id: uuid.UUID, question_id: uuid.UUID
    ) -> None:
        """Delete a question and its rules.

        Skip conditions that other questions hold on it are dropped.
        Raises ReferentialConflict when responses were recorded against it.
        """
        question = await self._question(db, company_id, question_id)
        async with db.begin_nested():
            rows = await self._repo.list_transitions(db, question.stage_id)
            await self._repo.delete_transitions(
                db, [r for r in rows if r.question_id == question.id],
            )
            for dependent in await self._skip_dependents(db, question):
                kept = [
                    c for c in dependent.skip_conditions["previous_responses"]
                    if c["question_id"] != str(question.id)
                ]
                await self._repo.update_question(
                    db,
                    dependent,
                    {"skip_conditions": {"previous_responses": kept} if kept else None},
                )
            await self._repo.delete_questions(db, [question])

    async def reorder_questions(
        self,
        db: AsyncSession,
        *,
        company_id: uuid.UUID,
        stage_id: uuid.UUID,
        question_ids: list[uuid.UUID],
    ) -> list[QuestionInfo]:
        """Renumber a stage's questions 1..n in the given order.

        *question_ids* must list every question of the stage exactly once.
        """
        await self._stage(db, company_id, stage_id)
        questions = await self._repo.list_questions(db, stage_id)
        by_id = {q.id: q for q in questions}
        if len(question_ids) != len(set(question_ids)) or set(question_ids) != set(by_id):
            raise GraphValidationError(
                "question_ids must list every question of the stage exactly once"
            )
        ordering = [(by_id[qid], i) for i, qid in enumerate(question_ids, start=1)]
        await self._repo.reorder_questions(db, ordering, temp_offset=len(ordering) + 1000)
        return [QuestionInfo.model_validate(q) for q, _ in ordering]

    # ==================================================================
    # Rule writes
    # ==================================================================

    async def create_transition_rule(
        self,
        db: AsyncSession,
        *,
        company_id: uuid.UUID,
        data: TransitionRuleCreate,
        provisioning_run_id: str | None = None,
    ) -> RuleWriteResult:
        predicate = build_predicate(data)
        await self._check_edge(
            db, company_id, data.from_stage_id, data.to_stage_id, data.question_id, predicate,
        )
        overlaps = await self._find_overlaps(
            db, data.from_stage_id, data.question_id, predicate,
        )
        row = await self._repo.create_transition(
            db,
            company_id=company_id,
            from_stage_id=data.from_stage_id,
            to_stage_id=data.to_stage_id,
            question_id=data.question_id,
            is_automatic=data.is_automatic,
            requires_admin_override=data.requires_admin_override,
            provisioning_run_id=provisioning_run_id,
            **predicate_columns(predicate),
        )
        return self._rule_result(row, overlaps)

    async def update_transition_rule(
        self,
        db: AsyncSession,
        *,
        company_id: uuid.UUID,
        rule_id: uuid.UUID,
        data: TransitionRuleUpdate,
    ) -> RuleWriteResult:
        rule = await self._rule(db, company_id, rule_id)
        changes = self._changes(
            data, company_id, {"from_stage_id", "to_stage_id", "question_id",
                               "is_automatic", "requires_admin_override"},
        )
        if data.has_predicate_fields():
            predicate = build_predicate(data)
        else:
            predicate = TransitionRuleInfo.from_row(rule).predicate
        for key in ("trigger_response", "numeric_operator", "numeric_value", "numeric_value_max"):
            changes.pop(key, None)

        from_stage_id = changes.get("from_stage_id", rule.from_stage_id)
        to_stage_id = changes.get("to_stage_id", rule.to_stage_id)
        question_id = changes.get("question_id", rule.question_id)
        await self._check_edge(db, company_id, from_stage_id, to_stage_id, question_id, predicate)
        overlaps = await self._find_overlaps(
            db, from_stage_id, question_id, predicate, exclude=rule.id,
        )
        changes.update(predicate_columns(predicate))
        row = await self._repo.update_transition(db, rule, changes)
        return self._rule_result(row, overlaps)

    async def delete_transition_rule(
        self, db: AsyncSession, *, company_id: uuid.UUID, rule_id: uuid.UUID
    ) -> None:
        rule = await self._rule(db, company_id, rule_id)
        await self._repo.delete_transitions(db, [rule])

    # ==================================================================
    # Internal helpers
    # ==================================================================

    async def _stage(
        self, db: AsyncSession, company_id: uuid.UUID, stage_id: uuid.UUID
    ) -> Stage:
        stage = await self._repo.get_stage(db, stage_id)
        if stage is None or stage.company_id != company_id:
            raise NotFoundError(f"Stage not found: {stage_id}")
        return stage

    async def _question(
        self, db: AsyncSession, company_id: uuid.UUID, question_id: uuid.UUID
    ) -> StageQuestion:
        question = await self._repo.get_question(db, question_id)
        if question is None or question.company_id != company_id:
            raise NotFoundError(f"Question not found: {question_id}")
        return question

    async def _rule(
        self, db: AsyncSession, company_id: uuid.UUID, rule_id: uuid.UUID
    ) -> StageTransition:
        rule = await self._repo.get_transition(db, rule_id)
        if rule is None or rule.company_id != company_id:
            raise NotFoundError(f"Transition rule not found: {rule_id}")
        return rule

    @staticmethod
    def _changes(data, company_id: uuid.UUID, required: set[str]) -> dict[str, Any]:
        """Explicitly-set fields of an update model, minus ``company_id``."""
        changes = data.model_dump(exclude_unset=True)
        new_company = changes.pop("company_id", None)
        if new_company is not None and new_company != company_id:
            raise GraphValidationError("company_id cannot be changed")
        for key in required & changes.keys():
            if changes[key] is None:
                raise GraphValidationError(f"{key} cannot be null")
        return changes

    async def _check_order_free(
        self,
        db: AsyncSession,
        company_id: uuid.UUID,
        order: int,
        *,
        exclude: uuid.UUID | None = None,
    ) -> None:
        if order >= RETIRED_ORDER_OFFSET:
            raise GraphValidationError(
                f"sequence_order must be below {RETIRED_ORDER_OFFSET}"
            )
        active = await self._repo.list_stages(
            db, company_id, retired_floor=RETIRED_ORDER_OFFSET,
        )
        for other in active:
            if other.sequence_order == order and other.id != exclude:
                raise GraphValidationError(
                    f"sequence_order {order} is already used by stage {other.id}"
                )

    @staticmethod
    def _check_options(response_type: ResponseType, options: list[str] | None) -> None:
        if response_type == ResponseType.MULTIPLE_CHOICE:
            if not options:
                raise GraphValidationError("multiple_choice questions need response_options")
            if any(not o.strip() for o in options):
                raise GraphValidationError("response_options must not be blank")
            if len(options) != len(set(options)):
                raise GraphValidationError("response_options must be unique")
        elif options:
            raise GraphValidationError(
                f"response_options are only valid for multiple_choice, not {response_type.value}"
            )

    @staticmethod
    def _check_predicate_fits(
        predicate: Predicate, response_type: ResponseType, options: list[str] | None
    ) -> None:
        if isinstance(predicate, NumericPredicate):
            if response_type != ResponseType.NUMBER:
                raise GraphValidationError(
                    f"numeric predicates need a number question, not {response_type.value}"
                )
            return
        wanted = normalize_text(predicate.value)
        if response_type == ResponseType.YES_NO and wanted not in (YES, NO):
            raise GraphValidationError("yes_no rules must trigger on 'yes' or 'no'")
        if response_type == ResponseType.MULTIPLE_CHOICE:
            if wanted not in {normalize_text(o) for o in options or []}:
                raise GraphValidationError(
                    f"trigger {predicate.value!r} is not one of the question's options"
                )

    async def _check_edge(
        self,
        db: AsyncSession,
        company_id: uuid.UUID,
        from_stage_id: uuid.UUID,
        to_stage_id: uuid.UUID,
        question_id: uuid.UUID,
        predicate: Predicate,
    ) -> None:
        if from_stage_id == to_stage_id:
            raise GraphValidationError("a rule cannot point back at its own stage")
        await self._stage(db, company_id, from_stage_id)

        target = await self._repo.get_stage(db, to_stage_id)
        if target is None:
            raise NotFoundError(f"Stage not found: {to_stage_id}")
        if target.company_id != company_id:
            raise GraphValidationError("target stage belongs to another company")
        if not is_active(target):
            raise GraphValidationError("target stage is retired")

        question = await self._question(db, company_id, question_id)
        if question.stage_id != from_stage_id:
            raise GraphValidationError("question does not belong to the rule's from stage")
        self._check_predicate_fits(
            predicate, ResponseType(question.response_type), question.response_options,
        )

    @staticmethod
    def _check_skip_value(source: QuestionInfo, value: str) -> str:
        """Canonical form of *value* as an answer to *source*."""
        try:
            return normalize_response(source, value)
        except InvalidResponse as exc:
            raise GraphValidationError(
                f"skip condition {value!r} is not a valid answer to question {source.id}: {exc}"
            ) from exc

    async def _normalize_skips(
        self,
        db: AsyncSession,
        company_id: uuid.UUID,
        skips: SkipConditions | None,
        *,
        question_id: uuid.UUID | None = None,
    ) -> dict[str, Any] | None:
        """Resolve and normalize skip conditions into their stored JSON form.

        Each referenced question must belong to *company_id*; values are
        stored in the canonical form ingestion gives that question's answers.
        """
        if skips is None or not skips.previous_responses:
            return None
        conditions = []
        for cond in skips.previous_responses:
            if cond.question_id == question_id:
                raise GraphValidationError("a question cannot be skipped on its own answer")
            source = QuestionInfo.model_validate(
                await self._question(db, company_id, cond.question_id)
            )
            conditions.append({
                "question_id": str(source.id),
                "response_value": self._check_skip_value(source, cond.response_value),
            })
        return {"previous_responses": conditions}

    async def _skip_dependents(
        self, db: AsyncSession, question: StageQuestion
    ) -> list[StageQuestion]:
        stages = await self._repo.list_stages(db, question.company_id)
        rows = await self._repo.list_company_questions(db, [s.id for s in stages])
        return [r for r in rows if r.id != question.id and _conditions_on(r, question.id)]

    async def _rules_on_question(
        self, db: AsyncSession, question: StageQuestion
    ) -> list[TransitionRuleInfo]:
        rows = await self._repo.list_transitions(db, question.stage_id)
        return [TransitionRuleInfo.from_row(r) for r in rows if r.question_id == question.id]

    async def _find_overlaps(
        self,
        db: AsyncSession,
        from_stage_id: uuid.UUID,
        question_id: uuid.UUID,
        predicate: Predicate,
        *,
        exclude: uuid.UUID | None = None,
    ) -> list[uuid.UUID]:
        rows = await self._repo.list_transitions(db, from_stage_id)
        overlaps = [
            r.id
            for r in rows
            if r.question_id == question_id
            and r.id != exclude
            and predicates_overlap(predicate, TransitionRuleInfo.from_row(r).predicate)
        ]
        if overlaps:
            logger.warning(
                "Rule on stage %s question %s overlaps %d existing rule(s): %s",
                from_stage_id, question_id, len(overlaps), overlaps,
            )
        return overlaps

    @staticmethod
    def _rule_result(row: StageTransition, overlaps: list[uuid.UUID]) -> RuleWriteResult:
        return RuleWriteResult(rule=TransitionRuleInfo.from_row(row), overlaps=overlaps)
