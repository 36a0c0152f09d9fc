"""TransitionEvaluator: decides which rule, if any, fires for an answer.

Given the job's current stage, the answered question and the normalized
answer, the evaluator selects the outbound rules keyed to that question and
tests each predicate:

  - **trigger**: string equality after strip + casefold on both sides
  - **numeric**: the answer read as a decimal, compared with the operator

When several rules match, the earliest-created one wins and an
``ambiguous_rule_set`` diagnostic lists the competitors.  Problems that make
a rule unusable (self transitions, non-numeric input for a numeric rule, a
target stage that is missing or belongs to another company) are reported as
diagnostics, never raised.

:func:`evaluate_rules` is the pure core and needs no database;
:class:`TransitionEvaluator` loads the rows and delegates to it.
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal, InvalidOperation
from typing import Iterable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from jobstage_db.models.enums import NumericOperator
from jobstage_db.repository import StageGraphRepository

from jobstage_engine.models.decision import (
    Decision,
    Diagnostic,
    DiagnosticCode,
    Match,
    NoMatch,
)
from jobstage_engine.models.graph import TransitionRuleInfo
from jobstage_engine.models.predicates import NumericPredicate, Predicate, TriggerPredicate

logger = logging.getLogger(__name__)


class NonNumericValue(ValueError):
    """The answer cannot be read as a finite decimal."""


# ---------------------------------------------------------------------------
# Predicate helpers
# ---------------------------------------------------------------------------

def normalize_text(value: str) -> str:
    """Canonical form used for trigger comparison."""
    return value.strip().casefold()


def parse_decimal(value: str) -> Decimal:
    """Read *value* as a finite decimal or raise :class:`NonNumericValue`."""
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise NonNumericValue(f"not a number: {value!r}") from exc
    if not number.is_finite():
        raise NonNumericValue(f"not a finite number: {value!r}")
    return number


def match_predicate(predicate: Predicate, value: str) -> bool:
    """True when *value* satisfies *predicate*.

    Raises :class:`NonNumericValue` for a numeric predicate and an answer that
    is not a number.
    """
    if isinstance(predicate, TriggerPredicate):
        return normalize_text(value) == normalize_text(predicate.value)

    number = parse_decimal(value)
    op = predicate.operator
    if op == NumericOperator.EQ:
        return number == predicate.value
    if op == NumericOperator.LT:
        return number < predicate.value
    if op == NumericOperator.LTE:
        return number <= predicate.value
    if op == NumericOperator.GT:
        return number > predicate.value
    if op == NumericOperator.GTE:
        return number >= predicate.value
    if op == NumericOperator.BETWEEN:
        return predicate.value <= number <= predicate.value_max
    if op == NumericOperator.BETWEEN_EXCLUSIVE:
        return predicate.value < number < predicate.value_max
    logger.warning("Unknown numeric operator: %s", op)
    return False


# Interval as (low, low_inclusive, high, high_inclusive); None is unbounded.
_Interval = tuple[Decimal | None, bool, Decimal | None, bool]


def _interval(p: NumericPredicate) -> _Interval:
    op = p.operator
    if op == NumericOperator.EQ:
        return (p.value, True, p.value, True)
    if op == NumericOperator.LT:
        return (None, False, p.value, False)
    if op == NumericOperator.LTE:
        return (None, False, p.value, True)
    if op == NumericOperator.GT:
        return (p.value, False, None, False)
    if op == NumericOperator.GTE:
        return (p.value, True, None, False)
    inclusive = op == NumericOperator.BETWEEN
    return (p.value, inclusive, p.value_max, inclusive)


def _intervals_intersect(a: _Interval, b: _Interval) -> bool:
    a_lo, a_lo_inc, a_hi, a_hi_inc = a
    b_lo, b_lo_inc, b_hi, b_hi_inc = b

    # Tighter lower bound
    if a_lo is None:
        lo, lo_inc = b_lo, b_lo_inc
    elif b_lo is None or a_lo > b_lo:
        lo, lo_inc = a_lo, a_lo_inc
    elif b_lo > a_lo:
        lo, lo_inc = b_lo, b_lo_inc
    else:
        lo, lo_inc = a_lo, a_lo_inc and b_lo_inc

    # Tighter upper bound
    if a_hi is None:
        hi, hi_inc = b_hi, b_hi_inc
    elif b_hi is None or a_hi < b_hi:
        hi, hi_inc = a_hi, a_hi_inc
    elif b_hi < a_hi:
        hi, hi_inc = b_hi, b_hi_inc
    else:
        hi, hi_inc = a_hi, a_hi_inc and b_hi_inc

    if lo is None or hi is None:
        return True
    if lo < hi:
        return True
    return lo == hi and lo_inc and hi_inc


def predicates_overlap(a: Predicate, b: Predicate) -> bool:
    """True when some answer would satisfy both predicates."""
    if isinstance(a, TriggerPredicate) and isinstance(b, TriggerPredicate):
        return normalize_text(a.value) == normalize_text(b.value)
    if isinstance(a, NumericPredicate) and isinstance(b, NumericPredicate):
        return _intervals_intersect(_interval(a), _interval(b))
    # Mixed: the trigger string overlaps only if it is itself a matching number
    trigger, numeric = (a, b) if isinstance(a, TriggerPredicate) else (b, a)
    try:
        return match_predicate(numeric, trigger.value)
    except NonNumericValue:
        return False


# ---------------------------------------------------------------------------
# Pure evaluation
# ---------------------------------------------------------------------------

def _creation_key(rule: TransitionRuleInfo):
    return (rule.created_at, str(rule.id))


def evaluate_rules(
    rules: Iterable[TransitionRuleInfo],
    *,
    company_id: uuid.UUID,
    from_stage_id: uuid.UUID,
    question_id: uuid.UUID,
    value: str,
    stage_companies: Mapping[uuid.UUID, uuid.UUID],
) -> Decision:
    """Select the winning rule for one answer.

    Args:
        rules: candidate rules; those not leaving *from_stage_id* on
               *question_id* are ignored
        company_id: the job's company
        from_stage_id: the job's current stage
        question_id: the answered question
        value: the normalized answer
        stage_companies: stage id -> company id for every known target stage;
               a target absent from the mapping counts as missing

    Returns:
        ``Match`` for the earliest-created matching rule, or ``NoMatch``.
    """
    diagnostics: list[Diagnostic] = []
    non_numeric: list[uuid.UUID] = []
    matched: list[TransitionRuleInfo] = []

    candidates = sorted(
        (r for r in rules if r.from_stage_id == from_stage_id and r.question_id == question_id),
        key=_creation_key,
    )
    for rule in candidates:
        if rule.to_stage_id == rule.from_stage_id:
            diagnostics.append(Diagnostic(
                code=DiagnosticCode.SELF_TRANSITION,
                message=f"rule {rule.id} points back at its own stage; ignored",
                rule_ids=[rule.id],
            ))
            continue
        try:
            if match_predicate(rule.predicate, value):
                matched.append(rule)
        except NonNumericValue:
            non_numeric.append(rule.id)

    if non_numeric:
        diagnostics.append(Diagnostic(
            code=DiagnosticCode.NON_NUMERIC_VALUE,
            message=f"answer {value!r} is not numeric; numeric rules skipped",
            rule_ids=non_numeric,
        ))

    if not matched:
        return NoMatch(diagnostics=diagnostics)

    winner = matched[0]
    if len(matched) > 1:
        ids = [r.id for r in matched]
        logger.warning(
            "Ambiguous rule set on stage %s question %s: %d rules matched %r, using %s",
            from_stage_id, question_id, len(matched), value, winner.id,
        )
        diagnostics.append(Diagnostic(
            code=DiagnosticCode.AMBIGUOUS_RULE_SET,
            message=f"{len(matched)} rules matched; earliest-created rule {winner.id} wins",
            rule_ids=ids,
        ))

    target_company = stage_companies.get(winner.to_stage_id)
    if target_company is None:
        diagnostics.append(Diagnostic(
            code=DiagnosticCode.MISSING_STAGE,
            message=f"rule {winner.id} targets missing stage {winner.to_stage_id}",
            rule_ids=[winner.id],
        ))
        return NoMatch(diagnostics=diagnostics)
    if target_company != company_id or winner.company_id != company_id:
        diagnostics.append(Diagnostic(
            code=DiagnosticCode.CROSS_TENANT_REFERENCE,
            message=f"rule {winner.id} crosses company boundary",
            rule_ids=[winner.id],
        ))
        return NoMatch(diagnostics=diagnostics)

    return Match(
        rule_id=winner.id,
        to_stage_id=winner.to_stage_id,
        is_automatic=winner.is_automatic,
        requires_override=winner.requires_admin_override,
        diagnostics=diagnostics,
    )


# ---------------------------------------------------------------------------
# Database-backed evaluator
# ---------------------------------------------------------------------------

class TransitionEvaluator:
    """Loads the rules of a stage and evaluates an answer against them.

    Read-only: never writes, so it is safe to call outside a transaction.
    """

    def __init__(self) -> None:
        self._repo = StageGraphRepository()

    async def evaluate(
        self,
        db: AsyncSession,
        *,
        from_stage_id: uuid.UUID,
        question_id: uuid.UUID,
        normalized_value: str,
        company_id: uuid.UUID | None = None,
    ) -> Decision:
        """Evaluate *normalized_value* for the rules leaving *from_stage_id*.

        ``company_id`` defaults to the from stage's company.  A from stage
        that is missing or owned by another company yields ``NoMatch``.
        """
        from_stage = await self._repo.get_stage(db, from_stage_id)
        if from_stage is None:
            return NoMatch(diagnostics=[Diagnostic(
                code=DiagnosticCode.MISSING_STAGE,
                message=f"stage {from_stage_id} not found",
            )])
        if company_id is None:
            company_id = from_stage.company_id
        elif from_stage.company_id != company_id:
            logger.error(
                "Evaluation for company %s referenced stage %s of company %s",
                company_id, from_stage_id, from_stage.company_id,
            )
            return NoMatch(diagnostics=[Diagnostic(
                code=DiagnosticCode.CROSS_TENANT_REFERENCE,
                message=f"stage {from_stage_id} belongs to another company",
            )])

        rows = await self._repo.list_transitions(db, from_stage_id)
        rules = [TransitionRuleInfo.from_row(r) for r in rows if r.question_id == question_id]

        stage_companies: dict[uuid.UUID, uuid.UUID] = {}
        for target_id in {r.to_stage_id for r in rules}:
            target = await self._repo.get_stage(db, target_id)
            if target is not None:
                stage_companies[target.id] = target.company_id

        decision = evaluate_rules(
            rules,
            company_id=company_id,
            from_stage_id=from_stage_id,
            question_id=question_id,
            value=normalized_value,
            stage_companies=stage_companies,
        )
        for diag in decision.diagnostics:
            if diag.code == DiagnosticCode.CROSS_TENANT_REFERENCE:
                logger.error("Stage %s: %s", from_stage_id, diag.message)
        return decision
