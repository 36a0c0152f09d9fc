"""Async repositories for the stage graph and the job-side tables.

All public methods accept an ``AsyncSession`` so the caller controls
transaction boundaries.  Methods ``flush()`` but never ``commit()``.

The repositories avoid business-logic validation; that belongs in the SDK.
They do translate integrity failures on delete/retire paths into
:class:`ReferentialConflict` so the SDK can drive its fallback chain.
Those paths run inside a SAVEPOINT, so a blocked step leaves the outer
transaction usable.
"""

import re
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import delete, func, inspect, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from jobstage_db.errors import ArchiveUnsupported, ReferentialConflict
from jobstage_db.models.enums import PendingStatus
from jobstage_db.models.graph import Stage, StageQuestion, StageTransition
from jobstage_db.models.job import (
    JobStageState,
    PendingTransition,
    StageAuditEntry,
    StageResponse,
)

# PostgreSQL SQLSTATE for foreign_key_violation
_FK_VIOLATION = "23503"
_TABLE_RE = re.compile(r'table "([^"]+)"')


def _sqlstate(exc: DBAPIError) -> str | None:
    """Dig the SQLSTATE out of whichever driver raised *exc*."""
    orig = exc.orig
    for candidate in (orig, getattr(orig, "__cause__", None)):
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return code
    return None


def _conflict(exc: DBAPIError, what: str, ids: Iterable[uuid.UUID]) -> ReferentialConflict:
    code = _sqlstate(exc)
    match = _TABLE_RE.search(str(exc.orig))
    kind = "still referenced" if code == _FK_VIOLATION else f"blocked (sqlstate={code})"
    return ReferentialConflict(
        f"{what} {kind}",
        table=match.group(1) if match else None,
        ids=list(ids),
    )


def _now() -> datetime:
    return datetime.now(timezone.utc)


class StageGraphRepository:
    """Reads and writes on ``job_stages``, ``stage_questions``, ``stage_transitions``."""

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def list_stages(
        self,
        db: AsyncSession,
        company_id: uuid.UUID,
        *,
        retired_floor: int | None = None,
    ) -> list[Stage]:
        """Stages of a company ordered by sequence_order.

        With *retired_floor* set, archived stages and stages whose order is at
        or above the floor are excluded.
        """
        stmt = select(Stage).where(Stage.company_id == company_id)
        if retired_floor is not None:
            stmt = stmt.where(
                Stage.archived.is_(False), Stage.sequence_order < retired_floor,
            )
        stmt = stmt.order_by(Stage.sequence_order, Stage.created_at)
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def get_stage(self, db: AsyncSession, stage_id: uuid.UUID) -> Stage | None:
        return await db.get(Stage, stage_id)

    async def create_stage(self, db: AsyncSession, **fields: Any) -> Stage:
        stage = Stage(**fields)
        db.add(stage)
        await db.flush()
        return stage

    async def update_stage(
        self, db: AsyncSession, stage: Stage, changes: dict[str, Any]
    ) -> Stage:
        for key, value in changes.items():
            setattr(stage, key, value)
        stage.updated_at = _now()
        await db.flush()
        return stage

    async def delete_stages(self, db: AsyncSession, stages: list[Stage]) -> int:
        """Hard-delete stages; raises ReferentialConflict if any is referenced."""
        ids = [s.id for s in stages]
        if not ids:
            return 0
        try:
            async with db.begin_nested():
                await db.execute(
                    delete(Stage)
                    .where(Stage.id.in_(ids))
                    .execution_options(synchronize_session=False)
                )
        except IntegrityError as exc:
            raise _conflict(exc, "stages", ids) from exc
        return len(ids)

    async def archive_stages(self, db: AsyncSession, stages: list[Stage]) -> int:
        """Flag stages as archived, keeping every row and FK target intact."""
        ids = [s.id for s in stages]
        if not ids:
            return 0
        if not await self.supports_archive(db):
            raise ArchiveUnsupported("job_stages has no archived column", ids=ids)
        try:
            async with db.begin_nested():
                await db.execute(
                    update(Stage)
                    .where(Stage.id.in_(ids))
                    .values(archived=True, updated_at=_now())
                    .execution_options(synchronize_session=False)
                )
        except DBAPIError as exc:
            raise ArchiveUnsupported(f"archiving stages failed: {exc.orig}", ids=ids) from exc
        for stage in stages:
            await db.refresh(stage)
        return len(ids)

    async def retire_stages(
        self,
        db: AsyncSession,
        stages: list[Stage],
        *,
        order_offset: int,
        name_prefix: str | None = None,
    ) -> int:
        """Move stages out of the active namespace without touching history.

        Shifts ``sequence_order`` by *order_offset* and, when given, prefixes
        the name so a new graph can reuse the old names and orders.
        """
        if not stages:
            return 0
        try:
            async with db.begin_nested():
                for stage in stages:
                    stage.sequence_order = stage.sequence_order + order_offset
                    if name_prefix:
                        stage.name = f"{name_prefix}{stage.name}"
                    stage.updated_at = _now()
                await db.flush()
        except IntegrityError as exc:
            raise _conflict(exc, "retiring stages", [s.id for s in stages]) from exc
        return len(stages)

    async def supports_archive(self, db: AsyncSession) -> bool:
        """True when the live schema has the ``archived`` column."""
        conn = await db.connection()

        def _has_column(sync_conn) -> bool:
            columns = inspect(sync_conn).get_columns(Stage.__tablename__)
            return any(col["name"] == "archived" for col in columns)

        return await conn.run_sync(_has_column)

    async def stage_reference_counts(
        self, db: AsyncSession, stage_ids: list[uuid.UUID]
    ) -> dict[uuid.UUID, int]:
        """Count history rows (audit, job pointers, responses, pending) per stage.

        Stages absent from the returned dict have no known references.
        """
        if not stage_ids:
            return {}
        counts: dict[uuid.UUID, int] = {}

        def _add(rows) -> None:
            for stage_id, n in rows:
                if stage_id is not None:
                    counts[stage_id] = counts.get(stage_id, 0) + n

        for column in (StageAuditEntry.from_stage_id, StageAuditEntry.to_stage_id):
            rows = await db.execute(
                select(column, func.count()).where(column.in_(stage_ids)).group_by(column)
            )
            _add(rows.all())

        rows = await db.execute(
            select(JobStageState.current_stage_id, func.count())
            .where(JobStageState.current_stage_id.in_(stage_ids))
            .group_by(JobStageState.current_stage_id)
        )
        _add(rows.all())

        for column in (PendingTransition.from_stage_id, PendingTransition.to_stage_id):
            rows = await db.execute(
                select(column, func.count()).where(column.in_(stage_ids)).group_by(column)
            )
            _add(rows.all())

        rows = await db.execute(
            select(StageQuestion.stage_id, func.count(StageResponse.id))
            .join(StageResponse, StageResponse.question_id == StageQuestion.id)
            .where(StageQuestion.stage_id.in_(stage_ids))
            .group_by(StageQuestion.stage_id)
        )
        _add(rows.all())
        return counts

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------

    async def list_questions(
        self, db: AsyncSession, stage_id: uuid.UUID
    ) -> list[StageQuestion]:
        stmt = (
            select(StageQuestion)
            .where(StageQuestion.stage_id == stage_id)
            .order_by(StageQuestion.sequence_order, StageQuestion.created_at)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def list_company_questions(
        self, db: AsyncSession, stage_ids: list[uuid.UUID]
    ) -> list[StageQuestion]:
        if not stage_ids:
            return []
        result = await db.execute(
            select(StageQuestion).where(StageQuestion.stage_id.in_(stage_ids))
        )
        return list(result.scalars().all())

    async def get_question(
        self, db: AsyncSession, question_id: uuid.UUID
    ) -> StageQuestion | None:
        return await db.get(StageQuestion, question_id)

    async def create_question(self, db: AsyncSession, **fields: Any) -> StageQuestion:
        question = StageQuestion(**fields)
        db.add(question)
        await db.flush()
        return question

    async def update_question(
        self, db: AsyncSession, question: StageQuestion, changes: dict[str, Any]
    ) -> StageQuestion:
        for key, value in changes.items():
            setattr(question, key, value)
        question.updated_at = _now()
        await db.flush()
        return question

    async def reorder_questions(
        self, db: AsyncSession, ordering: list[tuple[StageQuestion, int]], *, temp_offset: int
    ) -> None:
        """Apply new sequence orders in two passes to dodge transient clashes."""
        for question, new_order in ordering:
            question.sequence_order = new_order + temp_offset
        await db.flush()
        for question, new_order in ordering:
            question.sequence_order = new_order
            question.updated_at = _now()
        await db.flush()

    async def delete_questions(
        self, db: AsyncSession, questions: list[StageQuestion]
    ) -> int:
        ids = [q.id for q in questions]
        if not ids:
            return 0
        try:
            async with db.begin_nested():
                await db.execute(
                    delete(StageQuestion)
                    .where(StageQuestion.id.in_(ids))
                    .execution_options(synchronize_session=False)
                )
        except IntegrityError as exc:
            raise _conflict(exc, "questions", ids) from exc
        return len(ids)

    async def questions_with_responses(
        self, db: AsyncSession, question_ids: list[uuid.UUID]
    ) -> set[uuid.UUID]:
        if not question_ids:
            return set()
        result = await db.execute(
            select(StageResponse.question_id)
            .where(StageResponse.question_id.in_(question_ids))
            .distinct()
        )
        return set(result.scalars().all())

    # ------------------------------------------------------------------
    # Transition rules
    # ------------------------------------------------------------------

    async def list_transitions(
        self, db: AsyncSession, from_stage_id: uuid.UUID
    ) -> list[StageTransition]:
        """Outbound rules of a stage, oldest first (creation order)."""
        stmt = (
            select(StageTransition)
            .where(StageTransition.from_stage_id == from_stage_id)
            .order_by(StageTransition.created_at, StageTransition.id)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def list_transitions_touching(
        self, db: AsyncSession, stage_ids: list[uuid.UUID]
    ) -> list[StageTransition]:
        """Rules whose source or target is one of *stage_ids*."""
        if not stage_ids:
            return []
        result = await db.execute(
            select(StageTransition).where(
                StageTransition.from_stage_id.in_(stage_ids)
                | StageTransition.to_stage_id.in_(stage_ids)
            )
        )
        return list(result.scalars().all())

    async def get_transition(
        self, db: AsyncSession, rule_id: uuid.UUID
    ) -> StageTransition | None:
        return await db.get(StageTransition, rule_id)

    async def create_transition(self, db: AsyncSession, **fields: Any) -> StageTransition:
        rule = StageTransition(**fields)
        db.add(rule)
        await db.flush()
        return rule

    async def update_transition(
        self, db: AsyncSession, rule: StageTransition, changes: dict[str, Any]
    ) -> StageTransition:
        for key, value in changes.items():
            setattr(rule, key, value)
        await db.flush()
        return rule

    async def delete_transitions(
        self, db: AsyncSession, rules: list[StageTransition]
    ) -> int:
        ids = [r.id for r in rules]
        if not ids:
            return 0
        try:
            async with db.begin_nested():
                await db.execute(
                    delete(StageTransition)
                    .where(StageTransition.id.in_(ids))
                    .execution_options(synchronize_session=False)
                )
        except IntegrityError as exc:
            raise _conflict(exc, "transition rules", ids) from exc
        return len(ids)


class JobRepository:
    """Reads and writes on the job-side tables owned by the engine."""

    # ------------------------------------------------------------------
    # Stage pointer
    # ------------------------------------------------------------------

    async def get_state(
        self, db: AsyncSession, job_id: uuid.UUID
    ) -> JobStageState | None:
        return await db.get(JobStageState, job_id)

    async def create_state(
        self,
        db: AsyncSession,
        *,
        job_id: uuid.UUID,
        company_id: uuid.UUID,
        stage_id: uuid.UUID,
        status: str,
    ) -> JobStageState:
        state = JobStageState(
            job_id=job_id,
            company_id=company_id,
            current_stage_id=stage_id,
            status=status,
            stage_entered_at=_now(),
        )
        db.add(state)
        await db.flush()
        return state

    async def compare_and_set_stage(
        self,
        db: AsyncSession,
        state: JobStageState,
        *,
        expected_stage_id: uuid.UUID,
        new_stage_id: uuid.UUID,
        status: str,
    ) -> bool:
        """Move the job only if it still sits at *expected_stage_id*.

        Returns False when another writer moved the job first.
        """
        now = _now()
        result = await db.execute(
            update(JobStageState)
            .where(
                JobStageState.job_id == state.job_id,
                JobStageState.current_stage_id == expected_stage_id,
            )
            .values(
                current_stage_id=new_stage_id,
                stage_entered_at=now,
                status=status,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await db.refresh(state)
        return True

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    async def record_response(
        self,
        db: AsyncSession,
        *,
        job_id: uuid.UUID,
        company_id: uuid.UUID,
        question_id: uuid.UUID,
        raw_value: str,
        normalized_value: str,
        submitted_by: str,
    ) -> StageResponse:
        """Insert a response and demote the previous current one to history."""
        await db.execute(
            update(StageResponse)
            .where(
                StageResponse.job_id == job_id,
                StageResponse.question_id == question_id,
                StageResponse.is_current.is_(True),
            )
            .values(is_current=False)
        )
        response = StageResponse(
            job_id=job_id,
            company_id=company_id,
            question_id=question_id,
            raw_value=raw_value,
            normalized_value=normalized_value,
            submitted_by=submitted_by,
            is_current=True,
            submitted_at=_now(),
        )
        db.add(response)
        await db.flush()
        return response

    async def get_response(
        self, db: AsyncSession, response_id: uuid.UUID
    ) -> StageResponse | None:
        return await db.get(StageResponse, response_id)

    async def current_responses(
        self, db: AsyncSession, job_id: uuid.UUID
    ) -> dict[uuid.UUID, StageResponse]:
        """Current answer per question for a job, keyed by question id."""
        result = await db.execute(
            select(StageResponse).where(
                StageResponse.job_id == job_id, StageResponse.is_current.is_(True),
            )
        )
        return {r.question_id: r for r in result.scalars().all()}

    async def list_responses(
        self, db: AsyncSession, job_id: uuid.UUID
    ) -> list[StageResponse]:
        result = await db.execute(
            select(StageResponse)
            .where(StageResponse.job_id == job_id)
            .order_by(StageResponse.submitted_at)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Audit trail (append-only)
    # ------------------------------------------------------------------

    async def append_audit_entry(self, db: AsyncSession, **fields: Any) -> StageAuditEntry:
        entry = StageAuditEntry(**fields)
        db.add(entry)
        await db.flush()
        return entry

    async def list_audit_entries(
        self, db: AsyncSession, job_id: uuid.UUID
    ) -> list[StageAuditEntry]:
        result = await db.execute(
            select(StageAuditEntry)
            .where(StageAuditEntry.job_id == job_id)
            .order_by(StageAuditEntry.applied_at)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Pending transitions
    # ------------------------------------------------------------------

    async def create_pending(self, db: AsyncSession, **fields: Any) -> PendingTransition:
        pending = PendingTransition(**fields)
        db.add(pending)
        await db.flush()
        return pending

    async def get_pending(
        self, db: AsyncSession, pending_id: uuid.UUID
    ) -> PendingTransition | None:
        return await db.get(PendingTransition, pending_id)

    async def find_open_pending(
        self,
        db: AsyncSession,
        *,
        job_id: uuid.UUID,
        rule_id: uuid.UUID | None,
        from_stage_id: uuid.UUID,
    ) -> PendingTransition | None:
        """The open request for *rule_id* leaving *from_stage_id*, if any."""
        stmt = select(PendingTransition).where(
            PendingTransition.job_id == job_id,
            PendingTransition.status == PendingStatus.PENDING,
            PendingTransition.rule_id == rule_id,
            PendingTransition.from_stage_id == from_stage_id,
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_pending(
        self,
        db: AsyncSession,
        company_id: uuid.UUID,
        *,
        job_id: uuid.UUID | None = None,
    ) -> list[PendingTransition]:
        stmt = select(PendingTransition).where(
            PendingTransition.company_id == company_id,
            PendingTransition.status == PendingStatus.PENDING,
        )
        if job_id is not None:
            stmt = stmt.where(PendingTransition.job_id == job_id)
        result = await db.execute(stmt.order_by(PendingTransition.created_at))
        return list(result.scalars().all())

    async def resolve_pending(
        self,
        db: AsyncSession,
        pending: PendingTransition,
        *,
        status: PendingStatus,
        resolved_by: str,
    ) -> PendingTransition:
        pending.status = status
        pending.resolved_by = resolved_by
        pending.resolved_at = _now()
        await db.flush()
        return pending
