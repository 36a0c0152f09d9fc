"""ResponseIngestion: validates and records answers to stage questions.

Each response type has a normalizer that either returns the canonical
string stored in ``normalized_value`` or a :class:`ValidationIssue`:

  - yes_no: "yes"/"no", case and surrounding whitespace ignored
  - number: a finite decimal, stored in canonical form ("1.50" -> "1.5")
  - multiple_choice: exact match against the question's options
  - date: ISO calendar date, stored as YYYY-MM-DD
  - file_upload: a storage reference; inline ``data:`` payloads are refused
  - text: trimmed

Ingestion never moves a job; evaluation is a separate step.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from jobstage_db.models.enums import ResponseType
from jobstage_db.repository import JobRepository, StageGraphRepository

from jobstage_engine.constants import NO, YES
from jobstage_engine.errors import CrossTenantReference, NotFoundError
from jobstage_engine.evaluator import NonNumericValue, parse_decimal
from jobstage_engine.models.graph import QuestionInfo
from jobstage_engine.models.job import (
    IngestionResult,
    ResponseAccepted,
    ResponseInfo,
    ResponseRejected,
    ValidationIssue,
)

logger = logging.getLogger(__name__)


class InvalidResponse(ValueError):
    """Raised by a normalizer; carries the issue code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


# ---------------------------------------------------------------------------
# Normalizers
# ---------------------------------------------------------------------------

def _canonical_decimal(number: Decimal) -> str:
    """Shortest plain-notation form: no exponent, no trailing zeros."""
    if number == 0:
        return "0"
    return format(number.normalize(), "f")


def _normalize_yes_no(value: str, question: QuestionInfo) -> str:
    answer = value.strip().casefold()
    if answer not in (YES, NO):
        raise InvalidResponse("invalid_yes_no", "Answer must be 'yes' or 'no'")
    return answer


def _normalize_number(value: str, question: QuestionInfo) -> str:
    try:
        number = parse_decimal(value)
    except NonNumericValue as exc:
        raise InvalidResponse("invalid_number", "Answer must be a number") from exc
    return _canonical_decimal(number)


def _normalize_choice(value: str, question: QuestionInfo) -> str:
    if value not in (question.response_options or []):
        raise InvalidResponse(
            "invalid_choice",
            f"Answer must be one of: {', '.join(question.response_options or [])}",
        )
    return value


def _normalize_date(value: str, question: QuestionInfo) -> str:
    try:
        parsed = date.fromisoformat(value.strip())
    except ValueError as exc:
        raise InvalidResponse("invalid_date", "Answer must be a date (YYYY-MM-DD)") from exc
    return parsed.isoformat()


def _normalize_file(value: str, question: QuestionInfo) -> str:
    ref = value.strip()
    if ref.lower().startswith("data:"):
        raise InvalidResponse(
            "inline_file_payload", "Upload the file first and submit its reference",
        )
    return ref


def _normalize_text(value: str, question: QuestionInfo) -> str:
    return value.strip()


_NORMALIZERS: dict[ResponseType, Callable[[str, QuestionInfo], str]] = {
    ResponseType.YES_NO: _normalize_yes_no,
    ResponseType.NUMBER: _normalize_number,
    ResponseType.MULTIPLE_CHOICE: _normalize_choice,
    ResponseType.DATE: _normalize_date,
    ResponseType.FILE_UPLOAD: _normalize_file,
    ResponseType.TEXT: _normalize_text,
}


def normalize_response(question: QuestionInfo, raw_value: str) -> str:
    """Return the canonical form of *raw_value* or raise :class:`InvalidResponse`.

    Blank answers are refused for required questions and stored as ""
    otherwise.
    """
    if raw_value is None or not str(raw_value).strip():
        if question.is_required:
            raise InvalidResponse("required", "An answer is required")
        return ""
    return _NORMALIZERS[question.response_type](str(raw_value), question)


# ---------------------------------------------------------------------------
# Ingestion service
# ---------------------------------------------------------------------------

class ResponseIngestion:
    """Validates answers against their question and persists them."""

    def __init__(self) -> None:
        self._graph = StageGraphRepository()
        self._jobs = JobRepository()

    async def submit_response(
        self,
        db: AsyncSession,
        *,
        company_id: uuid.UUID,
        job_id: uuid.UUID,
        question_id: uuid.UUID,
        raw_value: str,
        submitted_by: str,
    ) -> IngestionResult:
        """Validate and store an answer, superseding the previous one.

        Returns ``ResponseRejected`` for invalid input.  Raises
        ``CrossTenantReference`` when the question or job belongs to another
        company.  The caller must ``await db.commit()`` to persist.
        """
        row = await self._graph.get_question(db, question_id)
        if row is None:
            raise NotFoundError(f"Question not found: {question_id}")
        if row.company_id != company_id:
            logger.error(
                "Company %s submitted an answer to question %s of company %s",
                company_id, question_id, row.company_id,
            )
            raise CrossTenantReference(f"Question {question_id} belongs to another company")
        state = await self._jobs.get_state(db, job_id)
        if state is not None and state.company_id != company_id:
            logger.error("Company %s submitted an answer for job %s of another company",
                         company_id, job_id)
            raise CrossTenantReference(f"Job {job_id} belongs to another company")

        question = QuestionInfo.model_validate(row)
        try:
            normalized = normalize_response(question, raw_value)
        except InvalidResponse as exc:
            logger.info(
                "Rejected answer to question %s for job %s: %s", question_id, job_id, exc.code,
            )
            return ResponseRejected(issue=ValidationIssue(code=exc.code, message=str(exc)))

        response = await self._jobs.record_response(
            db,
            job_id=job_id,
            company_id=company_id,
            question_id=question_id,
            raw_value="" if raw_value is None else str(raw_value),
            normalized_value=normalized,
            submitted_by=submitted_by,
        )
        return ResponseAccepted(response=ResponseInfo.model_validate(response))
