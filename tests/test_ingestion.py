"""Response ingestion tests: per-type normalization and persistence.

``normalize_response`` is exercised directly for each response type;
``ResponseIngestion`` is exercised against the in-memory repositories to
check supersession of previous answers and tenant isolation.
"""

import uuid

import pytest

from jobstage_engine.errors import CrossTenantReference, NotFoundError
from jobstage_engine.ingestion import InvalidResponse, ResponseIngestion, normalize_response
from jobstage_engine.models.graph import QuestionInfo
from jobstage_engine.models.job import ResponseAccepted, ResponseRejected


def _question(response_type, *, required=True, options=None):
    return QuestionInfo(
        id=uuid.uuid4(),
        stage_id=uuid.uuid4(),
        company_id=uuid.uuid4(),
        question_text="Q?",
        response_type=response_type,
        is_required=required,
        response_options=options,
        sequence_order=1,
    )


def _code(question, raw):
    with pytest.raises(InvalidResponse) as exc_info:
        normalize_response(question, raw)
    return exc_info.value.code


# =====================================================================
# Normalizers
# =====================================================================


class TestYesNo:
    @pytest.mark.parametrize("raw,expected", [("Yes", "yes"), (" NO ", "no"), ("yEs\n", "yes")])
    def test_normalized_to_lowercase(self, raw, expected):
        assert normalize_response(_question("yes_no"), raw) == expected

    @pytest.mark.parametrize("raw", ["y", "true", "maybe", "yes please"])
    def test_other_answers_rejected(self, raw):
        assert _code(_question("yes_no"), raw) == "invalid_yes_no"


class TestNumber:
    @pytest.mark.parametrize(
        "raw,expected",
        [("1.50", "1.5"), ("90", "90"), (" 007 ", "7"), ("1e3", "1000"), ("-0.0", "0"),
         ("100.00", "100"), ("0.000120", "0.00012")],
    )
    def test_canonical_form(self, raw, expected):
        assert normalize_response(_question("number"), raw) == expected

    @pytest.mark.parametrize("raw", ["ten", "NaN", "Infinity", "1,5"])
    def test_non_finite_or_garbage_rejected(self, raw):
        assert _code(_question("number"), raw) == "invalid_number"


class TestMultipleChoice:
    def test_exact_option_accepted(self):
        q = _question("multiple_choice", options=["Red", "Green"])
        assert normalize_response(q, "Green") == "Green"

    def test_case_mismatch_rejected(self):
        q = _question("multiple_choice", options=["Red", "Green"])
        assert _code(q, "green") == "invalid_choice"


class TestDate:
    def test_iso_date_accepted(self):
        assert normalize_response(_question("date"), " 2026-02-28 ") == "2026-02-28"

    @pytest.mark.parametrize("raw", ["2026-02-30", "28/02/2026", "tomorrow"])
    def test_invalid_dates_rejected(self, raw):
        assert _code(_question("date"), raw) == "invalid_date"


class TestFileUpload:
    def test_storage_reference_accepted(self):
        ref = "s3://bucket/jobs/42/notes.pdf"
        assert normalize_response(_question("file_upload"), f"  {ref} ") == ref

    def test_inline_data_url_rejected(self):
        q = _question("file_upload")
        assert _code(q, "data:image/png;base64,iVBORw0KGgo=") == "inline_file_payload"


class TestTextAndBlank:
    def test_text_is_trimmed(self):
        assert normalize_response(_question("text"), "  fine  ") == "fine"

    @pytest.mark.parametrize("response_type", ["text", "yes_no", "number", "date"])
    def test_blank_required_rejected(self, response_type):
        assert _code(_question(response_type), "   ") == "required"

    def test_blank_optional_stored_empty(self):
        assert normalize_response(_question("number", required=False), "") == ""


# =====================================================================
# ResponseIngestion
# =====================================================================


@pytest.fixture
def ingestion(graph_repo, job_repo):
    svc = ResponseIngestion()
    svc._graph = graph_repo
    svc._jobs = job_repo
    return svc


@pytest.fixture
def stage_with_question(tables, company_id):
    stage = tables.add_stage(company_id, "Lead", 1)
    question = tables.add_question(stage, "Qualified?", "yes_no")
    job = tables.add_job(stage)
    return stage, question, job


class TestResponseIngestion:
    @pytest.mark.asyncio
    async def test_accepts_and_stores_normalized(
        self, ingestion, mock_db, tables, company_id, stage_with_question,
    ):
        _, question, job = stage_with_question
        result = await ingestion.submit_response(
            mock_db, company_id=company_id, job_id=job.job_id,
            question_id=question.id, raw_value=" Yes ", submitted_by="u1",
        )
        assert isinstance(result, ResponseAccepted)
        assert result.response.raw_value == " Yes "
        assert result.response.normalized_value == "yes"
        assert result.response.is_current is True
        assert len(tables.responses) == 1

    @pytest.mark.asyncio
    async def test_new_answer_supersedes_previous(
        self, ingestion, mock_db, tables, company_id, stage_with_question,
    ):
        _, question, job = stage_with_question
        first = await ingestion.submit_response(
            mock_db, company_id=company_id, job_id=job.job_id,
            question_id=question.id, raw_value="no", submitted_by="u1",
        )
        second = await ingestion.submit_response(
            mock_db, company_id=company_id, job_id=job.job_id,
            question_id=question.id, raw_value="yes", submitted_by="u1",
        )
        current = [r for r in tables.responses.values() if r.is_current]
        assert [r.id for r in current] == [second.response.id]
        assert tables.responses[first.response.id].is_current is False

    @pytest.mark.asyncio
    async def test_rejected_answer_is_not_stored(
        self, ingestion, mock_db, tables, company_id, stage_with_question,
    ):
        _, question, job = stage_with_question
        result = await ingestion.submit_response(
            mock_db, company_id=company_id, job_id=job.job_id,
            question_id=question.id, raw_value="perhaps", submitted_by="u1",
        )
        assert isinstance(result, ResponseRejected)
        assert result.issue.code == "invalid_yes_no"
        assert tables.responses == {}

    @pytest.mark.asyncio
    async def test_unknown_question(self, ingestion, mock_db, company_id):
        with pytest.raises(NotFoundError):
            await ingestion.submit_response(
                mock_db, company_id=company_id, job_id=uuid.uuid4(),
                question_id=uuid.uuid4(), raw_value="yes", submitted_by="u1",
            )

    @pytest.mark.asyncio
    async def test_question_of_other_company(
        self, ingestion, mock_db, tables, stage_with_question,
    ):
        _, question, job = stage_with_question
        with pytest.raises(CrossTenantReference):
            await ingestion.submit_response(
                mock_db, company_id=uuid.uuid4(), job_id=job.job_id,
                question_id=question.id, raw_value="yes", submitted_by="u1",
            )
        assert tables.responses == {}

    @pytest.mark.asyncio
    async def test_job_of_other_company(self, ingestion, mock_db, tables, company_id,
                                        stage_with_question):
        _, question, _ = stage_with_question
        foreign_stage = tables.add_stage(uuid.uuid4(), "Other", 1)
        foreign_job = tables.add_job(foreign_stage)
        with pytest.raises(CrossTenantReference):
            await ingestion.submit_response(
                mock_db, company_id=company_id, job_id=foreign_job.job_id,
                question_id=question.id, raw_value="yes", submitted_by="u1",
            )
