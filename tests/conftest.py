import uuid

import pytest

from helpers.mock_db import MockGraphRepository, MockJobRepository, MockSession, MockTables, wire_workflow
from jobstage_engine.models.job import ActingUser
from jobstage_engine.templates import TemplateStore
from jobstage_engine.workflow import StageWorkflow


@pytest.fixture(scope="session")
def templates():
    """Load the bundled workflow templates once for the entire test session."""
    store = TemplateStore()
    store.load()
    return store


@pytest.fixture
def tables():
    return MockTables()


@pytest.fixture
def graph_repo(tables):
    return MockGraphRepository(tables)


@pytest.fixture
def job_repo(tables):
    return MockJobRepository(tables)


@pytest.fixture
def mock_db(tables):
    """MockSession standing in for AsyncSession: commit/rollback are AsyncMocks."""
    return MockSession(tables)


@pytest.fixture
def workflow(templates, graph_repo, job_repo):
    """StageWorkflow with every component wired to the in-memory repositories."""
    wf = StageWorkflow(templates)
    wire_workflow(wf, graph_repo, job_repo)
    return wf


@pytest.fixture
def company_id():
    return uuid.uuid4()


@pytest.fixture
def worker(company_id):
    return ActingUser(user_id="worker-1", company_id=company_id, is_admin=False)


@pytest.fixture
def admin(company_id):
    return ActingUser(user_id="owner-1", company_id=company_id, is_admin=True)
