"""jobstage_db: PostgreSQL persistence layer for the stage workflow engine.

Provides the ORM models, async engine factory, and repositories for the
stage graph (stages, questions, transition rules) and the job-side tables
(stage pointer, responses, audit log, pending transitions).
"""

from jobstage_db.engine import get_engine, get_session_factory, session_scope
from jobstage_db.errors import ArchiveUnsupported, ReferentialConflict, StoreError
from jobstage_db.repository import JobRepository, StageGraphRepository

__all__ = [
    "get_engine",
    "get_session_factory",
    "session_scope",
    "ArchiveUnsupported",
    "ReferentialConflict",
    "StoreError",
    "JobRepository",
    "StageGraphRepository",
]
