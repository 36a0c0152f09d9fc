"""Storage-level exceptions raised by the repositories.

The repositories translate driver errors into these so the SDK can react
to referential-integrity failures without depending on psycopg/asyncpg
error classes.
"""


class StoreError(Exception):
    """Base class for repository failures the SDK is expected to handle."""


class ReferentialConflict(StoreError):
    """A delete or retire step was blocked by rows that still reference it.

    Carries the blocking table (when the driver reports one) and the ids the
    step was trying to remove, so callers can log or fall back.
    """

    def __init__(
        self,
        message: str,
        *,
        table: str | None = None,
        ids: list | None = None,
    ) -> None:
        super().__init__(message)
        self.table = table
        self.ids = list(ids or [])


class ArchiveUnsupported(ReferentialConflict):
    """The schema cannot mark stages as archived (missing or locked column)."""
