"""Exceptions raised by the workflow SDK.

Validation and matching outcomes are returned as typed results
(``ResponseRejected``, ``NoMatch``), never raised.  The exceptions below
cover the cases a caller cannot continue from without changing its input
or retrying.

Each class carries a ``status_code`` so the HTTP adapter can map it
without a lookup table.
"""

from jobstage_db.errors import ArchiveUnsupported, ReferentialConflict, StoreError

__all__ = [
    "WorkflowError",
    "NotFoundError",
    "GraphValidationError",
    "ConcurrentModification",
    "CrossTenantReference",
    "PermissionDenied",
    "ProvisioningFailed",
    "ReferentialConflict",
    "ArchiveUnsupported",
    "StoreError",
]


class WorkflowError(Exception):
    """Base class for all SDK errors."""

    status_code = 400


class NotFoundError(WorkflowError):
    """Entity missing, or owned by another company."""

    status_code = 404


class GraphValidationError(WorkflowError):
    """A graph write would break a structural invariant."""

    status_code = 422


class ConcurrentModification(WorkflowError):
    """The job moved between read and write.  Safe to retry after a reload."""

    status_code = 409

    def __init__(self, message: str, *, job_id=None, expected_stage_id=None) -> None:
        super().__init__(message)
        self.job_id = job_id
        self.expected_stage_id = expected_stage_id


class CrossTenantReference(WorkflowError):
    """An operation touched an entity belonging to another company."""

    status_code = 403


class PermissionDenied(WorkflowError):
    """The operation needs an admin and the acting user is not one."""

    status_code = 403


class ProvisioningFailed(WorkflowError):
    """Every teardown tier failed; the report says how far each one got."""

    status_code = 409

    def __init__(self, message: str, report=None) -> None:
        super().__init__(message)
        self.report = report
