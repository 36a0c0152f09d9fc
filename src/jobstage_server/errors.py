"""Global exception handlers: map SDK exceptions to HTTP status codes.

Every SDK exception carries a ``status_code``; storage conflicts from
``jobstage_db`` map to 409.  Rather than catching these in every route,
we install global handlers so route handlers stay focused on the happy
path.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from jobstage_db.errors import StoreError
from jobstage_engine.errors import ProvisioningFailed, WorkflowError

logger = logging.getLogger(__name__)

# --- Client-safe messages keyed by HTTP status code ---
# Internal details (ids, company ids, table names) stay in the server log;
# the client receives only a generic description.
_SAFE_MESSAGES: dict[int, str] = {
    400: "Invalid request",
    403: "Forbidden",
    404: "Resource not found",
    409: "Conflict with current state",
    422: "Invalid workflow change",
}


async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    """Map an SDK exception to its status code and a safe message.

    The raw message is logged server-side; a 422 validation message is
    passed through because it describes the caller's own input, and a
    failed provisioning run returns its report so the run can be resumed.
    """
    status = exc.status_code
    logger.warning("%s [%d] at %s: %s", type(exc).__name__, status, request.url, exc)
    content = {"detail": _SAFE_MESSAGES.get(status, "Invalid request"), "error": type(exc).__name__}
    if status == 422:
        content["reason"] = str(exc)
    if isinstance(exc, ProvisioningFailed) and exc.report is not None:
        content["report"] = exc.report.model_dump(mode="json")
    return JSONResponse(status_code=status, content=content)


async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    """Map a storage conflict (row still referenced) to 409."""
    logger.warning("%s at %s: %s", type(exc).__name__, request.url, exc)
    return JSONResponse(
        status_code=409,
        content={"detail": _SAFE_MESSAGES[409], "error": type(exc).__name__},
    )


async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions: log full traceback, return 500."""
    logger.exception("Unhandled exception at %s", request.url)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )
