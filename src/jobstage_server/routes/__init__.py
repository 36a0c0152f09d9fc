"""Route registration: mounts all routers under ``/api/v1``."""

from fastapi import FastAPI

from jobstage_server.routes.graph import router as graph_router
from jobstage_server.routes.jobs import router as jobs_router
from jobstage_server.routes.pending import router as pending_router
from jobstage_server.routes.templates import router as templates_router

API_PREFIX = "/api/v1"


def register_routes(app: FastAPI) -> None:
    """Include all sub-routers under the versioned API prefix."""
    app.include_router(graph_router, prefix=API_PREFIX)
    app.include_router(jobs_router, prefix=API_PREFIX)
    app.include_router(pending_router, prefix=API_PREFIX)
    app.include_router(templates_router, prefix=API_PREFIX)
