"""FastAPI application for the stage workflow.

``create_app()`` wires the ``StageWorkflow`` SDK into an HTTP service:
templates are loaded once in the lifespan handler, SDK and storage errors
are mapped to status codes by global handlers, and the routers are mounted
under ``/api/v1``.  ``/health`` reports database reachability and the
loaded templates for readiness checks.

``cli()`` is the ``jobstage-server`` console script.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from jobstage_db.engine import dispose_engine, get_engine
from jobstage_db.errors import StoreError
from jobstage_engine.errors import WorkflowError
from jobstage_engine.templates import TemplateStore
from jobstage_engine.workflow import StageWorkflow

from jobstage_server.config import ServerSettings, load_settings
from jobstage_server.errors import (
    generic_error_handler,
    store_error_handler,
    workflow_error_handler,
)
from jobstage_server.routes import register_routes

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the workflow at startup; release the connection pool on shutdown.

    A malformed template aborts startup rather than surfacing later as a
    failed provisioning request.
    """
    settings: ServerSettings = app.state.settings

    templates = TemplateStore(template_dir=settings.template_dir)
    templates.load()
    app.state.workflow = StageWorkflow(templates)
    logger.info("Workflow ready with templates: %s", ", ".join(templates.list_ids()) or "-")

    yield

    await dispose_engine()
    logger.info("Database engine disposed")


def _install_error_handlers(app: FastAPI) -> None:
    # Most specific first: SDK errors carry their own status code, storage
    # conflicts are 409, anything else is a 500.
    app.add_exception_handler(WorkflowError, workflow_error_handler)
    app.add_exception_handler(StoreError, store_error_handler)
    app.add_exception_handler(Exception, generic_error_handler)


def create_app(settings: ServerSettings | None = None) -> FastAPI:
    """Build the FastAPI application.  *settings* defaults to the environment."""
    settings = settings or load_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    app = FastAPI(
        title="Job Stage Workflow API",
        description="Company stage graphs, answer-driven job transitions and template provisioning",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _install_error_handlers(app)

    @app.get("/health")
    async def health(request: Request) -> dict:
        """Readiness check: database reachable and templates loaded."""
        workflow: StageWorkflow | None = getattr(request.app.state, "workflow", None)
        templates = workflow.templates.list_ids() if workflow is not None else []
        try:
            async with get_engine().connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as exc:
            logger.error("Health check failed: %s", exc)
            return {"status": "error", "detail": str(exc), "templates": templates}
        return {"status": "ok", "templates": templates}

    register_routes(app)
    return app


# ASGI entry point for ``uvicorn jobstage_server.app:app``
app = create_app()


def cli() -> None:
    """Console-script entry point: ``jobstage-server``."""
    import uvicorn

    settings = load_settings()
    uvicorn.run(
        "jobstage_server.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
