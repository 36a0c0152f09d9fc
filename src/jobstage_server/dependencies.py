"""FastAPI dependency injection: provides DB sessions, the workflow, and caller identity.

Each request that touches the database gets a fresh ``AsyncSession`` via
``get_db()``.  The session is committed on success and rolled back on error,
matching the SDK convention where components call ``flush()`` but never
``commit()``.
"""

import hmac
import uuid
from typing import AsyncGenerator

from fastapi import Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from jobstage_db.engine import get_session_factory
from jobstage_engine.models.job import ActingUser
from jobstage_engine.workflow import StageWorkflow


# ------------------------------------------------------------------
# Database session: transaction boundary lives here
# ------------------------------------------------------------------

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async DB session; commit on success, rollback on error."""
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ------------------------------------------------------------------
# Workflow: stashed on app.state during lifespan
# ------------------------------------------------------------------

def get_workflow(request: Request) -> StageWorkflow:
    """Return the StageWorkflow singleton from ``app.state``."""
    return request.app.state.workflow


# ------------------------------------------------------------------
# Caller identity: injected by the gateway as headers
# ------------------------------------------------------------------

async def get_acting_user(
    request: Request,
    x_user_id: str | None = Header(None, alias="X-User-ID"),
    x_company_id: str | None = Header(None, alias="X-Company-ID"),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
    x_proxy_secret: str | None = Header(None, alias="X-Proxy-Secret"),
) -> ActingUser:
    """Build the caller's identity from ``X-User-ID`` and ``X-Company-ID``.

    Returns 401 if either header is missing or the company id is not a
    UUID.  ``X-User-Role`` decides admin rights against the configured
    admin roles.

    When ``TRUSTED_PROXY_SECRET`` is configured, the request must also
    carry a matching ``X-Proxy-Secret`` header.
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-ID header is required")
    if not x_company_id:
        raise HTTPException(status_code=401, detail="X-Company-ID header is required")
    try:
        company_id = uuid.UUID(x_company_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="X-Company-ID must be a UUID") from None

    # --- Proxy-secret validation (opt-in via TRUSTED_PROXY_SECRET) ---
    settings = request.app.state.settings
    expected_secret: str | None = settings.trusted_proxy_secret
    if expected_secret:
        if not x_proxy_secret:
            raise HTTPException(
                status_code=403,
                detail="X-Proxy-Secret header is required",
            )
        # Constant-time comparison to prevent timing side-channels.
        if not hmac.compare_digest(x_proxy_secret, expected_secret):
            raise HTTPException(status_code=403, detail="Invalid proxy secret")

    role = (x_user_role or "").strip().lower()
    return ActingUser(
        user_id=x_user_id,
        company_id=company_id,
        is_admin=role in settings.admin_roles,
    )
