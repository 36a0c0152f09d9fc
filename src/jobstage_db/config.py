"""Database configuration: connection parameters from the environment.

Resolution order:
1. ``JOBSTAGE_DATABASE_URL`` (lets the engine share a host with other apps)
2. ``DATABASE_URL``
3. Individual ``PG_HOST``, ``PG_PORT``, ``PG_USER``, ``PG_PASSWORD``,
   ``PG_DATABASE`` env vars.

Alembic needs a plain libpq URL; the runtime engine needs the asyncpg
driver prefix.  Both are derived from the same source.
"""

import os

_ASYNC_PREFIX = "postgresql+asyncpg://"
_SYNC_PREFIX = "postgresql://"


def _raw_url() -> str:
    url = os.getenv("JOBSTAGE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if url:
        return url
    host = os.getenv("PG_HOST", "localhost")
    port = os.getenv("PG_PORT", "5432")
    user = os.getenv("PG_USER", "jobstage")
    password = os.getenv("PG_PASSWORD", "jobstage")
    database = os.getenv("PG_DATABASE", "jobstage")
    return f"{_SYNC_PREFIX}{user}:{password}@{host}:{port}/{database}"


def _with_driver(url: str, prefix: str) -> str:
    """Swap whatever postgres driver prefix *url* has for *prefix*."""
    for known in (_ASYNC_PREFIX, "postgresql+psycopg2://", _SYNC_PREFIX, "postgres://"):
        if url.startswith(known):
            return prefix + url[len(known):]
    return url


def get_sync_url() -> str:
    """URL for Alembic, which runs migrations synchronously."""
    return _with_driver(_raw_url(), _SYNC_PREFIX)


def get_async_url() -> str:
    """URL for the asyncpg-backed SQLAlchemy engine used at runtime."""
    return _with_driver(_raw_url(), _ASYNC_PREFIX)
