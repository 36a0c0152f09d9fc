"""Alembic environment for the stage workflow tables.

The workflow tables live inside the host product's database, next to its
own jobs and companies tables.  Migrations here therefore:
  - keep their history in ``jobstage_alembic_version`` so they never clash
    with the product's own Alembic history
  - only autogenerate for tables registered on ``Base.metadata``; anything
    else in the database belongs to the product and is ignored

Alembic runs synchronously, so the psycopg2 URL from ``get_sync_url()``
replaces the placeholder in ``alembic.ini``.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from jobstage_db.config import get_sync_url
from jobstage_db.models.base import Base

# Registers the workflow tables on Base.metadata
import jobstage_db.models.graph  # noqa: F401
import jobstage_db.models.job  # noqa: F401

VERSION_TABLE = "jobstage_alembic_version"

config = context.config
config.set_main_option("sqlalchemy.url", get_sync_url())

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def include_object(obj, name, type_, reflected, compare_to) -> bool:
    """Skip reflected tables the workflow does not own."""
    if type_ == "table" and reflected and compare_to is None:
        return name in target_metadata.tables
    return True


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        version_table=VERSION_TABLE,
        include_object=include_object,
        compare_type=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit the migration SQL for review instead of applying it."""
    _configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
