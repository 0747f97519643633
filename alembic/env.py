"""Alembic environment — ArxLedger schema, versioned apart from the host app.

The ledger tables live in the same database as the application that owns
profiles and the event tables, and that application runs its own
migrations.  ArxLedger therefore keeps its revision pointer in
``arxledger_alembic_version`` so neither history overwrites the other.
"""

from __future__ import annotations

import os
from logging.config import fileConfig

from dotenv import load_dotenv
from sqlalchemy import engine_from_config, pool

from alembic import context

# Load .env so DATABASE_URL is available
load_dotenv()

# Alembic Config object
config = context.config

# DATABASE_URL wins over alembic.ini, normalised the same way the job does it
if os.getenv("DATABASE_URL"):
    from arxledger.database.engine import resolve_database_url

    config.set_main_option("sqlalchemy.url", resolve_database_url())

# Python logging from alembic.ini
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Import all models so Alembic sees them for autogenerate
from arxledger.database.models import Base  # noqa: E402

target_metadata = Base.metadata

VERSION_TABLE = "arxledger_alembic_version"

CONFIGURE_OPTS = {
    "target_metadata": target_metadata,
    "version_table": VERSION_TABLE,
    # Points columns are Numeric(20, 4); a precision change must show up
    "compare_type": True,
}


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **CONFIGURE_OPTS,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, **CONFIGURE_OPTS)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
