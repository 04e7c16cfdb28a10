"""Alembic environment for the tenant-gate schema.

The URL comes from ``tenant_gate.config.settings.database_url`` (assembled
from the ``POSTGRES_*`` variables), never from ``alembic.ini``; migrations
run on a sync psycopg v3 connection. Autogenerate compares against
``tenant_gate.storage.orm.Base.metadata``: tenants, users, memberships,
api_keys and the tenant-owned projects, documents and audit_events tables.
"""

from logging.config import fileConfig
from typing import Any

from alembic import context
from sqlalchemy import engine_from_config, pool

from tenant_gate.config import settings
from tenant_gate.storage.orm import Base

config = context.config

# ConfigParser interpolates "%", which may appear in the password.
config.set_main_option("sqlalchemy.url", settings.database_url.replace("%", "%%"))

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _context_options() -> dict[str, Any]:
    # Role and plan are native PostgreSQL enums; compare types so enum and
    # length drift shows up in autogenerate, not only missing columns.
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "compare_server_default": True,
    }


def run_migrations_offline() -> None:
    """Emit the migration SQL to stdout (``alembic upgrade head --sql``)."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_context_options(),
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations against the configured database in one transaction."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, **_context_options())

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
