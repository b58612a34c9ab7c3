"""Alembic environment configuration for rank-tracker.

Migrations run over psycopg2 (sync) against the same database the
PostgreSQL sink uses; rank_service.db.DatabaseConfig resolves the target
from DATABASE_URL, Cloud Run DB_* settings or local defaults.
"""

from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool

from alembic import context
from rank_service.db import DatabaseConfig

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def run_migrations_offline() -> None:
    """Emit SQL for the rank tables without connecting."""
    context.configure(
        url=DatabaseConfig.get_sync_connection_string(),
        target_metadata=None,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply pending rank table migrations over a single NullPool connection."""
    configuration = config.get_section(config.config_ini_section, {})
    configuration["sqlalchemy.url"] = DatabaseConfig.get_sync_connection_string()
    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=None)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
