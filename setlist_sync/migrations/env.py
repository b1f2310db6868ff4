"""Alembic entry point; migrations run against the same store as the sync engine."""

from __future__ import annotations

from logging.config import fileConfig

from alembic import context
from alembic.config import Config
from sqlalchemy import create_engine, pool

from setlist_sync import models  # noqa: F401
from setlist_sync.config import load_config
from setlist_sync.db import metadata, sync_driver_url

_active = getattr(context, "config", None)


def get_database_url(alembic_config: Config | None = None) -> str:
    """Return ``sqlalchemy.url`` when set, else DATABASE_URL on a blocking driver."""

    override = alembic_config.get_main_option("sqlalchemy.url") if alembic_config else None
    if override:
        return override
    return sync_driver_url(load_config().database.url).render_as_string(hide_password=False)


def _run(alembic_config: Config) -> None:
    url = get_database_url(alembic_config)
    if context.is_offline_mode():
        context.configure(
            url=url,
            target_metadata=metadata,
            literal_binds=True,
            dialect_opts={"paramstyle": "named"},
        )
        with context.begin_transaction():
            context.run_migrations()
        return

    engine = create_engine(url, poolclass=pool.NullPool, future=True)
    try:
        with engine.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=metadata,
                compare_type=True,
                render_as_batch=connection.dialect.name == "sqlite",
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if _active is not None:
    if _active.config_file_name:
        fileConfig(_active.config_file_name)
    _run(_active)
