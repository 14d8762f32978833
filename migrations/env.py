"""Alembic environment for the billing schema.

Revisions issue DDL directly, so there is no metadata to autogenerate from.
"""

from __future__ import annotations

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from assinaturas.db_migrations import APP_URL_ATTRIBUTE, to_sqlalchemy_url


config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)


def _database_url() -> str:
    # `flask db` injects the app URL; plain `alembic` falls back to the environment.
    return to_sqlalchemy_url(
        config.attributes.get(APP_URL_ATTRIBUTE)
        or os.environ.get("DATABASE_URL")
        or os.environ.get("DB_PATH")
        or config.get_main_option("sqlalchemy.url")
    )


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def run_offline(url: str) -> None:
    context.configure(
        url=url,
        target_metadata=None,
        literal_binds=True,
        render_as_batch=_is_sqlite(url),
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_online(url: str) -> None:
    options = dict(config.get_section(config.config_ini_section) or {})
    options["sqlalchemy.url"] = url
    engine = engine_from_config(options, prefix="sqlalchemy.", poolclass=pool.NullPool, future=True)
    with engine.connect() as connection:
        # sqlite cannot ALTER most columns in place; batch mode rebuilds the table.
        context.configure(connection=connection, target_metadata=None, render_as_batch=_is_sqlite(url))
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_offline(_database_url())
else:
    run_online(_database_url())
