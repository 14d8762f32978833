"""Alembic wiring for the billing schema and the ``flask db`` command group.

``DB_PATH`` is either a sqlite file path or a postgres URL. Both the CLI and
``migrations/env.py`` resolve it through :func:`to_sqlalchemy_url`, so the
app config always wins over whatever ``alembic.ini`` carries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import click
from alembic import command
from alembic.config import Config as AlembicConfig
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from flask import Flask
from sqlalchemy import create_engine, pool


PROJECT_ROOT = Path(__file__).resolve().parents[1]
MIGRATIONS_DIR = PROJECT_ROOT / "migrations"
APP_URL_ATTRIBUTE = "database_url"

_SQLALCHEMY_PREFIXES = ("postgresql://", "postgresql+", "sqlite://", "sqlite+pysqlite://")

logger = logging.getLogger("assinaturas.migrations")


def to_sqlalchemy_url(raw_db_path: str | None) -> str:
    raw = (raw_db_path or "").strip()
    if not raw:
        raise RuntimeError("DB_PATH indefinido para migrations.")
    if raw.startswith("postgres://"):
        # psycopg2 aceita o esquema curto, o SQLAlchemy nao.
        raw = "postgresql://" + raw[len("postgres://") :]
    if raw.startswith(_SQLALCHEMY_PREFIXES):
        return raw
    return f"sqlite:///{Path(raw).expanduser().resolve().as_posix()}"


def alembic_config_for(db_path: str) -> AlembicConfig:
    ini_path = PROJECT_ROOT / "alembic.ini"
    if not ini_path.exists():
        raise RuntimeError("alembic.ini nao encontrado na raiz do projeto.")
    url = to_sqlalchemy_url(db_path)
    cfg = AlembicConfig(str(ini_path))
    cfg.set_main_option("script_location", MIGRATIONS_DIR.as_posix())
    cfg.set_main_option("sqlalchemy.url", url)
    cfg.attributes[APP_URL_ATTRIBUTE] = url
    return cfg


def build_alembic_config(app: Flask) -> AlembicConfig:
    return alembic_config_for(app.config["DB_PATH"])


@dataclass(frozen=True)
class SchemaStatus:
    current: tuple[str, ...]
    heads: tuple[str, ...]
    pending: tuple[str, ...]

    @property
    def up_to_date(self) -> bool:
        return not self.pending


def schema_status(db_path: str) -> SchemaStatus:
    """Compare the revision stamped in the database with the migration scripts."""
    cfg = alembic_config_for(db_path)
    scripts = ScriptDirectory.from_config(cfg)
    engine = create_engine(cfg.attributes[APP_URL_ATTRIBUTE], poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            current = tuple(MigrationContext.configure(connection).get_current_heads())
    finally:
        engine.dispose()
    heads = tuple(scripts.get_heads())
    lower = current[0] if len(current) == 1 else "base"
    pending: list[str] = []
    for head in heads:
        for script in scripts.iterate_revisions(head, lower):
            if script.revision not in current and script.revision not in pending:
                pending.append(script.revision)
    return SchemaStatus(current=current, heads=heads, pending=tuple(reversed(pending)))


def register_db_cli(app: Flask) -> None:
    @app.cli.group("db")
    def db_group() -> None:
        """Migrations do schema de cobranca (Alembic)."""

    @db_group.command("upgrade")
    @click.argument("revision", required=False, default="head")
    def db_upgrade(revision: str) -> None:
        command.upgrade(build_alembic_config(app), revision)
        logger.info("schema_upgraded", extra={"revision": revision})
        click.echo(f"Migration aplicada ate {revision}.")

    @db_group.command("downgrade")
    @click.argument("revision", required=False, default="-1")
    def db_downgrade(revision: str) -> None:
        command.downgrade(build_alembic_config(app), revision)
        logger.warning("schema_downgraded", extra={"revision": revision})
        click.echo(f"Rollback aplicado ate {revision}.")

    @db_group.command("current")
    def db_current() -> None:
        command.current(build_alembic_config(app), verbose=True)

    @db_group.command("history")
    def db_history() -> None:
        command.history(build_alembic_config(app), indicate_current=True)

    @db_group.command("stamp")
    @click.argument("revision", required=False, default="head")
    def db_stamp(revision: str) -> None:
        """Marca o banco como migrado sem executar DDL (bancos criados por DB_AUTO_INIT)."""
        command.stamp(build_alembic_config(app), revision)
        click.echo(f"Banco marcado em {revision}.")

    @db_group.command("status")
    def db_status() -> None:
        """Sai com codigo 1 quando ha migrations pendentes."""
        status = schema_status(app.config["DB_PATH"])
        click.echo(f"Atual: {', '.join(status.current) or 'nenhuma'}")
        click.echo(f"Head: {', '.join(status.heads)}")
        if status.up_to_date:
            click.echo("Schema em dia.")
            return
        click.echo(f"Pendentes: {', '.join(status.pending)}")
        raise SystemExit(1)
