import contextlib
import sqlite3
from typing import Iterable

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    @contextlib.contextmanager
    def transaction(self):
        """Commit everything executed inside the block, or nothing."""
        if self.backend == "postgres":
            self._conn.autocommit = False
        try:
            yield self
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise
        finally:
            if self.backend == "postgres":
                self._conn.autocommit = True

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def _connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 nao instalado.")
        conn = psycopg2.connect(db_path)
        conn.autocommit = True
        return Database("postgres", conn)

    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        g.db = _connect_database(db_path)
    return g.db


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    if db.backend == "postgres":
        _init_db_postgres(db)
        return

    _init_db_sqlite(db)


def _init_db_sqlite(db: Database):
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS tenants (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            billing_email TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS plans (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            price_monthly_cents INTEGER NOT NULL CHECK (price_monthly_cents >= 0),
            price_annual_cents INTEGER CHECK (price_annual_cents IS NULL OR price_annual_cents >= 0),
            currency TEXT NOT NULL DEFAULT 'BRL',
            feature_limits TEXT NOT NULL DEFAULT '{}',
            active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS subscriptions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tenant_id TEXT NOT NULL,
            plan_id TEXT NOT NULL,
            status TEXT NOT NULL CHECK (
                status IN ('pendente','ativa','suspensa','cancelada','expirada')
            ),
            billing_cycle TEXT NOT NULL DEFAULT 'mensal' CHECK (billing_cycle IN ('mensal','anual')),
            period_start TEXT NOT NULL,
            period_end TEXT NOT NULL,
            amount_cents INTEGER NOT NULL DEFAULT 0 CHECK (amount_cents >= 0),
            currency TEXT NOT NULL DEFAULT 'BRL',
            payment_method TEXT,
            external_transaction_id TEXT,
            grace_period_days INTEGER NOT NULL DEFAULT 7 CHECK (grace_period_days >= 0),
            notes TEXT,
            version INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS payment_charges (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            subscription_id INTEGER NOT NULL,
            tenant_id TEXT NOT NULL,
            purpose TEXT NOT NULL CHECK (purpose IN ('initial','renewal','retry')),
            idempotency_key TEXT NOT NULL UNIQUE,
            amount_cents INTEGER NOT NULL,
            currency TEXT NOT NULL DEFAULT 'BRL',
            billed_days INTEGER NOT NULL DEFAULT 30,
            payment_method TEXT,
            external_id TEXT,
            status TEXT,
            status_detail TEXT,
            error_message TEXT,
            qr_code TEXT,
            qr_code_base64 TEXT,
            ticket_url TEXT,
            attempts INTEGER NOT NULL DEFAULT 0,
            last_checked_at TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS webhook_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            provider TEXT NOT NULL,
            event_id TEXT NOT NULL,
            external_id TEXT,
            status TEXT NOT NULL DEFAULT 'received' CHECK (status IN ('received','processed','failed')),
            outcome TEXT,
            payload TEXT,
            attempts INTEGER NOT NULL DEFAULT 0,
            received_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            processed_at TEXT,
            UNIQUE (provider, event_id)
        )
        """
    )
    _create_indexes(db)
    db.commit()


def _init_db_postgres(db: Database) -> None:
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS tenants (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            billing_email TEXT,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS plans (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            price_monthly_cents BIGINT NOT NULL CHECK (price_monthly_cents >= 0),
            price_annual_cents BIGINT CHECK (price_annual_cents IS NULL OR price_annual_cents >= 0),
            currency TEXT NOT NULL DEFAULT 'BRL',
            feature_limits JSONB NOT NULL DEFAULT '{}'::jsonb,
            active BOOLEAN NOT NULL DEFAULT TRUE,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS subscriptions (
            id SERIAL PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            plan_id TEXT NOT NULL,
            status TEXT NOT NULL CHECK (
                status IN ('pendente','ativa','suspensa','cancelada','expirada')
            ),
            billing_cycle TEXT NOT NULL DEFAULT 'mensal' CHECK (billing_cycle IN ('mensal','anual')),
            period_start DATE NOT NULL,
            period_end DATE NOT NULL,
            amount_cents BIGINT NOT NULL DEFAULT 0 CHECK (amount_cents >= 0),
            currency TEXT NOT NULL DEFAULT 'BRL',
            payment_method TEXT,
            external_transaction_id TEXT,
            grace_period_days INTEGER NOT NULL DEFAULT 7 CHECK (grace_period_days >= 0),
            notes TEXT,
            version INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS payment_charges (
            id SERIAL PRIMARY KEY,
            subscription_id INTEGER NOT NULL,
            tenant_id TEXT NOT NULL,
            purpose TEXT NOT NULL CHECK (purpose IN ('initial','renewal','retry')),
            idempotency_key TEXT NOT NULL UNIQUE,
            amount_cents BIGINT NOT NULL,
            currency TEXT NOT NULL DEFAULT 'BRL',
            billed_days INTEGER NOT NULL DEFAULT 30,
            payment_method TEXT,
            external_id TEXT,
            status TEXT,
            status_detail TEXT,
            error_message TEXT,
            qr_code TEXT,
            qr_code_base64 TEXT,
            ticket_url TEXT,
            attempts INTEGER NOT NULL DEFAULT 0,
            last_checked_at TIMESTAMP,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS webhook_events (
            id SERIAL PRIMARY KEY,
            provider TEXT NOT NULL,
            event_id TEXT NOT NULL,
            external_id TEXT,
            status TEXT NOT NULL DEFAULT 'received' CHECK (status IN ('received','processed','failed')),
            outcome TEXT,
            payload TEXT,
            attempts INTEGER NOT NULL DEFAULT 0,
            received_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            processed_at TIMESTAMP,
            UNIQUE (provider, event_id)
        )
        """
    )
    _create_indexes(db)


def _create_indexes(db: Database) -> None:
    db.execute("CREATE INDEX IF NOT EXISTS idx_subscriptions_tenant_status ON subscriptions (tenant_id, status)")
    db.execute(
        "CREATE INDEX IF NOT EXISTS idx_subscriptions_external_tx ON subscriptions (external_transaction_id)"
    )
    db.execute("CREATE INDEX IF NOT EXISTS idx_subscriptions_status_end ON subscriptions (status, period_end)")
    db.execute("CREATE INDEX IF NOT EXISTS idx_payment_charges_external ON payment_charges (external_id)")
    db.execute("CREATE INDEX IF NOT EXISTS idx_payment_charges_subscription ON payment_charges (subscription_id)")
    db.execute("CREATE INDEX IF NOT EXISTS idx_payment_charges_status ON payment_charges (status, created_at)")
