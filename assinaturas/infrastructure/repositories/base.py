from __future__ import annotations

from datetime import date, datetime
from typing import Any


class TenantScopeRequiredError(ValueError):
    """Raised when a repository is instantiated without tenant scope."""


class BaseRepository:
    def __init__(self, *, tenant_id: str | None = None) -> None:
        scope = str(tenant_id or "").strip()
        if not scope:
            raise TenantScopeRequiredError("tenant_id is required for repository access")
        self.tenant_id = scope


def row_id(row: Any) -> int:
    return int(row["id"] if isinstance(row, dict) else row[0])


def parse_db_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def parse_db_timestamp(value: Any) -> datetime | None:
    """SQLite hands back 'YYYY-MM-DD HH:MM:SS' text, psycopg2 a datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    raw = str(value).strip().replace("T", " ")
    if raw.endswith("Z"):
        raw = raw[:-1]
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


def db_timestamp(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S")
