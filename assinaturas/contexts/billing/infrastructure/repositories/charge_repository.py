from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from assinaturas.contexts.billing.domain.charge import Charge, ChargePurpose
from assinaturas.contexts.billing.domain.money import Money
from assinaturas.contexts.billing.domain.payment import PaymentStatus
from assinaturas.errors import ConcurrencyConflict
from assinaturas.infrastructure.repositories.base import (
    BaseRepository,
    db_timestamp,
    parse_db_timestamp,
)


_COLUMNS = """
    id, subscription_id, tenant_id, purpose, idempotency_key, amount_cents, currency,
    billed_days, payment_method, external_id, status, status_detail, error_message,
    qr_code, qr_code_base64, ticket_url, attempts, last_checked_at, created_at
"""

OPEN_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.IN_PROCESS.value)


def _row_to_charge(row) -> Charge:
    data = dict(row)
    status = str(data.get("status") or "").strip()
    return Charge(
        id=int(data["id"]),
        subscription_id=int(data["subscription_id"]),
        tenant_id=str(data["tenant_id"]),
        purpose=ChargePurpose(str(data["purpose"])),
        idempotency_key=str(data["idempotency_key"]),
        amount=Money.of(int(data["amount_cents"] or 0), str(data.get("currency") or "BRL")),
        billed_days=int(data.get("billed_days") or 0),
        payment_method=data.get("payment_method"),
        external_id=data.get("external_id"),
        status=PaymentStatus(status) if status else None,
        status_detail=data.get("status_detail"),
        error_message=data.get("error_message"),
        qr_code=data.get("qr_code"),
        qr_code_base64=data.get("qr_code_base64"),
        ticket_url=data.get("ticket_url"),
        attempts=int(data.get("attempts") or 0),
        last_checked_at=parse_db_timestamp(data.get("last_checked_at")),
        created_at=parse_db_timestamp(data.get("created_at")),
    )


class ChargeRepository(BaseRepository):
    def get_by_key(self, db, idempotency_key: str) -> Charge | None:
        row = db.execute(
            f"""
            SELECT {_COLUMNS}
            FROM payment_charges
            WHERE idempotency_key = ? AND tenant_id = ?
            LIMIT 1
            """,
            (idempotency_key, self.tenant_id),
        ).fetchone()
        return _row_to_charge(row) if row else None

    def get_by_id(self, db, charge_id: int) -> Charge | None:
        row = db.execute(
            f"""
            SELECT {_COLUMNS}
            FROM payment_charges
            WHERE id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (int(charge_id), self.tenant_id),
        ).fetchone()
        return _row_to_charge(row) if row else None

    def find_by_external_id(self, db, external_id: str) -> Charge | None:
        row = db.execute(
            f"""
            SELECT {_COLUMNS}
            FROM payment_charges
            WHERE external_id = ? AND tenant_id = ?
            ORDER BY id DESC
            LIMIT 1
            """,
            (external_id, self.tenant_id),
        ).fetchone()
        return _row_to_charge(row) if row else None

    def create(self, db, charge: Charge) -> Charge:
        """Insert the charge row; an existing row with the same key wins."""
        db.execute(
            """
            INSERT INTO payment_charges (
                subscription_id, tenant_id, purpose, idempotency_key, amount_cents,
                currency, billed_days, payment_method
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (idempotency_key) DO NOTHING
            """,
            (
                int(charge.subscription_id),
                self.tenant_id,
                charge.purpose.value,
                charge.idempotency_key,
                charge.amount.amount,
                charge.amount.currency,
                int(charge.billed_days),
                charge.payment_method,
            ),
        )
        stored = self.get_by_key(db, charge.idempotency_key)
        if stored is None:
            raise RuntimeError(f"charge {charge.idempotency_key} not persisted")
        return stored

    def record_attempt(self, db, charge: Charge) -> Charge:
        db.execute(
            """
            UPDATE payment_charges
            SET attempts = attempts + 1, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND tenant_id = ?
            """,
            (int(charge.id), self.tenant_id),
        )
        return replace(charge, attempts=int(charge.attempts) + 1)

    def save_result(self, db, charge: Charge, *, expected_status: PaymentStatus | None) -> None:
        """Write the provider result; the row must still carry ``expected_status``."""
        cursor = db.execute(
            """
            UPDATE payment_charges
            SET external_id = ?,
                status = ?,
                status_detail = ?,
                error_message = ?,
                payment_method = ?,
                qr_code = ?,
                qr_code_base64 = ?,
                ticket_url = ?,
                last_checked_at = CURRENT_TIMESTAMP,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND tenant_id = ? AND COALESCE(status, '') = ?
            """,
            (
                charge.external_id,
                charge.status.value if charge.status else None,
                charge.status_detail,
                charge.error_message,
                charge.payment_method,
                charge.qr_code,
                charge.qr_code_base64,
                charge.ticket_url,
                int(charge.id),
                self.tenant_id,
                expected_status.value if expected_status else "",
            ),
        )
        if int(cursor.rowcount or 0) != 1:
            raise ConcurrencyConflict(
                details=f"charge {charge.id} no longer recorded as {expected_status.value if expected_status else None}",
                payload={"charge_id": charge.id},
            )

    def mark_checked(self, db, charge: Charge, *, error_message: str | None = None) -> None:
        db.execute(
            """
            UPDATE payment_charges
            SET last_checked_at = CURRENT_TIMESTAMP,
                error_message = COALESCE(?, error_message),
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND tenant_id = ?
            """,
            (error_message, int(charge.id), self.tenant_id),
        )

    def list_for_subscription(self, db, subscription_id: int) -> list[Charge]:
        rows = db.execute(
            f"""
            SELECT {_COLUMNS}
            FROM payment_charges
            WHERE subscription_id = ? AND tenant_id = ?
            ORDER BY id ASC
            """,
            (int(subscription_id), self.tenant_id),
        ).fetchall()
        return [_row_to_charge(row) for row in rows]

    def list_for_tenant(self, db, *, limit: int = 200) -> list[Charge]:
        rows = db.execute(
            f"""
            SELECT {_COLUMNS}
            FROM payment_charges
            WHERE tenant_id = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (self.tenant_id, int(limit)),
        ).fetchall()
        return [_row_to_charge(row) for row in rows]


def resolve_tenant_for_external_id(db, external_id: str) -> str | None:
    """Cross-tenant routing lookup used by webhook ingress before scoping repositories."""
    row = db.execute(
        """
        SELECT tenant_id
        FROM payment_charges
        WHERE external_id = ?
        ORDER BY id DESC
        LIMIT 1
        """,
        (external_id,),
    ).fetchone()
    if not row:
        row = db.execute(
            """
            SELECT tenant_id
            FROM subscriptions
            WHERE external_transaction_id = ?
            ORDER BY id DESC
            LIMIT 1
            """,
            (external_id,),
        ).fetchone()
    return str(dict(row)["tenant_id"]) if row else None


def resolve_tenant_for_key(db, idempotency_key: str) -> str | None:
    row = db.execute(
        "SELECT tenant_id FROM payment_charges WHERE idempotency_key = ? LIMIT 1",
        (idempotency_key,),
    ).fetchone()
    return str(dict(row)["tenant_id"]) if row else None


def list_open_charges(
    db,
    *,
    created_before: datetime,
    created_after: datetime,
    limit: int = 200,
) -> list[dict]:
    """Charges still waiting for a final provider answer, across tenants."""
    rows = db.execute(
        """
        SELECT id, tenant_id, subscription_id, idempotency_key, external_id, status, created_at
        FROM payment_charges
        WHERE (status IS NULL OR status IN (?, ?))
          AND created_at <= ?
          AND created_at >= ?
        ORDER BY created_at ASC, id ASC
        LIMIT ?
        """,
        (*OPEN_STATUSES, db_timestamp(created_before), db_timestamp(created_after), int(limit)),
    ).fetchall()
    return [dict(row) for row in rows]
