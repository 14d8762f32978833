from __future__ import annotations

import json
from typing import Any


STATUS_RECEIVED = "received"
STATUS_PROCESSED = "processed"
STATUS_FAILED = "failed"


class WebhookEventRepository:
    """Persisted set of provider deliveries, keyed by (provider, event_id).

    Deliveries are not tenant data: they are stored before the tenant is known.
    """

    def get(self, db, provider: str, event_id: str) -> dict | None:
        row = db.execute(
            """
            SELECT id, provider, event_id, external_id, status, outcome, attempts, received_at, processed_at
            FROM webhook_events
            WHERE provider = ? AND event_id = ?
            LIMIT 1
            """,
            (provider, event_id),
        ).fetchone()
        return dict(row) if row else None

    def register(
        self,
        db,
        *,
        provider: str,
        event_id: str,
        external_id: str | None,
        payload: dict[str, Any],
    ) -> tuple[dict, bool]:
        """Store a delivery; returns ``(record, is_new)``."""
        cursor = db.execute(
            """
            INSERT INTO webhook_events (provider, event_id, external_id, status, payload)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (provider, event_id) DO NOTHING
            RETURNING id
            """,
            (provider, event_id, external_id, STATUS_RECEIVED, json.dumps(payload, sort_keys=True, default=str)),
        )
        inserted = cursor.fetchone()
        db.commit()
        record = self.get(db, provider, event_id)
        if record is None:
            raise RuntimeError(f"webhook event {provider}/{event_id} not persisted")
        return record, inserted is not None

    def mark(self, db, record_id: int, *, status: str, outcome: str | None) -> None:
        db.execute(
            """
            UPDATE webhook_events
            SET status = ?,
                outcome = ?,
                attempts = attempts + 1,
                processed_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (status, outcome, int(record_id)),
        )
