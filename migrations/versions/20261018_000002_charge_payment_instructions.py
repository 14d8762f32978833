"""Store pix and boleto payment instructions on payment charges.

Revision ID: 20261018_000002
Revises: 20261018_000001
Create Date: 2026-10-18 00:00:02
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_000002"
down_revision: Union[str, Sequence[str], None] = "20261018_000001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


INSTRUCTION_COLUMNS = ("qr_code", "qr_code_base64", "ticket_url")


def _existing_columns(bind, table_name: str) -> set[str]:
    inspector = sa.inspect(bind)
    if not inspector.has_table(table_name):
        return set()
    return {str(column.get("name") or "") for column in inspector.get_columns(table_name)}


def upgrade() -> None:
    # Databases created from the current DDL already carry the columns.
    existing = _existing_columns(op.get_bind(), "payment_charges")
    missing = [name for name in INSTRUCTION_COLUMNS if name not in existing]
    if not missing:
        return
    with op.batch_alter_table("payment_charges") as batch:
        for name in missing:
            batch.add_column(sa.Column(name, sa.Text(), nullable=True))


def downgrade() -> None:
    existing = _existing_columns(op.get_bind(), "payment_charges")
    present = [name for name in INSTRUCTION_COLUMNS if name in existing]
    if not present:
        return
    with op.batch_alter_table("payment_charges") as batch:
        for name in present:
            batch.drop_column(name)
