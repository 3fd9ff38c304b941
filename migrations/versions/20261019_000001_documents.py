"""Document store and per-tenant number sequences

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op

from erp_engine.db import SCHEMA_STATEMENTS


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    for statement in SCHEMA_STATEMENTS:
        op.execute(statement)


def downgrade() -> None:
    for index in (
        "idx_documents_tenant_kind_parent",
        "idx_documents_tenant_kind_status",
        "uq_documents_tenant_kind_unique_key",
    ):
        op.execute(f"DROP INDEX IF EXISTS {index}")
    for table in ("document_sequences", "documents"):
        op.execute(f"DROP TABLE IF EXISTS {table}")
