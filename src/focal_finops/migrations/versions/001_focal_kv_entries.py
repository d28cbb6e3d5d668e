"""Create the focal_kv_entries key-value table.

Revision ID: 001_focal_kv_entries
Revises: None
Create Date: 2026-10-16
"""

from alembic import op
import sqlalchemy as sa

revision = "001_focal_kv_entries"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the namespaced blob table backing the aggregation cache."""
    op.create_table(
        "focal_kv_entries",
        sa.Column("namespace", sa.String(128), primary_key=True),
        sa.Column("key", sa.String(512), primary_key=True),
        sa.Column("blob", sa.LargeBinary, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_focal_kv_entries_namespace", "focal_kv_entries", ["namespace"])


def downgrade() -> None:
    """Drop the key-value table."""
    op.drop_index("ix_focal_kv_entries_namespace", table_name="focal_kv_entries")
    op.drop_table("focal_kv_entries")
