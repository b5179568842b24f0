"""create_versions

Revision ID: 0001
Revises:
Create Date: 2026-10-17

Creates the version ledger: versions and version_associations.
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- versions ---
    op.create_table(
        "versions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("item_type", sa.String(255), nullable=False),
        sa.Column("item_id", sa.String(255), nullable=False),
        sa.Column("event", sa.String(16), nullable=False),
        sa.Column("whodunnit", sa.String(255), nullable=True),
        sa.Column("object", sa.Text, nullable=True),
        sa.Column("object_changes", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("transaction_id", sa.Integer, nullable=True),
    )
    op.create_index("ix_versions_item", "versions", ["item_type", "item_id"])
    op.create_index("ix_versions_transaction_id", "versions", ["transaction_id"])

    # --- version_associations ---
    op.create_table(
        "version_associations",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("version_id", sa.Integer, nullable=False),
        sa.Column("foreign_key_name", sa.String(255), nullable=False),
        sa.Column("foreign_key_id", sa.String(255), nullable=True),
    )
    op.create_index("ix_version_associations_version_id", "version_associations", ["version_id"])
    op.create_index(
        "ix_version_associations_foreign_key",
        "version_associations",
        ["foreign_key_name", "foreign_key_id"],
    )


def downgrade() -> None:
    op.drop_table("version_associations")
    op.drop_table("versions")
