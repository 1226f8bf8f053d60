"""Add system_settings table

Revision ID: 0001_system_settings
Revises:
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_system_settings"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create system_settings key/value table."""
    op.create_table(
        "system_settings",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=191), nullable=False),
        sa.Column("data", sa.Text(), nullable=True),
        sa.Column("type", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_system_settings_name"), "system_settings", ["name"], unique=True)


def downgrade() -> None:
    """Drop system_settings table."""
    op.drop_index(op.f("ix_system_settings_name"), table_name="system_settings")
    op.drop_table("system_settings")
