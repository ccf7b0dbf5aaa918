"""create field history and system event tables

Revision ID: 202610190003
Revises: 202610190002
Create Date: 2026-10-19 00:20:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190003"
down_revision: str | None = "202610190002"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

HISTORY_TABLES = ("lead_history", "contact_history", "deal_history", "task_history")


def upgrade() -> None:
    # entity_id has no foreign key: history rows survive entity deletion.
    for table_name in HISTORY_TABLES:
        op.create_table(
            table_name,
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("entity_id", sa.Integer(), nullable=False),
            sa.Column("changed_by", sa.Integer(), nullable=False),
            sa.Column("field", sa.String(length=128), nullable=False),
            sa.Column("old_value", sa.Text(), nullable=True),
            sa.Column("new_value", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["changed_by"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(f"ix_{table_name}_entity_ts", table_name, ["entity_id", "timestamp"], unique=False)

    op.create_table(
        "system_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["actor_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_system_events_timestamp"), "system_events", ["timestamp"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_system_events_timestamp"), table_name="system_events")
    op.drop_table("system_events")
    for table_name in reversed(HISTORY_TABLES):
        op.drop_index(f"ix_{table_name}_entity_ts", table_name=table_name)
        op.drop_table(table_name)
