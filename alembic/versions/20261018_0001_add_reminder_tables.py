"""add medication, medication log and push subscription tables

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "medications",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("dosage", sa.String(length=128), nullable=True),
        sa.Column("frequency", sa.String(length=64), nullable=True),
        sa.Column("times", sa.JSON(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("end_date IS NULL OR end_date >= start_date", name="ck_medications_date_window"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_medications_active_window",
        "medications",
        ["active", "start_date", "end_date"],
        unique=False,
    )

    op.create_table(
        "medication_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("medication_id", sa.Integer(), nullable=False),
        sa.Column("scheduled_time", sa.DateTime(), nullable=False),
        sa.Column("taken_time", sa.DateTime(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("pending", "taken", "missed", "skipped", name="occurrence_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["medication_id"], ["medications.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("medication_id", "scheduled_time", name="uq_medication_logs_medication_scheduled"),
    )
    op.create_index(
        "ix_medication_logs_status_scheduled_time",
        "medication_logs",
        ["status", "scheduled_time"],
        unique=False,
    )

    op.create_table(
        "push_subscriptions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("endpoint", sa.Text(), nullable=False),
        sa.Column("keys", sa.JSON(), nullable=False),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("endpoint"),
    )


def downgrade() -> None:
    op.drop_table("push_subscriptions")
    op.drop_index("ix_medication_logs_status_scheduled_time", table_name="medication_logs")
    op.drop_table("medication_logs")
    op.drop_index("ix_medications_active_window", table_name="medications")
    op.drop_table("medications")
    sa.Enum(name="occurrence_status").drop(op.get_bind(), checkfirst=True)
