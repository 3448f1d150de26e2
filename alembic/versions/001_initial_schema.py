"""Initial schema with tasks table

Revision ID: 001
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

task_status = sa.Enum(
    "pending", "in_progress", "completed", "failed",
    name="task_status",
    create_constraint=True,
)


def upgrade() -> None:
    op.create_table(
        "tasks",
        sa.Column(
            "id",
            sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
            primary_key=True,
            autoincrement=True,
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("payload", sa.Text, nullable=False),
        sa.Column("payload_type", sa.String(64), nullable=False, server_default="default"),
        sa.Column("scheduled_at", sa.DateTime, nullable=False),
        sa.Column("status", task_status, nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("locked_at", sa.DateTime, nullable=True),
        sa.Column("expires_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("retry_count >= 0", name="ck_tasks_retry_count_unsigned"),
    )

    # Queue polling
    op.create_index("ix_tasks_status_scheduled", "tasks", ["status", "scheduled_at"])
    # Stale lock detection
    op.create_index("ix_tasks_locked_at", "tasks", ["locked_at"])
    # Filtering by logical task type
    op.create_index("ix_tasks_payload_type", "tasks", ["payload_type"])


def downgrade() -> None:
    op.drop_index("ix_tasks_payload_type", table_name="tasks")
    op.drop_index("ix_tasks_locked_at", table_name="tasks")
    op.drop_index("ix_tasks_status_scheduled", table_name="tasks")
    op.drop_table("tasks")

    # Postgres keeps the enum type after the table is gone
    task_status.drop(op.get_bind(), checkfirst=True)
