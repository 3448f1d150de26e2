"""
SQLAlchemy database models.
Defines the task table shared by producers and consumers.
"""

from functools import lru_cache

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

from taskqueue.constants import (
    DEFAULT_PAYLOAD_TYPE,
    DEFAULT_TABLE_NAME,
    PAYLOAD_TYPE_MAX_LENGTH,
    TASK_NAME_MAX_LENGTH,
    TaskStatus,
)
from taskqueue.utils import utcnow

# SQLite only auto-assigns INTEGER PRIMARY KEY columns
TaskId = BigInteger().with_variant(Integer(), "sqlite")


metadata = MetaData()


def define_task_table(metadata: MetaData, name: str) -> Table:
    """
    Build the task table definition under the given name.

    Index and constraint names are derived from the table name so several
    queues can live in one schema.
    """
    status_enum = Enum(
        TaskStatus,
        name="task_status" if name == DEFAULT_TABLE_NAME else f"{name}_status",
        create_constraint=True,
        values_callable=lambda x: [e.value for e in x],
    )
    return Table(
        name,
        metadata,
        Column("id", TaskId, primary_key=True, autoincrement=True),
        Column("name", String(TASK_NAME_MAX_LENGTH), nullable=False),
        Column("payload", Text, nullable=False),
        Column(
            "payload_type",
            String(PAYLOAD_TYPE_MAX_LENGTH),
            nullable=False,
            default=DEFAULT_PAYLOAD_TYPE,
            server_default=DEFAULT_PAYLOAD_TYPE,
        ),
        Column("scheduled_at", DateTime, nullable=False),
        Column(
            "status",
            status_enum,
            nullable=False,
            default=TaskStatus.PENDING,
            server_default=TaskStatus.PENDING.value,
        ),
        Column("retry_count", Integer, nullable=False, default=0, server_default="0"),
        Column("error", Text, nullable=True),
        Column("locked_at", DateTime, nullable=True),
        Column("expires_at", DateTime, nullable=True),
        Column("created_at", DateTime, nullable=False, default=utcnow),
        Column("updated_at", DateTime, nullable=False, default=utcnow, onupdate=utcnow),
        CheckConstraint("retry_count >= 0", name=f"ck_{name}_retry_count_unsigned"),
        # Queue polling
        Index(f"ix_{name}_status_scheduled", "status", "scheduled_at"),
        # Stale lock detection
        Index(f"ix_{name}_locked_at", "locked_at"),
        # Filtering by logical task type
        Index(f"ix_{name}_payload_type", "payload_type"),
    )


TASKS = define_task_table(metadata, DEFAULT_TABLE_NAME)


@lru_cache
def task_table(name: str = DEFAULT_TABLE_NAME) -> Table:
    """Get the table for a queue name, defining it on first use."""
    if name == DEFAULT_TABLE_NAME:
        return TASKS
    return define_task_table(MetaData(), name)
