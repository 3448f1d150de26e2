"""
Database module.
Contains database connection, table definition, and repository implementations.
"""

from taskqueue.db.connection import (
    close_db,
    create_engine_for_url,
    create_session_factory,
    get_engine,
    init_db,
)
from taskqueue.db.models import TASKS, define_task_table, metadata, task_table

__all__ = [
    "get_engine",
    "create_engine_for_url",
    "create_session_factory",
    "init_db",
    "close_db",
    "TASKS",
    "define_task_table",
    "metadata",
    "task_table",
]
