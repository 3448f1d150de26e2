"""
Integration tests for the Alembic schema migration.
"""

import importlib.util
from pathlib import Path
from types import ModuleType

import pytest
import sqlalchemy as sa
from alembic.operations import Operations
from alembic.runtime.migration import MigrationContext

MIGRATION = Path(__file__).parents[2] / "alembic" / "versions" / "001_initial_schema.py"


@pytest.fixture
def migration() -> ModuleType:
    spec = importlib.util.spec_from_file_location("initial_schema", MIGRATION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def engine(tmp_path: Path):
    engine = sa.create_engine(f"sqlite:///{tmp_path / 'migrate.db'}")
    yield engine
    engine.dispose()


def run_migration(engine: sa.Engine, step) -> None:
    with engine.begin() as conn:
        context = MigrationContext.configure(conn)
        with Operations.context(context):
            step()


class TestInitialSchema:
    def test_upgrade_creates_task_table(self, engine: sa.Engine, migration: ModuleType):
        run_migration(engine, migration.upgrade)

        inspector = sa.inspect(engine)
        columns = {c["name"] for c in inspector.get_columns("tasks")}
        assert columns == {
            "id",
            "name",
            "payload",
            "payload_type",
            "scheduled_at",
            "status",
            "retry_count",
            "error",
            "locked_at",
            "expires_at",
            "created_at",
            "updated_at",
        }
        indexes = {i["name"] for i in inspector.get_indexes("tasks")}
        assert indexes == {
            "ix_tasks_status_scheduled",
            "ix_tasks_locked_at",
            "ix_tasks_payload_type",
        }

    def test_server_defaults(self, engine: sa.Engine, migration: ModuleType):
        """Test that rows inserted outside the library get queue defaults."""
        run_migration(engine, migration.upgrade)

        with engine.begin() as conn:
            conn.execute(
                sa.text(
                    "INSERT INTO tasks (name, payload, scheduled_at) "
                    "VALUES ('send', '{}', CURRENT_TIMESTAMP)"
                )
            )
            row = conn.execute(
                sa.text("SELECT status, retry_count, payload_type FROM tasks")
            ).one()

        assert tuple(row) == ("pending", 0, "default")

    def test_retry_count_must_be_unsigned(self, engine: sa.Engine, migration: ModuleType):
        run_migration(engine, migration.upgrade)

        with pytest.raises(sa.exc.IntegrityError):
            with engine.begin() as conn:
                conn.execute(
                    sa.text(
                        "INSERT INTO tasks (name, payload, scheduled_at, retry_count) "
                        "VALUES ('send', '{}', CURRENT_TIMESTAMP, -1)"
                    )
                )

    def test_downgrade_drops_table(self, engine: sa.Engine, migration: ModuleType):
        run_migration(engine, migration.upgrade)
        run_migration(engine, migration.downgrade)

        assert "tasks" not in sa.inspect(engine).get_table_names()
