"""Tests for the startup schema upgrade."""

from unittest.mock import patch

import pytest
from sqlalchemy import create_engine, text

from brdsync.core.migrations import (
    alembic_config,
    count_mapping_rules,
    pending_revisions,
    run_migrations,
    to_sync_url,
)


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'sync.db'}"


class TestSyncUrl:
    def test_async_drivers_are_replaced(self):
        assert to_sync_url("sqlite+aiosqlite:///./brdsync.db") == "sqlite:///./brdsync.db"
        assert to_sync_url("postgresql+asyncpg://u@db/sync") == "postgresql://u@db/sync"
        assert to_sync_url("postgres://u@db/sync") == "postgresql://u@db/sync"
        assert to_sync_url("sqlite:///brdsync.db") == "sqlite:///brdsync.db"


class TestAlembicConfig:
    def test_points_at_bundled_revisions(self):
        cfg = alembic_config("sqlite+aiosqlite:///./brdsync.db")

        assert cfg.get_main_option("sqlalchemy.url") == "sqlite:///./brdsync.db"
        assert cfg.attributes["database_url"] == "sqlite:///./brdsync.db"
        assert cfg.get_main_option("script_location").endswith("alembic")

    def test_missing_ini(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            alembic_config("sqlite://", tmp_path / "alembic.ini")

    def test_fresh_database_needs_every_revision(self, database_url):
        engine = create_engine(database_url)
        try:
            assert pending_revisions(engine, alembic_config(database_url)) == ["001"]
        finally:
            engine.dispose()


class TestRunMigrations:
    def test_up_to_date_database_is_left_alone(self, database_url):
        with patch(
            "brdsync.core.migrations.pending_revisions", return_value=[]
        ), patch("brdsync.core.migrations.command.upgrade") as upgrade:
            assert run_migrations(database_url) == []

        upgrade.assert_not_called()

    def test_pending_revisions_are_applied(self, database_url):
        with patch(
            "brdsync.core.migrations.pending_revisions", return_value=["001"]
        ), patch("brdsync.core.migrations.command.upgrade") as upgrade:
            assert run_migrations(database_url) == ["001"]

        upgrade.assert_called_once()
        assert upgrade.call_args.args[1] == "head"

    def test_upgrade_failure_propagates(self, database_url):
        with patch(
            "brdsync.core.migrations.pending_revisions", return_value=["001"]
        ), patch(
            "brdsync.core.migrations.command.upgrade", side_effect=RuntimeError("locked")
        ), patch("brdsync.core.migrations.logger") as mock_logger:
            with pytest.raises(RuntimeError):
                run_migrations(database_url)

        assert "locked" in mock_logger.error.call_args.args[0]

    def test_empty_rule_table_is_reported(self, database_url):
        engine = create_engine(database_url)
        with engine.begin() as connection:
            connection.execute(text("CREATE TABLE field_mapping_rules (id VARCHAR)"))
        try:
            assert count_mapping_rules(engine) == 0
        finally:
            engine.dispose()

        with patch(
            "brdsync.core.migrations.pending_revisions", return_value=[]
        ), patch("brdsync.core.migrations.logger") as mock_logger:
            run_migrations(database_url)

        assert "No field mapping rules" in mock_logger.warning.call_args.args[0]

    def test_missing_rule_table_is_not_counted(self, database_url):
        engine = create_engine(database_url)
        try:
            assert count_mapping_rules(engine) is None
        finally:
            engine.dispose()
