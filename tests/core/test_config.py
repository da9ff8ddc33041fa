"""Tests for configuration settings."""

import pytest
from pydantic import ValidationError

from brdsync.core.config import JiraSettings, Settings, SyncSettings


class TestSyncSettings:
    """Test sync engine settings."""

    def test_defaults(self):
        """Default backoff schedule and concurrency."""
        settings = SyncSettings()

        assert settings.concurrency == 3
        assert settings.max_retries == 3
        assert settings.backoff_seconds == [1, 5, 15, 60]
        assert settings.state_backend == "database"
        assert settings.scheduled_interval_minutes == 0

    def test_empty_backoff_rejected(self):
        with pytest.raises(ValidationError):
            SyncSettings(backoff_seconds=[])

    def test_negative_backoff_rejected(self):
        with pytest.raises(ValidationError):
            SyncSettings(backoff_seconds=[1, -5])

    def test_unknown_state_backend_rejected(self):
        with pytest.raises(ValidationError):
            SyncSettings(state_backend="redis")

    def test_env_prefix(self, monkeypatch):
        """Sync settings read SYNC_ prefixed variables."""
        monkeypatch.setenv("SYNC_CONCURRENCY", "7")
        monkeypatch.setenv("SYNC_DEFAULT_PROJECT_KEY", "BRD")

        settings = SyncSettings()

        assert settings.concurrency == 7
        assert settings.default_project_key == "BRD"


class TestJiraSettings:
    """Test Jira OAuth settings."""

    def test_trailing_slash_stripped(self):
        settings = JiraSettings(api_base_url="https://api.atlassian.com/ex/jira/")

        assert settings.api_base_url == "https://api.atlassian.com/ex/jira"

    def test_is_configured(self):
        assert JiraSettings(client_id=None, client_secret=None).is_configured is False
        assert JiraSettings(client_id="id", client_secret="secret").is_configured is True

    def test_offline_access_requested(self):
        """Refresh tokens need the offline_access scope."""
        assert "offline_access" in JiraSettings().scopes


class TestSettings:
    """Test the combined settings object."""

    def test_sections_present(self):
        settings = Settings()

        assert settings.app.name == "BRD Sync"
        assert settings.database.url
        assert settings.logging.level == "INFO"
