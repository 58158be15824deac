"""
Unit tests for environment-driven configuration.
"""

import pytest

from tracker.tracker_store.config import (
    RetentionConfig,
    ServerConfig,
    StorageBackend,
    TabularConfig,
)


class TestServerConfig:
    """Tests for ServerConfig.from_env and validate."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("STORAGE_BACKEND", raising=False)
        monkeypatch.delenv("CHANGELOG_CAP", raising=False)

        config = ServerConfig.from_env()

        assert config.backend == StorageBackend.S3
        assert config.retry.max_retries == 3
        assert config.retry.base_delay_ms == 100
        assert config.retention.changelog_cap == 1000

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "SQLite")
        monkeypatch.setenv("TABULAR_DB_PATH", "/tmp/sheets.db")
        monkeypatch.setenv("NOTIFICATION_CAP", "50")
        monkeypatch.setenv("CORS_ALLOWED_ORIGINS", "https://a.example, https://b.example")

        config = ServerConfig.from_env()

        assert config.backend == StorageBackend.SQLITE
        assert config.tabular.db_path == "/tmp/sheets.db"
        assert config.retention.notification_cap == 50
        assert config.http.cors_origins == ("https://a.example", "https://b.example")

    def test_invalid_backend(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "ftp")

        with pytest.raises(ValueError, match="Invalid STORAGE_BACKEND"):
            ServerConfig.from_env()

    def test_validate_rejects_missing_db_path(self):
        config = ServerConfig(backend=StorageBackend.SQLITE, tabular=TabularConfig(db_path=""))

        with pytest.raises(ValueError, match="TABULAR_DB_PATH"):
            config.validate()

    def test_validate_rejects_zero_caps(self):
        config = ServerConfig(backend=StorageBackend.MEMORY, retention=RetentionConfig(changelog_cap=0))

        with pytest.raises(ValueError, match="CHANGELOG_CAP"):
            config.validate()
