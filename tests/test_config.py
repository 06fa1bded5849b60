"""
Tests for Persistence Configuration
"""

import dataclasses

import pytest
from persistence.config import PersisterSettings, RetryMode, RetryPolicy, StoreConfig


class TestStoreConfig:
    """Test connection settings."""

    def test_dsn_format(self):
        """Key/value DSN with TLS disabled by default."""
        config = StoreConfig(user="meter", password="s3cret", host="db", port="5433", dbname="energy")

        assert str(config) == "user=meter password=s3cret host=db port=5433 dbname=energy sslmode=disable"
        assert config.dsn == str(config)

    def test_repr_masks_password(self):
        config = StoreConfig(user="meter", password="s3cret")

        assert "s3cret" not in repr(config)

    def test_is_immutable(self):
        config = StoreConfig(user="meter", password="x")

        with pytest.raises(dataclasses.FrozenInstanceError):
            config.host = "elsewhere"

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("METER_DB_USER", "reader")
        monkeypatch.setenv("METER_DB_PASSWORD", "pw")
        monkeypatch.setenv("METER_DB_HOST", "pg.local")
        monkeypatch.setenv("METER_DB_PORT", "6543")
        monkeypatch.setenv("METER_DB_NAME", "readings")
        monkeypatch.setenv("METER_DB_STATEMENT_TIMEOUT_MS", "1500")

        config = StoreConfig.from_env()

        assert config.user == "reader"
        assert config.host == "pg.local"
        assert config.port == "6543"
        assert config.dbname == "readings"
        assert config.statement_timeout_ms == 1500
        assert config.sslmode == "disable"


class TestSettings:
    """Test wiring settings."""

    def test_retry_policy_from_env(self, monkeypatch):
        monkeypatch.setenv("METER_RETRY_CAPACITY", "8")
        monkeypatch.setenv("METER_RETRY_MODE", "block")
        monkeypatch.setenv("METER_RETRY_OFFER_TIMEOUT", "0.5")

        policy = RetryPolicy.from_env()

        assert policy.capacity == 8
        assert policy.mode is RetryMode.BLOCK
        assert policy.offer_timeout == 0.5

    def test_database_url_skips_store_config(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite:///tmp/meter.db")
        monkeypatch.setenv("METER_DRY_RUN", "true")

        settings = PersisterSettings.from_env()

        assert settings.database_url == "sqlite:///tmp/meter.db"
        assert settings.store is None
        assert settings.dry_run is True
        assert settings.verbose is False

    def test_store_config_without_database_url(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setenv("METER_DB_USER", "writer")

        settings = PersisterSettings.from_env()

        assert settings.store is not None
        assert settings.store.user == "writer"
