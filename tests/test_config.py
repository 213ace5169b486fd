"""Tests for configuration management."""

import pytest
from pydantic import ValidationError

from mailctl.config import Settings, get_settings


class TestSettings:
    """Tests for Settings class."""

    def test_default_values(self) -> None:
        """Test that default values are set correctly."""
        settings = Settings()
        assert settings.http_port == 8030
        assert settings.bind_address == "127.0.0.1"
        assert settings.cors_origins == ""
        assert settings.command_timeout_seconds == 60
        assert settings.connect_timeout_seconds == 30
        assert settings.disconnect_grace_seconds == 5
        assert settings.default_mailbox == "INBOX"
        assert settings.default_fetch_limit == 50
        assert settings.decode_concurrency == 8
        assert settings.keepalive_interval_seconds == 0
        assert settings.log_level == "INFO"

    def test_env_vars_override_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that environment variables override defaults."""
        monkeypatch.setenv("HTTP_PORT", "9000")
        monkeypatch.setenv("DEFAULT_MAILBOX", "Archive")
        monkeypatch.setenv("DISCONNECT_GRACE_SECONDS", "0.5")
        settings = Settings()
        assert settings.http_port == 9000
        assert settings.default_mailbox == "Archive"
        assert settings.disconnect_grace_seconds == 0.5

    def test_keyword_overrides(self) -> None:
        """Test that aliases work as constructor arguments."""
        settings = Settings(BIND_ADDRESS="0.0.0.0", DEFAULT_FETCH_LIMIT=0)
        assert settings.bind_address == "0.0.0.0"
        assert settings.default_fetch_limit == 0

    def test_blank_bind_address_falls_back(self) -> None:
        """Test that an empty bind address means localhost."""
        assert Settings(BIND_ADDRESS="  ").bind_address == "127.0.0.1"

    def test_cors_origins_list_empty(self) -> None:
        """Test cors_origins_list with empty string."""
        settings = Settings(CORS_ORIGINS="")
        assert settings.cors_origins_list == []

    def test_cors_origins_list_multiple(self) -> None:
        """Test cors_origins_list with multiple origins."""
        settings = Settings(CORS_ORIGINS="http://localhost:3000, http://localhost:8080")
        assert settings.cors_origins_list == [
            "http://localhost:3000",
            "http://localhost:8080",
        ]

    def test_cors_wildcard_rejected(self) -> None:
        """Test that wildcard CORS origin is rejected."""
        with pytest.raises(ValidationError, match="Wildcard CORS origins"):
            Settings(CORS_ORIGINS="*")

    def test_port_validation(self) -> None:
        """Test port validation."""
        with pytest.raises(ValidationError):
            Settings(HTTP_PORT=0)
        with pytest.raises(ValidationError):
            Settings(HTTP_PORT=70000)

    def test_timeout_validation(self) -> None:
        """Test that round-trip caps must be positive."""
        with pytest.raises(ValidationError):
            Settings(COMMAND_TIMEOUT_SECONDS=0)
        with pytest.raises(ValidationError):
            Settings(DISCONNECT_GRACE_SECONDS=0)

    def test_keepalive_validation(self) -> None:
        """Test that keepalive is off or at least 10 seconds."""
        assert Settings(KEEPALIVE_INTERVAL_SECONDS=0).keepalive_interval_seconds == 0
        assert Settings(KEEPALIVE_INTERVAL_SECONDS=10).keepalive_interval_seconds == 10
        with pytest.raises(ValidationError, match="at least 10"):
            Settings(KEEPALIVE_INTERVAL_SECONDS=5)

    def test_fetch_limit_validation(self) -> None:
        """Test that the default fetch limit cannot be negative."""
        with pytest.raises(ValidationError):
            Settings(DEFAULT_FETCH_LIMIT=-1)

    def test_log_level(self) -> None:
        """Test that log levels are normalized and checked."""
        assert Settings(LOG_LEVEL="debug").log_level == "DEBUG"
        with pytest.raises(ValidationError, match="Unknown log level"):
            Settings(LOG_LEVEL="chatty")


class TestGetSettings:
    """Tests for get_settings function."""

    def test_returns_settings(self) -> None:
        """Test that get_settings returns Settings instance."""
        get_settings.cache_clear()
        settings = get_settings()
        assert isinstance(settings, Settings)

    def test_caches_settings(self) -> None:
        """Test that get_settings caches the result."""
        get_settings.cache_clear()
        settings1 = get_settings()
        settings2 = get_settings()
        assert settings1 is settings2
