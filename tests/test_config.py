"""
Tests for Intent Plane Configuration
====================================

Tests centralized config loading.
"""

import os
import pytest
from unittest.mock import patch
from intent_plane.config import (
    GatewayConfig,
    IntentPlaneConfig,
    SMTPConfig,
    SupervisorSettings,
)


class TestIntentPlaneConfig:
    """Test config loading."""

    def test_defaults(self):
        """Default config has sensible values."""
        config = IntentPlaneConfig()
        assert config.log_level == "INFO"
        assert config.log_format == "json"
        assert config.intents.ttl_seconds == 900
        assert config.intents.resume_window_seconds == 1800
        assert config.supervisor.poll_interval == 5.0
        assert config.supervisor.max_attempts == 60
        assert config.cookie.name == "pending_intent"
        assert config.cookie.secure is True
        assert not config.database.is_configured

    def test_from_env(self):
        """Config loads from environment variables."""
        env = {
            "STRIPE_SECRET_KEY": "sk_test_123",
            "STRIPE_WEBHOOK_SECRET": "whsec_123",
            "DATABASE_URL": "postgresql://localhost/intents",
            "INTENT_TTL_SECONDS": "600",
            "ORDER_POLL_INTERVAL": "2.5",
            "ORDER_POLL_MAX_ATTEMPTS": "120",
            "PENDING_INTENT_COOKIE_SECURE": "false",
            "LOG_LEVEL": "debug",
        }
        with patch.dict(os.environ, env, clear=False):
            config = IntentPlaneConfig.from_env()
            assert config.stripe.secret_key == "sk_test_123"
            assert config.stripe.webhook_secret == "whsec_123"
            assert config.database.is_configured
            assert config.intents.ttl_seconds == 600
            assert config.supervisor.poll_interval == 2.5
            assert config.supervisor.max_attempts == 120
            assert config.cookie.secure is False
            assert config.log_level == "DEBUG"

    def test_cors_origins_from_env(self):
        """CORS origins parsed from comma-separated string."""
        with patch.dict(os.environ, {"CORS_ORIGINS": "https://a.com,https://b.com"}):
            config = IntentPlaneConfig.from_env()
            assert "https://a.com" in config.cors_origins
            assert "https://b.com" in config.cors_origins

    def test_invalid_number_fails_fast(self):
        """A non-numeric attempt budget is rejected at load time."""
        with patch.dict(os.environ, {"ORDER_POLL_MAX_ATTEMPTS": "lots"}):
            with pytest.raises(ValueError, match="ORDER_POLL_MAX_ATTEMPTS"):
                IntentPlaneConfig.from_env()


class TestSupervisorSettings:

    def test_window(self):
        """Supervision window is interval times attempts (5s x 60 = 5 minutes)."""
        assert SupervisorSettings().window_seconds == 300


class TestGatewayConfig:

    def test_stripe_is_default(self):
        config = GatewayConfig()
        assert config.kind == "stripe"
        assert config.is_configured

    def test_http_needs_base_url(self):
        assert not GatewayConfig(kind="http").is_configured
        assert GatewayConfig(kind="http", base_url="https://pay.example.com").is_configured


class TestSMTPConfig:
    """Test SMTP configuration."""

    def test_not_configured(self):
        """Empty credentials = not configured."""
        assert not SMTPConfig().is_configured

    def test_configured(self):
        """User and password present = configured."""
        assert SMTPConfig(user="mailer", password="secret").is_configured
