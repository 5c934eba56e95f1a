"""
Intent Plane Centralized Configuration
======================================

Single source of truth for all configuration values.
Reads from environment variables with sensible defaults.
"""

import os
from typing import Optional, List
from dataclasses import dataclass, field


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class StripeConfig:
    """Stripe keys for the PaymentIntents gateway and the confirmation webhook."""
    secret_key: str = ""
    webhook_secret: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)


@dataclass
class GatewayConfig:
    """Which payment gateway supervises orders."""
    kind: str = "stripe"  # "stripe" or "http"
    base_url: str = ""
    api_key: str = ""
    timeout: float = 10.0

    @property
    def is_configured(self) -> bool:
        if self.kind == "http":
            return bool(self.base_url)
        return True


@dataclass
class SMTPConfig:
    host: str = "smtp.mailgun.org"
    port: int = 587
    user: str = ""
    password: str = ""
    from_email: str = "Intent Plane <noreply@example.com>"
    reply_to: str = "support@example.com"
    use_tls: bool = True

    @property
    def is_configured(self) -> bool:
        return bool(self.user and self.password)


@dataclass
class DatabaseConfig:
    url: str = ""  # empty = in-memory stores
    min_pool_size: int = 2
    max_pool_size: int = 10

    @property
    def is_configured(self) -> bool:
        return bool(self.url)


@dataclass
class IntentSettings:
    ttl_seconds: int = 15 * 60
    resume_window_seconds: int = 30 * 60  # added to expires_at on resume


@dataclass
class SupervisorSettings:
    poll_interval: float = 5.0
    max_attempts: int = 60
    create_attempts: int = 3

    @property
    def window_seconds(self) -> float:
        return self.poll_interval * self.max_attempts


@dataclass
class CookieSettings:
    name: str = "pending_intent"
    secure: bool = True
    domain: Optional[str] = None


@dataclass
class IntentPlaneConfig:
    """Master configuration for the intent plane service."""

    # Sub-configs
    stripe: StripeConfig = field(default_factory=StripeConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    smtp: SMTPConfig = field(default_factory=SMTPConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    intents: IntentSettings = field(default_factory=IntentSettings)
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    cookie: CookieSettings = field(default_factory=CookieSettings)

    # Application settings
    log_level: str = "INFO"
    log_format: str = "json"
    sweep_interval: float = 60.0
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:5173"])

    @classmethod
    def from_env(cls) -> "IntentPlaneConfig":
        """Load configuration from environment variables."""
        return cls(
            stripe=StripeConfig(
                secret_key=os.environ.get("STRIPE_SECRET_KEY", ""),
                webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET", ""),
            ),
            gateway=GatewayConfig(
                kind=os.environ.get("GATEWAY_KIND", "stripe").lower(),
                base_url=os.environ.get("GATEWAY_BASE_URL", ""),
                api_key=os.environ.get("GATEWAY_API_KEY", ""),
                timeout=_env_float("GATEWAY_TIMEOUT", 10.0),
            ),
            smtp=SMTPConfig(
                host=os.environ.get("SMTP_HOST", "smtp.mailgun.org"),
                port=_env_int("SMTP_PORT", 587),
                user=os.environ.get("SMTP_USER", ""),
                password=os.environ.get("SMTP_PASSWORD", ""),
                from_email=os.environ.get("FROM_EMAIL", "Intent Plane <noreply@example.com>"),
                reply_to=os.environ.get("REPLY_TO_EMAIL", "support@example.com"),
                use_tls=_env_bool("SMTP_USE_TLS", True),
            ),
            database=DatabaseConfig(
                url=os.environ.get("DATABASE_URL", ""),
                min_pool_size=_env_int("DATABASE_MIN_POOL", 2),
                max_pool_size=_env_int("DATABASE_MAX_POOL", 10),
            ),
            intents=IntentSettings(
                ttl_seconds=_env_int("INTENT_TTL_SECONDS", 15 * 60),
                resume_window_seconds=_env_int("INTENT_RESUME_WINDOW_SECONDS", 30 * 60),
            ),
            supervisor=SupervisorSettings(
                poll_interval=_env_float("ORDER_POLL_INTERVAL", 5.0),
                max_attempts=_env_int("ORDER_POLL_MAX_ATTEMPTS", 60),
                create_attempts=_env_int("ORDER_CREATE_ATTEMPTS", 3),
            ),
            cookie=CookieSettings(
                name=os.environ.get("PENDING_INTENT_COOKIE", "pending_intent"),
                secure=_env_bool("PENDING_INTENT_COOKIE_SECURE", True),
                domain=os.environ.get("PENDING_INTENT_COOKIE_DOMAIN") or None,
            ),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            log_format=os.environ.get("LOG_FORMAT", "json"),
            sweep_interval=_env_float("SWEEP_INTERVAL", 60.0),
            cors_origins=os.environ.get(
                "CORS_ORIGINS", "http://localhost:5173"
            ).split(","),
        )
