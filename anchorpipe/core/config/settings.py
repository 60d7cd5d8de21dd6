"""
Unified configuration management for Anchorpipe.

This module provides a single, environment-aware configuration system that
consolidates all configuration sources into a clean, validated approach.
"""

import os
import secrets
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Supported environments."""

    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


def generate_secure_secret() -> str:
    """Generate a cryptographically secure secret key for development."""
    return secrets.token_urlsafe(32)


DEFAULT_RATE_LIMITS: Dict[str, Tuple[int, int]] = {
    "auth:register": (5, 15 * 60 * 1000),
    "auth:login": (10, 15 * 60 * 1000),
    "ingestion:submit": (500, 60 * 60 * 1000),
}


def _default_auth_secret() -> str:
    if os.getenv("ENVIRONMENT", "development").lower() == "production":
        return ""
    return generate_secure_secret()


class LoggingConfig(BaseSettings):
    """Configuration for logging system."""

    level: str = Field(default="INFO", description="Logging level")
    json_output: bool = Field(default=True, description="Output logs in JSON format")
    log_file: Optional[str] = Field(default=None, description="Log file path")

    model_config = SettingsConfigDict(env_prefix="LOG_")


class DatabaseConfig(BaseSettings):
    """Configuration for database connection."""

    url: str = Field(
        default="postgres://postgres@localhost:5432/anchorpipe",
        validation_alias=AliasChoices("DATABASE_URL", "DB_URL"),
        description="Tortoise database URL",
    )
    generate_schemas: bool = Field(
        default=False, description="Create missing tables on startup"
    )

    model_config = SettingsConfigDict(env_prefix="DB_", populate_by_name=True)


class SecurityConfig(BaseSettings):
    """Configuration for session, cron and encryption secrets."""

    auth_secret: str = Field(
        default_factory=_default_auth_secret,
        validation_alias=AliasChoices("AUTH_SECRET", "SECURITY_AUTH_SECRET"),
        description="Secret used to sign session JWTs (required in production)",
    )
    jwt_algorithm: str = Field(default="HS256", description="JWT algorithm")
    jwt_audience: str = Field(
        default="anchorpipe:session", description="Audience claim for sessions"
    )
    session_cookie_name: str = Field(
        default="ap_session", description="Session cookie name"
    )
    session_ttl_seconds: int = Field(
        default=7 * 24 * 60 * 60, description="Session lifetime in seconds"
    )
    cron_secret: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("CRON_SECRET", "SECURITY_CRON_SECRET"),
        description="Bearer secret for scheduled job endpoints",
    )
    encryption_key_base64: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "ENCRYPTION_KEY_BASE64", "SECURITY_ENCRYPTION_KEY_BASE64"
        ),
        description="Base64 encoded 32 byte AES key for HMAC secret storage",
    )
    verification_token_ttl_hours: int = Field(
        default=24, description="Email verification token lifetime in hours"
    )

    model_config = SettingsConfigDict(env_prefix="SECURITY_", populate_by_name=True)

    @field_validator("auth_secret")
    @classmethod
    def validate_auth_secret(cls, v: str) -> str:
        """Validate auth secret meets minimum requirements."""
        if not v:
            raise ValueError("AUTH_SECRET is required")

        if len(v) < 16:
            raise ValueError("AUTH_SECRET must be at least 16 characters long")

        if v.lower() in {"change-me-in-production", "changeme", "secretsecretsecret"}:
            raise ValueError("AUTH_SECRET is a known placeholder and is not secure")

        return v


class APIConfig(BaseSettings):
    """Configuration for the API server."""

    host: str = Field(default="127.0.0.1", description="API server host")
    port: int = Field(default=8000, description="API server port")
    reload: bool = Field(default=True, description="Enable auto-reload in development")
    app_url: str = Field(
        default="http://localhost:3000", description="Public URL of the web app"
    )
    cors_origins: List[str] = Field(
        default_factory=list, description="Allowed CORS origins"
    )
    cors_credentials: bool = Field(default=True, description="Allow CORS credentials")
    cors_max_age: int = Field(
        default=600, description="CORS preflight cache time in seconds"
    )

    model_config = SettingsConfigDict(env_prefix="API_")

    def cors_origins_resolved(self, environment: str = "development") -> List[str]:
        """Get CORS origins based on environment."""
        if self.cors_origins:
            return self.cors_origins

        if environment == "development":
            return [
                "http://localhost:3000",
                "http://127.0.0.1:3000",
                "http://localhost:8000",
                "http://127.0.0.1:8000",
            ]
        return []


class RedisConfig(BaseSettings):
    """Configuration for Redis connection."""

    url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("REDIS_URL"),
        description="Redis URL; rate limiting stays in memory when unset",
    )
    max_connections: int = Field(default=10, description="Maximum Redis connections")
    socket_timeout: float = Field(default=5.0, description="Redis socket timeout")
    socket_connect_timeout: float = Field(
        default=5.0, description="Redis connection timeout"
    )

    model_config = SettingsConfigDict(env_prefix="REDIS_", populate_by_name=True)


class KafkaConfig(BaseSettings):
    """Configuration for the Kafka broker."""

    bootstrap_servers: Optional[str] = Field(
        default=None,
        description="Kafka bootstrap servers; publishing is skipped if unset",
    )
    consumer_group: str = Field(
        default="anchorpipe-ingestion", description="Worker consumer group"
    )
    auto_offset_reset: str = Field(default="earliest")
    session_timeout_ms: int = Field(default=30000)
    heartbeat_interval_ms: int = Field(default=3000)
    acks: str = Field(default="all")
    retries: int = Field(default=3)
    linger_ms: int = Field(default=5)
    num_partitions: int = Field(default=3)
    replication_factor: int = Field(default=1)
    poll_timeout_seconds: float = Field(default=1.0)

    model_config = SettingsConfigDict(env_prefix="KAFKA_")


class RateLimitConfig(BaseSettings):
    """
    Per-endpoint rate limits in "maxRequests:windowMs" form.

    Each field maps to RATE_LIMIT_<KEY>, e.g. RATE_LIMIT_AUTH_LOGIN="10:900000".
    """

    auth_register: str = Field(default="5:900000")
    auth_login: str = Field(default="10:900000")
    ingestion_submit: str = Field(default="500:3600000")
    trusted_ips: str = Field(
        default="",
        validation_alias=AliasChoices("TRUSTED_IPS", "RATE_LIMIT_TRUSTED_IPS"),
        description="Comma-separated IPs that bypass rate limiting",
    )

    model_config = SettingsConfigDict(env_prefix="RATE_LIMIT_", populate_by_name=True)

    def limits(self) -> Dict[str, Tuple[int, int]]:
        """Return the resolved (max_requests, window_ms) pair for each key."""
        resolved: Dict[str, Tuple[int, int]] = {}
        for key, default in DEFAULT_RATE_LIMITS.items():
            raw = getattr(self, key.replace(":", "_").replace("-", "_"))
            resolved[key] = _parse_limit(raw, default)
        return resolved

    @property
    def trusted_ip_list(self) -> List[str]:
        """Get trusted IPs as a list."""
        return [ip.strip() for ip in self.trusted_ips.split(",") if ip.strip()]


def _parse_limit(raw: str, default: Tuple[int, int]) -> Tuple[int, int]:
    parts = raw.split(":")
    if len(parts) != 2:
        return default
    try:
        max_requests, window_ms = int(parts[0]), int(parts[1])
    except ValueError:
        return default
    if max_requests <= 0 or window_ms <= 0:
        return default
    return max_requests, window_ms


class BruteForceConfig(BaseSettings):
    """Configuration for failed login lockout."""

    max_attempts: int = Field(default=5, description="Failures before lockout")
    lock_duration_ms: int = Field(default=15 * 60 * 1000)
    window_ms: int = Field(default=15 * 60 * 1000)
    cleanup_interval_seconds: int = Field(default=5 * 60)

    model_config = SettingsConfigDict(env_prefix="BRUTE_FORCE_")


class DSRConfig(BaseSettings):
    """Configuration for data subject requests."""

    sla_days: int = Field(default=30, description="Days allowed to fulfil a request")
    export_role_log_limit: int = Field(
        default=25, description="Role audit entries included per direction"
    )

    model_config = SettingsConfigDict(env_prefix="DSR_")


class IngestionConfig(BaseSettings):
    """Configuration for test report ingestion and the worker."""

    max_body_bytes: int = Field(default=50 * 1024 * 1024)
    idempotency_ttl_hours: int = Field(default=24)
    topic: str = Field(default="test.ingestion")
    dead_letter_topic: str = Field(default="test.ingestion.failed")
    retry_delays_ms: List[int] = Field(default_factory=lambda: [500, 1000, 2000])
    message_ttl_seconds: int = Field(default=24 * 60 * 60)

    model_config = SettingsConfigDict(env_prefix="INGESTION_")


class SIEMConfig(BaseSettings):
    """Configuration for audit log forwarding to a SIEM."""

    enabled: bool = Field(default=False)
    type: str = Field(
        default="http", description="syslog, http, splunk or elasticsearch"
    )
    format: str = Field(default="json", description="json, cef or leef")
    batch_size: int = Field(default=50)
    retry_attempts: int = Field(default=3)
    retry_delay: int = Field(default=1000, description="Retry delay in milliseconds")
    timeout: int = Field(default=5000, description="Request timeout in milliseconds")

    http_url: str = Field(default="")
    http_method: str = Field(default="POST")
    http_headers: Optional[str] = Field(default=None, description="JSON object")
    http_auth_token: Optional[str] = Field(default=None)
    http_auth_username: Optional[str] = Field(default=None)
    http_auth_password: Optional[str] = Field(default=None)

    syslog_host: str = Field(default="localhost")
    syslog_port: int = Field(default=514)
    syslog_protocol: str = Field(default="udp")
    syslog_facility: int = Field(default=16)
    syslog_tag: str = Field(default="anchorpipe")

    splunk_host: str = Field(default="localhost")
    splunk_port: int = Field(default=8088)
    splunk_token: str = Field(default="")
    splunk_index: Optional[str] = Field(default=None)
    splunk_source: str = Field(default="anchorpipe")
    splunk_sourcetype: str = Field(default="anchorpipe:audit")

    elasticsearch_url: str = Field(default="http://localhost:9200")
    elasticsearch_index: str = Field(default="anchorpipe-audit")
    elasticsearch_username: Optional[str] = Field(default=None)
    elasticsearch_password: Optional[str] = Field(default=None)
    elasticsearch_api_key: Optional[str] = Field(default=None)

    model_config = SettingsConfigDict(env_prefix="SIEM_")


class SecurityAlertConfig(BaseSettings):
    """
    Configuration for suspicious pattern detection over the audit log.

    Thresholds count audit entries inside a trailing window, e.g.
    ALERT_FAILED_LOGIN_THRESHOLD=10 with ALERT_FAILED_LOGIN_WINDOW_MS=900000.
    """

    enabled: bool = Field(
        default=False,
        validation_alias=AliasChoices("SECURITY_ALERTS_ENABLED", "ALERT_ENABLED"),
    )
    channels: str = Field(
        default="siem",
        validation_alias=AliasChoices("SECURITY_ALERTS_CHANNELS", "ALERT_CHANNELS"),
        description="Comma-separated: siem, webhook or all",
    )
    webhook_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "SECURITY_ALERTS_WEBHOOK_URL", "ALERT_WEBHOOK_URL"
        ),
    )
    webhook_secret: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "SECURITY_ALERTS_WEBHOOK_SECRET", "ALERT_WEBHOOK_SECRET"
        ),
        description="Signs webhook bodies as X-Webhook-Signature: sha256=<hex>",
    )
    webhook_timeout_ms: int = Field(default=5000)

    failed_login_threshold: int = Field(default=10)
    failed_login_window_ms: int = Field(default=15 * 60 * 1000)
    brute_force_threshold: int = Field(
        default=20, description="Failed logins per IP that raise severity to high"
    )
    hmac_failure_threshold: int = Field(default=10)
    hmac_failure_window_ms: int = Field(default=15 * 60 * 1000)
    role_change_threshold: int = Field(default=5)
    role_change_window_ms: int = Field(default=60 * 60 * 1000)
    token_revocation_threshold: int = Field(default=10)
    token_revocation_window_ms: int = Field(default=60 * 60 * 1000)

    model_config = SettingsConfigDict(env_prefix="ALERT_", populate_by_name=True)

    @property
    def channel_list(self) -> List[str]:
        """Get channels as a lowercase list."""
        return [c.strip().lower() for c in self.channels.split(",") if c.strip()]


class TelemetryConfig(BaseSettings):
    """Configuration for product telemetry."""

    enabled: bool = Field(default=False)

    model_config = SettingsConfigDict(env_prefix="TELEMETRY_")


class AnchorpipeConfig(BaseSettings):
    """Main unified configuration class for Anchorpipe."""

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT, description="Current environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Component configurations
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    kafka: KafkaConfig = Field(default_factory=KafkaConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    brute_force: BruteForceConfig = Field(default_factory=BruteForceConfig)
    dsr: DSRConfig = Field(default_factory=DSRConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    siem: SIEMConfig = Field(default_factory=SIEMConfig)
    alerts: SecurityAlertConfig = Field(default_factory=SecurityAlertConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: Union[str, Environment]) -> Environment:
        """Validate and convert environment string to enum."""
        if isinstance(v, Environment):
            return v
        if isinstance(v, str):
            try:
                return Environment(v.lower())
            except ValueError:
                raise ValueError(
                    f"Invalid environment: {v}. "
                    f"Must be one of: {[e.value for e in Environment]}"
                )
        raise ValueError(f"Invalid environment type: {type(v)}")

    @field_validator("debug")
    @classmethod
    def validate_debug(cls, v: bool, info: Any) -> bool:
        """Ensure debug is False in production."""
        if v and info.data.get("environment") == Environment.PRODUCTION:
            raise ValueError("Debug mode cannot be enabled in production")
        return v

    @property
    def cors_origins_resolved(self) -> List[str]:
        """Get resolved CORS origins for this environment."""
        return self.api.cors_origins_resolved(self.environment.value)

    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == Environment.DEVELOPMENT

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PRODUCTION

    def is_testing(self) -> bool:
        """Check if running in testing environment."""
        return self.environment == Environment.TESTING


# Global configuration instance
_config: Optional[AnchorpipeConfig] = None


def get_config() -> AnchorpipeConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AnchorpipeConfig()
    return _config


def set_config(config: AnchorpipeConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config


def reload_config() -> AnchorpipeConfig:
    """Reload configuration from environment variables."""
    global _config
    _config = AnchorpipeConfig()
    return _config


def get_environment() -> Environment:
    """Get the current environment."""
    return get_config().environment


def is_development() -> bool:
    """Check if running in development environment."""
    return get_config().is_development()


def is_production() -> bool:
    """Check if running in production environment."""
    return get_config().is_production()


def is_testing() -> bool:
    """Check if running in testing environment."""
    return get_config().is_testing()
