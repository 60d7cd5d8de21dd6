"""
Configuration package for Anchorpipe.

This package provides centralized configuration management for all
Anchorpipe components including API, database, Redis, Kafka and security
settings.
"""

from .settings import (
    DEFAULT_RATE_LIMITS,
    AnchorpipeConfig,
    APIConfig,
    BruteForceConfig,
    DatabaseConfig,
    DSRConfig,
    Environment,
    IngestionConfig,
    KafkaConfig,
    LoggingConfig,
    RateLimitConfig,
    RedisConfig,
    SecurityAlertConfig,
    SecurityConfig,
    SIEMConfig,
    TelemetryConfig,
    generate_secure_secret,
    get_config,
    get_environment,
    is_development,
    is_production,
    is_testing,
    reload_config,
    set_config,
)

__all__ = [
    # Main configuration classes
    "AnchorpipeConfig",
    "Environment",
    # Component configurations
    "APIConfig",
    "BruteForceConfig",
    "DatabaseConfig",
    "DSRConfig",
    "IngestionConfig",
    "KafkaConfig",
    "LoggingConfig",
    "RateLimitConfig",
    "RedisConfig",
    "SecurityAlertConfig",
    "SecurityConfig",
    "SIEMConfig",
    "TelemetryConfig",
    "DEFAULT_RATE_LIMITS",
    # Configuration functions
    "generate_secure_secret",
    "get_config",
    "get_environment",
    "is_development",
    "is_production",
    "is_testing",
    "reload_config",
    "set_config",
]
