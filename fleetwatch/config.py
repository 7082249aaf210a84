"""
Configuration management for FleetWatch.

Loads settings from environment variables with sensible defaults.
All configuration is centralized here to avoid magic strings scattered
throughout the codebase.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class UpstreamConfig:
    """Upstream vessel feed configuration."""
    feed_url: Optional[str] = field(default_factory=lambda: os.getenv('FEED_URL') or None)
    api_token: Optional[str] = field(default_factory=lambda: os.getenv('FEED_API_TOKEN') or None)
    probe_url: Optional[str] = field(default_factory=lambda: os.getenv('FEED_PROBE_URL') or None)
    timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv('FEED_TIMEOUT_SECONDS', '30'))
    )
    max_retries: int = field(default_factory=lambda: int(os.getenv('FEED_MAX_RETRIES', '3')))
    retry_base_delay_seconds: float = field(
        default_factory=lambda: float(os.getenv('FEED_RETRY_BASE_DELAY_SECONDS', '1.0'))
    )

    @property
    def is_configured(self) -> bool:
        return bool(self.feed_url and self.api_token)


@dataclass(frozen=True)
class DatabaseConfig:
    """Database configuration."""
    url: str = field(default_factory=lambda: os.getenv('DATABASE_URL', 'sqlite:///fleetwatch.db'))
    timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv('DATABASE_TIMEOUT_SECONDS', '15'))
    )

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith('sqlite')


@dataclass(frozen=True)
class IngestionConfig:
    """Ingestion job settings."""
    interval_minutes: float = field(
        default_factory=lambda: float(os.getenv('INGESTION_INTERVAL_MINUTES', '5'))
    )

    group_size: int = 5  # Vessels processed concurrently per group
    position_batch_size: int = 100  # Max rows per position upsert
    max_summary_errors: int = 10  # Error strings kept in a run summary


@dataclass(frozen=True)
class CacheConfig:
    """Request cache settings."""
    ttl_seconds: float = field(default_factory=lambda: float(os.getenv('CACHE_TTL_SECONDS', '30')))
    positions_ttl_seconds: float = 120
    frames_ttl_seconds: float = 60
    sweep_interval_seconds: float = 300
    inflight_max_age_seconds: float = 300
    inflight_wait_seconds: float = 60


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""
    upstream: UpstreamConfig
    database: DatabaseConfig
    ingestion: IngestionConfig
    cache: CacheConfig

    # Flask settings
    secret_key: str
    debug: bool


def load_config() -> AppConfig:
    """Load and validate all configuration."""
    return AppConfig(
        upstream=UpstreamConfig(),
        database=DatabaseConfig(),
        ingestion=IngestionConfig(),
        cache=CacheConfig(),
        secret_key=os.getenv('SECRET_KEY', 'dev-key-change-in-prod'),
        debug=os.getenv('FLASK_DEBUG', '0') == '1',
    )


# Singleton instance
config = load_config()
