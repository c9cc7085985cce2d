"""
Metering Configuration Module

Builds and validates the metering/quota configuration from application
settings (environment variables or .env) with sensible defaults.
"""

from typing import Optional
from dataclasses import dataclass

from tokenmeter.config import Settings


@dataclass
class MeteringConfig:
    """Configuration for token metering and quota enforcement."""

    # Global settings
    enabled: bool = True
    redis_url: Optional[str] = None
    redis_socket_timeout: float = 0.5
    redis_connect_timeout: float = 0.5

    # Enforcement
    quota_enforcement_enabled: bool = False

    # Usage counters
    ttl_grace_seconds: int = 5

    # Durable recording
    durable_recording_enabled: bool = True
    recorder_workers: int = 4

    # Directory
    directory_source: str = "database"  # database|yaml
    directory_seed_file: Optional[str] = None
    directory_refresh_seconds: int = 300

    @classmethod
    def from_settings(cls, settings: Settings) -> "MeteringConfig":
        """Build configuration from a Settings instance."""
        return cls(
            enabled=settings.METERING_ENABLED,
            redis_url=settings.REDIS_URL,
            redis_socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
            redis_connect_timeout=settings.REDIS_CONNECT_TIMEOUT,

            quota_enforcement_enabled=settings.QUOTA_ENFORCEMENT_ENABLED,

            ttl_grace_seconds=settings.USAGE_TTL_GRACE_SECONDS,

            durable_recording_enabled=settings.DURABLE_RECORDING_ENABLED,
            recorder_workers=settings.USAGE_RECORDER_WORKERS,

            directory_source=settings.DIRECTORY_SOURCE.lower(),
            directory_seed_file=settings.DIRECTORY_SEED_FILE,
            directory_refresh_seconds=settings.DIRECTORY_REFRESH_SECONDS,
        )

    def validate(self) -> None:
        """Validate configuration values."""
        if self.directory_source not in ("database", "yaml"):
            raise ValueError(f"Invalid directory_source: {self.directory_source}. Must be 'database' or 'yaml'.")

        if self.directory_source == "yaml" and not self.directory_seed_file:
            raise ValueError("directory_seed_file is required when directory_source is 'yaml'")

        if self.ttl_grace_seconds < 0:
            raise ValueError("ttl_grace_seconds must be non-negative")

        if self.recorder_workers <= 0:
            raise ValueError("recorder_workers must be positive")

        if self.directory_refresh_seconds < 0:
            raise ValueError("directory_refresh_seconds must be non-negative")

        if self.redis_socket_timeout <= 0 or self.redis_connect_timeout <= 0:
            raise ValueError("Redis timeouts must be positive so store calls stay bounded")


# Global configuration instance
_config: Optional[MeteringConfig] = None


def load_metering_config() -> MeteringConfig:
    """
    Load and return the global metering configuration.

    Returns:
        MeteringConfig instance built from the application settings
    """
    global _config

    if _config is None:
        _config = reload_config()

    return _config


def reload_config() -> MeteringConfig:
    """
    Force reload configuration from a fresh Settings read.
    Useful for testing or dynamic reconfiguration.
    """
    global _config
    _config = MeteringConfig.from_settings(Settings())
    _config.validate()
    return _config
