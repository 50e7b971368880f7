"""
Configuration module for the image reflector.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from models import parse_duration


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "image_reflector"
    user: str = "reflector"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 5
    max_pool_size: int = 20

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "image_reflector"),
            user=os.getenv("DB_USER", "reflector"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class ControllerConfig:
    """Reconcile loop configuration."""

    max_concurrent_reconciles: int = 5
    resync_interval: int = 300  # seconds
    scan_timeout: float = 10.0  # seconds, per registry call
    default_scan_interval: timedelta = timedelta(minutes=10)

    # Exponential backoff configuration
    backoff_base_delay: float = 5.0  # seconds
    backoff_max_delay: float = 1000.0  # seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            resync_interval=int(os.getenv("RESYNC_INTERVAL", "300")),
            scan_timeout=float(os.getenv("SCAN_TIMEOUT", "10")),
            default_scan_interval=parse_duration(
                os.getenv("DEFAULT_SCAN_INTERVAL", "10m")
            ),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "5")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "1000")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class RegistryConfig:
    """Registry client configuration."""

    # Registries reached over plain http
    insecure_registries: List[str] = field(default_factory=list)
    page_size: int = 1000
    user_agent: str = "image-reflector/0.1.0"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        insecure = os.getenv("INSECURE_REGISTRIES", "")
        return cls(
            insecure_registries=[r.strip() for r in insecure.split(",") if r.strip()],
            page_size=int(os.getenv("REGISTRY_PAGE_SIZE", "1000")),
            user_agent=os.getenv("REGISTRY_USER_AGENT", "image-reflector/0.1.0"),
        )


@dataclass
class APIConfig:
    """API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    controller: ControllerConfig
    registry: RegistryConfig
    api: APIConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
            registry=RegistryConfig.from_env(),
            api=APIConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            registry=RegistryConfig(),
            api=APIConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
