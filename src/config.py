"""
Configuration module for the ROSA control plane operator.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from ocm import DEFAULT_API_URL, DEFAULT_CLIENT_ID, DEFAULT_TOKEN_URL


def _parse_duration(value: str) -> float:
    """Parse a duration such as '30', '30s', '5m' or '1h' into seconds."""
    value = value.strip().lower()
    if not value:
        return 0.0
    units = {"s": 1, "m": 60, "h": 3600}
    if value[-1] in units:
        return float(value[:-1]) * units[value[-1]]
    return float(value)


@dataclass
class ControllerConfig:
    """Controller reconciliation configuration."""

    max_concurrent_reconciles: int = 5

    # Label value objects must carry to be reconciled (empty = all objects)
    watch_filter_value: str = ""
    # Namespace to watch (None = all namespaces)
    watch_namespace: Optional[str] = None
    # When positive, wait this long for Cluster infrastructure before creating
    wait_infra_period: float = 0.0

    external_retry_delay: float = 10.0  # seconds after a failed OCM call
    cluster_poll_interval: float = 60.0  # seconds between install/uninstall checks

    # Exponential backoff configuration
    backoff_base_delay: int = 60  # base delay in seconds
    backoff_max_delay: int = 3600  # max delay in seconds (1 hour)
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            watch_filter_value=os.getenv("WATCH_FILTER", ""),
            watch_namespace=os.getenv("WATCH_NAMESPACE") or None,
            wait_infra_period=_parse_duration(os.getenv("WAIT_INFRA_PERIOD", "0")),
            external_retry_delay=_parse_duration(
                os.getenv("EXTERNAL_RETRY_DELAY", "10")
            ),
            cluster_poll_interval=_parse_duration(
                os.getenv("CLUSTER_POLL_INTERVAL", "60")
            ),
            backoff_base_delay=int(os.getenv("BACKOFF_BASE_DELAY", "60")),
            backoff_max_delay=int(os.getenv("BACKOFF_MAX_DELAY", "3600")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class OCMConfig:
    """OpenShift Cluster Manager connection configuration."""

    token: str = field(default="", repr=False)  # Never log the token
    api_url: str = DEFAULT_API_URL
    token_url: str = DEFAULT_TOKEN_URL
    client_id: str = DEFAULT_CLIENT_ID
    timeout: float = 60.0

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            token=os.getenv("OCM_TOKEN", ""),
            api_url=os.getenv("OCM_URL", DEFAULT_API_URL),
            token_url=os.getenv("OCM_TOKEN_URL", DEFAULT_TOKEN_URL),
            client_id=os.getenv("OCM_CLIENT_ID", DEFAULT_CLIENT_ID),
            timeout=float(os.getenv("OCM_TIMEOUT", "60")),
        )


@dataclass
class HealthConfig:
    """Health probe server configuration."""

    host: str = "0.0.0.0"
    port: int = 8081
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("HEALTH_HOST", "0.0.0.0"),
            port=int(os.getenv("HEALTH_PORT", "8081")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class Config:
    """Main configuration object."""

    controller: ControllerConfig
    ocm: OCMConfig
    health: HealthConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            controller=ControllerConfig.from_env(),
            ocm=OCMConfig.from_env(),
            health=HealthConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            controller=ControllerConfig(),
            ocm=OCMConfig(),
            health=HealthConfig(),
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
