"""
Configuration module for the gateway operator.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass
from typing import Optional


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class ProviderConfig:
    """Identity of this platform service."""

    name: str = "gateway"  # also the name of the GatewayServiceConfig
    namespace: str = "openmcp-system"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            name=os.getenv("PROVIDER_NAME", "gateway"),
            namespace=os.getenv("PROVIDER_NAMESPACE", "openmcp-system"),
        )


@dataclass
class ControllerConfig:
    """Controller reconciliation loop configuration."""

    resync_interval: int = 300  # seconds
    config_watch_timeout: int = 300  # seconds a config watch stays open
    requeue_after_success: int = 3600  # seconds
    max_concurrent_reconciles: int = 5

    # Exponential backoff configuration
    backoff_base_delay: int = 5  # base delay in seconds
    backoff_max_delay: int = 300  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            resync_interval=int(os.getenv("RESYNC_INTERVAL", "300")),
            config_watch_timeout=int(os.getenv("CONFIG_WATCH_TIMEOUT", "300")),
            requeue_after_success=int(os.getenv("REQUEUE_AFTER_SUCCESS", "3600")),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            backoff_base_delay=int(os.getenv("BACKOFF_BASE_DELAY", "5")),
            backoff_max_delay=int(os.getenv("BACKOFF_MAX_DELAY", "300")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class PlatformConfig:
    """Access to the platform cluster."""

    kubeconfig: str = ""  # empty: in-cluster service account
    request_timeout: int = 30

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            kubeconfig=os.getenv("PLATFORM_KUBECONFIG", ""),
            request_timeout=int(os.getenv("KUBE_REQUEST_TIMEOUT", "30")),
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
class EventsConfig:
    """Event recording configuration."""

    record_kubernetes_events: bool = True

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            record_kubernetes_events=_env_bool("RECORD_KUBERNETES_EVENTS", "true"),
        )


@dataclass
class Config:
    """Main configuration object."""

    provider: ProviderConfig
    controller: ControllerConfig
    platform: PlatformConfig
    api: APIConfig
    events: EventsConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            provider=ProviderConfig.from_env(),
            controller=ControllerConfig.from_env(),
            platform=PlatformConfig.from_env(),
            api=APIConfig.from_env(),
            events=EventsConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            provider=ProviderConfig(),
            controller=ControllerConfig(),
            platform=PlatformConfig(),
            api=APIConfig(),
            events=EventsConfig(),
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
