"""Configuration via environment variables.

Uses pydantic-settings to load config from env vars with CLUSTERBUS_ prefix.
Settings feed a frozen DispatcherConfig, which is what the dispatcher and
its connections actually hold. Tests build DispatcherConfig directly.
"""

from dataclasses import dataclass
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings


@dataclass(frozen=True)
class DispatcherConfig:
    """Broker endpoint plus the knobs of the reconnect/delivery machinery."""

    host: str = "localhost"
    port: int = 6379
    password: Optional[str] = None
    debug: bool = False
    reconnect_base_delay: float = 0.1  # seconds
    reconnect_max_delay: float = 5.0  # reconnect backoff never exceeds this
    reconnect_factor: float = 2.0
    poll_timeout: float = 1.0  # how long a listener blocks per read
    isolate_callbacks: bool = True


class Settings(BaseSettings):
    """All runtime configuration. Set via CLUSTERBUS_* env vars."""

    # Redis
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None

    # Dispatcher
    debug: bool = False
    reconnect_base_delay: float = 0.1
    reconnect_max_delay: float = 5.0
    reconnect_factor: float = 2.0
    poll_timeout: float = 1.0
    isolate_callbacks: bool = True

    # WebSocket bridge
    environment: str = "development"
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = {"env_prefix": "CLUSTERBUS_"}

    @model_validator(mode="after")
    def validate_reconnect_policy(self):
        """Reject backoff settings that would spin or never grow."""
        if self.reconnect_base_delay <= 0 or self.reconnect_max_delay <= 0:
            raise ValueError("CLUSTERBUS_RECONNECT_*_DELAY must be positive")
        if self.reconnect_base_delay > self.reconnect_max_delay:
            raise ValueError(
                "CLUSTERBUS_RECONNECT_BASE_DELAY must not exceed "
                "CLUSTERBUS_RECONNECT_MAX_DELAY"
            )
        if self.reconnect_factor < 1:
            raise ValueError("CLUSTERBUS_RECONNECT_FACTOR must be at least 1")
        if self.poll_timeout <= 0:
            raise ValueError("CLUSTERBUS_POLL_TIMEOUT must be positive")
        return self

    def dispatcher_config(self) -> DispatcherConfig:
        return DispatcherConfig(
            host=self.redis_host,
            port=self.redis_port,
            password=self.redis_password or None,
            debug=self.debug,
            reconnect_base_delay=self.reconnect_base_delay,
            reconnect_max_delay=self.reconnect_max_delay,
            reconnect_factor=self.reconnect_factor,
            poll_timeout=self.poll_timeout,
            isolate_callbacks=self.isolate_callbacks,
        )


# Singleton — import this everywhere
settings = Settings()
