"""Configuration management using Pydantic Settings.

Settings are read from ``QUEUESPINE_*`` environment variables (and a local
``.env`` file) the first time they are needed. Host applications usually
override a few fields at startup with :func:`configure`::

    from queuespine import configure

    configure(connection="redis://localhost:6379/0", default_queue="hono-example")

``configure()`` only merges values into the process settings. It never opens
a connection, so it is safe to call at import time.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class QueueSettings(BaseSettings):
    """Settings for queuespine, loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="QUEUESPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Broker
    connection: str | None = "redis://localhost:6379/0"
    key_prefix: str = "queuespine"

    # Queues
    default_queue: str = "default"
    default_concurrency: int = Field(default=5, ge=1)

    # Consumers
    poll_interval_seconds: float = Field(default=1.0, gt=0)

    # Claimed-job locks and stalled-job recovery
    lock_duration_seconds: float = Field(default=30.0, gt=0)
    stalled_interval_seconds: float = Field(default=30.0, gt=0)
    max_stalled_count: int = Field(default=1, ge=0)

    # Retention of finished job records
    remove_on_complete_age_seconds: int = 100
    remove_on_complete_count: int = 100
    remove_on_fail_age_seconds: int = 500
    remove_on_fail_count: int = 500

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "console"] = "console"


# Global settings instance
_settings: QueueSettings | None = None


def get_settings() -> QueueSettings:
    """Get or create settings instance."""
    global _settings
    if _settings is None:
        _settings = QueueSettings()
    return _settings


def configure(**overrides: Any) -> QueueSettings:
    """Merge ``overrides`` over the current settings (last write wins).

    Unknown field names raise ``TypeError`` so typos surface at startup
    instead of being silently ignored.

    Returns:
        The new process-wide settings instance.
    """
    global _settings
    unknown = set(overrides) - set(QueueSettings.model_fields)
    if unknown:
        raise TypeError(f"Unknown queuespine setting(s): {', '.join(sorted(unknown))}")

    merged = {**get_settings().model_dump(), **overrides}
    _settings = QueueSettings(**merged)
    return _settings


def reset_settings() -> None:
    """Reset settings (for testing)."""
    global _settings
    _settings = None
