"""Configuration for KidQueue services.

Usage:
    from kidqueue.config import Config

    # Access config values
    database_url = Config.DATABASE_URL
    retries = Config.QUEUE_COMMIT_RETRIES
"""

import os
from pathlib import Path


class Config:
    """Centralized configuration for the pickup queue.

    All configuration values are class variables that can be accessed directly.
    Values are loaded from environment variables with sensible defaults.

    Example:
        from kidqueue.config import Config

        print(Config.KIDQUEUE_DIR)
        print(Config.DATABASE_URL)
    """

    # ========================================================================
    # Helper methods (static)
    # ========================================================================

    @staticmethod
    def _get_kidqueue_dir() -> str:
        """Get and validate KIDQUEUE_DIR environment variable.

        Falls back to ~/.kidqueue, created on first use, when the variable
        is not set.

        Returns:
            Data directory path

        Raises:
            ValueError: If the directory is not writable
        """
        kidqueue_dir = os.getenv("KIDQUEUE_DIR")
        if not kidqueue_dir:
            default_dir = Path.home() / ".kidqueue"
            try:
                default_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ValueError(f"Cannot create default KIDQUEUE_DIR {default_dir}: {e}") from e
            kidqueue_dir = str(default_dir)

        if not os.access(kidqueue_dir, os.W_OK):
            raise ValueError(
                f"KIDQUEUE_DIR does not exist or no write permission: {kidqueue_dir}"
            )

        return kidqueue_dir

    @staticmethod
    def _get_value(key: str, default: str) -> str:
        """Get configuration value from environment with optional default."""
        return os.getenv(key, default)

    @staticmethod
    def _get_int(key: str, default: int) -> int:
        """Get integer configuration value."""
        return int(os.getenv(key, str(default)))

    @staticmethod
    def _get_bool(key: str, default: bool = False) -> bool:
        """Get boolean configuration value."""
        return os.getenv(key, str(default)).lower() in ("true", "1", "yes")

    # ========================================================================
    # Common Configuration
    # ========================================================================

    KIDQUEUE_DIR: str = _get_kidqueue_dir()

    DATABASE_URL: str = _get_value("DATABASE_URL", f"sqlite:///{KIDQUEUE_DIR}/kidqueue.db")
    DATABASE_ECHO: bool = _get_bool("DATABASE_ECHO", False)

    LOG_LEVEL: str = _get_value("LOG_LEVEL", "INFO")

    # ========================================================================
    # Queue Configuration
    # ========================================================================

    # Attempts per mutating operation before TransientFailure is raised
    QUEUE_COMMIT_RETRIES: int = _get_int("QUEUE_COMMIT_RETRIES", 3)
    QUEUE_RETRY_BACKOFF_MS: int = _get_int("QUEUE_RETRY_BACKOFF_MS", 50)

    # Seconds between refetches when push notifications are unavailable
    QUEUE_POLL_INTERVAL: int = _get_int("QUEUE_POLL_INTERVAL", 5)

    HISTORY_PAGE_LIMIT: int = _get_int("HISTORY_PAGE_LIMIT", 50)

    QR_CODE_PREFIX: str = _get_value("QR_CODE_PREFIX", "KIDQUEUE")

    # ========================================================================
    # Broadcast Configuration
    # ========================================================================

    BROADCAST_TYPE: str = _get_value("BROADCAST_TYPE", "mqtt")
    MQTT_BROKER: str = _get_value("MQTT_BROKER", "localhost")
    MQTT_PORT: int = _get_int("MQTT_PORT", 1883)
    MQTT_TOPIC_PREFIX: str = _get_value("MQTT_TOPIC_PREFIX", "kidqueue")
