"""
Configuration management for the Material Lot Tracker.

This module handles:
- Database path and URL configuration
- Environment-specific configuration (development vs. production)
- Consumption engine settings (alternatives, storage retries, deadlines)
"""

import logging
import os
from decimal import Decimal
from pathlib import Path
from typing import Optional

from .constants import (
    APP_NAME,
    APP_VERSION,
    DATABASE_FILENAME,
    DATABASE_URL_VARIABLE,
    DEFAULT_BATCH_NUMBER_PREFIX,
    DEFAULT_CONSUME_TIMEOUT,
    DEFAULT_MAX_ALTERNATIVE_LOTS,
    DEFAULT_STORAGE_RETRY_ATTEMPTS,
    DEFAULT_STORAGE_RETRY_BACKOFF,
    DEFAULT_THEORETICAL_YIELD,
    ENVIRONMENT_VARIABLE,
)


class Config:
    """
    Application configuration manager.

    Handles database location plus the tunables of the consumption engine.
    Engine settings are plain attributes so tests and callers can override
    them on an instance.
    """

    def __init__(self, environment: str = "production", database_url: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            environment: Environment mode - 'production' or 'development'
            database_url: Optional explicit SQLAlchemy URL (overrides the file path)
        """
        self.environment = environment
        self._app_name = APP_NAME
        self._app_version = APP_VERSION

        if environment == "development":
            self._base_dir = self._get_project_data_dir()
        else:
            self._base_dir = self._get_user_data_dir()

        self._database_dir = self._base_dir
        self._database_path = self._database_dir / DATABASE_FILENAME
        self._database_url_override = database_url or os.environ.get(DATABASE_URL_VARIABLE)

        # Consumption engine settings
        self.max_alternative_lots = DEFAULT_MAX_ALTERNATIVE_LOTS
        self.storage_retry_attempts = DEFAULT_STORAGE_RETRY_ATTEMPTS
        self.storage_retry_backoff = DEFAULT_STORAGE_RETRY_BACKOFF
        self.consume_timeout: Optional[float] = DEFAULT_CONSUME_TIMEOUT
        self.batch_number_prefix = DEFAULT_BATCH_NUMBER_PREFIX
        self.default_theoretical_yield = Decimal(DEFAULT_THEORETICAL_YIELD)

    def _get_project_data_dir(self) -> Path:
        """Project data/ directory used in development."""
        project_root = Path(__file__).parent.parent.parent
        return project_root / "data"

    def _get_user_data_dir(self) -> Path:
        """Per-user data directory used in production."""
        return Path.home() / ".lot_tracker"

    def ensure_directories(self) -> None:
        """Create the database directory if it doesn't exist."""
        self._database_dir.mkdir(parents=True, exist_ok=True)

    @property
    def app_name(self) -> str:
        """Application name."""
        return self._app_name

    @property
    def app_version(self) -> str:
        """Application version."""
        return self._app_version

    @property
    def database_path(self) -> Path:
        """Full path to the database file."""
        return self._database_path

    @property
    def database_url(self) -> str:
        """
        SQLAlchemy database URL.

        Returns:
            The URL override if one was configured, otherwise a SQLite URL
            for the database file
        """
        if self._database_url_override:
            return self._database_url_override
        db_path_str = str(self._database_path).replace("\\", "/")
        return f"sqlite:///{db_path_str}"

    @property
    def uses_file_database(self) -> bool:
        """True when the database lives in the configured file path."""
        return not self._database_url_override

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    def database_exists(self) -> bool:
        """
        Check if database file exists.

        Returns:
            True if database file exists, False otherwise
        """
        return self._database_path.exists()

    def __repr__(self) -> str:
        """String representation of config."""
        return f"Config(environment='{self.environment}', database_url='{self.database_url}')"


# Global configuration instance
_config_instance: Optional[Config] = None


def get_config(environment: Optional[str] = None) -> Config:
    """
    Get the global configuration instance.

    Once created, the singleton's environment cannot be changed by passing a
    different environment argument; this prevents switching databases
    mid-session.

    Args:
        environment: Optional environment for initial creation. If None, uses
                    LOT_TRACKER_ENV or defaults to production. Ignored if
                    singleton already exists.

    Returns:
        Config instance
    """
    global _config_instance

    if _config_instance is None:
        if environment is None:
            environment = os.environ.get(ENVIRONMENT_VARIABLE, "production")
        _config_instance = Config(environment)
    elif environment is not None and environment != _config_instance.environment:
        logger = logging.getLogger(__name__)
        logger.warning(
            f"get_config() called with environment='{environment}' but singleton "
            f"already exists with environment='{_config_instance.environment}'. "
            f"Returning existing singleton to prevent database switching."
        )

    return _config_instance


def reset_config() -> None:
    """
    Reset the global configuration instance.

    Useful for testing.
    """
    global _config_instance
    _config_instance = None


def get_database_url() -> str:
    """Get the database URL."""
    return get_config().database_url
