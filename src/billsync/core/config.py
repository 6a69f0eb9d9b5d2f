"""Configuration management for billsync."""

import os
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from ..exceptions import ConfigurationError

ENV_PREFIX = "BILLSYNC_"

WATERMARK_BACKENDS = ("file", "firestore")


def setup_logging(level: str = "INFO") -> None:
    """Set up logging configuration.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def load_environment(env_file: Optional[str] = None) -> None:
    """Load environment variables from .env file.

    Args:
        env_file: Path to .env file. If None, looks for .env in current directory.
    """
    if env_file:
        env_path = Path(env_file)
    else:
        env_path = Path('.env')

    if env_path.exists():
        load_dotenv(env_path)
        logging.info(f"Loaded environment from {env_path}")
    else:
        logging.warning(f"No .env file found at {env_path}")


def get_required_env(key: str) -> str:
    """Get a required environment variable.

    Args:
        key: Environment variable name

    Returns:
        Environment variable value

    Raises:
        ConfigurationError: If the environment variable is not set
    """
    value = os.getenv(key)
    if not value:
        raise ConfigurationError(f"Required environment variable {key} is not set")
    return value


def get_optional_env(key: str, default: str = "") -> str:
    """Get an optional environment variable.

    Args:
        key: Environment variable name
        default: Default value if not set

    Returns:
        Environment variable value or default
    """
    return os.getenv(key, default)


def mask_url(url: str) -> str:
    """Hide the password of a database or API URL before it is logged."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return "<unparseable url>"
    if not parts.password:
        return url
    netloc = parts.netloc.rsplit("@", 1)[1]
    user = parts.username or ""
    return urlunsplit(parts._replace(netloc=f"{user}:***@{netloc}"))


class SyncSettings(BaseModel):
    """Process-level settings read from BILLSYNC_* environment variables."""
    source_url: str
    target_url: str
    target_api_key: str = Field(..., repr=False)
    config_file: str
    watermark_backend: str = "file"
    watermark_path: str = "./state/watermark.json"
    google_cloud_project: Optional[str] = None
    target_timeout_seconds: float = 30.0
    log_level: str = "INFO"

    @property
    def refresh_watermark_path(self) -> str:
        """Refresh cursor file, next to the sync watermark."""
        path = Path(self.watermark_path)
        return str(path.with_name(f"{path.stem}.refresh{path.suffix or '.json'}"))

    @classmethod
    def from_env(cls) -> "SyncSettings":
        """
        Build settings from the environment.

        Raises:
            ConfigurationError: If a required variable is missing or invalid
        """
        backend = get_optional_env(f"{ENV_PREFIX}WATERMARK_BACKEND", "file").lower()
        if backend not in WATERMARK_BACKENDS:
            raise ConfigurationError(
                f"{ENV_PREFIX}WATERMARK_BACKEND must be one of {WATERMARK_BACKENDS}, got '{backend}'"
            )

        timeout = get_optional_env(f"{ENV_PREFIX}TARGET_TIMEOUT_SECONDS", "30")
        try:
            timeout_seconds = float(timeout)
        except ValueError:
            raise ConfigurationError(f"{ENV_PREFIX}TARGET_TIMEOUT_SECONDS is not a number: '{timeout}'")

        return cls(
            source_url=get_required_env(f"{ENV_PREFIX}SOURCE_URL"),
            target_url=get_required_env(f"{ENV_PREFIX}TARGET_URL"),
            target_api_key=get_required_env(f"{ENV_PREFIX}TARGET_API_KEY"),
            config_file=get_required_env(f"{ENV_PREFIX}CONFIG_FILE"),
            watermark_backend=backend,
            watermark_path=get_optional_env(f"{ENV_PREFIX}WATERMARK_PATH", "./state/watermark.json"),
            google_cloud_project=get_optional_env("GOOGLE_CLOUD_PROJECT") or None,
            target_timeout_seconds=timeout_seconds,
            log_level=get_optional_env(f"{ENV_PREFIX}LOG_LEVEL", "INFO"),
        )
