"""Configuration loading and validation for FocusGate."""

import logging
import os
from pathlib import Path
from typing import Any, Optional

from platformdirs import user_config_dir, user_data_dir

from .common import APP_NAME
from .exceptions import ConfigurationError

# =============================================================================
# CONSTANTS
# =============================================================================

DEFAULT_PENDING_GRANT_SECONDS = 15
DEFAULT_DEBOUNCE_MS = 120
DEFAULT_ORACLE_RETRIES = 0
DEFAULT_PAUSE_MINUTES = 30

# Upper bounds keep obviously wrong values from slipping through
MAX_PENDING_GRANT_SECONDS = 300
MAX_DEBOUNCE_MS = 10_000
MAX_ORACLE_RETRIES = 10

# State file names inside the data directory
SYNC_STATE_FILE = "sync.json"
LOCAL_STATE_FILE = "local.json"
GRANTS_FILE = "grants.json"
RULES_FILE = "rules.json"
PID_FILE = "focusgate.pid"

logger = logging.getLogger(__name__)


# =============================================================================
# XDG DIRECTORY FUNCTIONS
# =============================================================================


def get_config_dir(override: Optional[Path] = None) -> Path:
    """
    Get the configuration directory path.

    Resolution order:
    1. Override path if provided
    2. Current working directory if a .env exists there
    3. XDG config directory (~/.config/focusgate on Linux,
       ~/Library/Application Support/focusgate on macOS)

    Args:
        override: Optional path to use instead of auto-detection

    Returns:
        Path to the configuration directory
    """
    if override:
        return Path(override)

    cwd = Path.cwd()
    if (cwd / ".env").exists():
        return cwd

    return Path(user_config_dir(APP_NAME))


def get_data_dir() -> Path:
    """
    Get the default data directory for state files and logs.

    Returns:
        Path to the data directory (~/.local/share/focusgate on Linux,
        ~/Library/Application Support/focusgate on macOS)
    """
    return Path(user_data_dir(APP_NAME))


# =============================================================================
# PARSING HELPERS
# =============================================================================


def parse_env_value(value: str) -> str:
    """
    Parse .env value, handling quotes and whitespace.

    Args:
        value: Raw value from .env file

    Returns:
        Cleaned value with quotes removed
    """
    value = value.strip()
    if len(value) >= 2:
        if (value.startswith('"') and value.endswith('"')) or (
            value.startswith("'") and value.endswith("'")
        ):
            value = value[1:-1]
    return value


def safe_int(
    value: Optional[str], default: int, name: str = "value", maximum: Optional[int] = None
) -> int:
    """
    Safely convert a string to int with validation.

    Args:
        value: String value to convert (can be None)
        default: Default value if value is None or empty
        name: Name of the value for error messages
        maximum: Optional inclusive upper bound

    Returns:
        Converted integer or default value

    Raises:
        ConfigurationError: If value is not a valid non-negative integer
    """
    if value is None or value.strip() == "":
        return default

    try:
        result = int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a valid integer, got: {value}")

    if result < 0:
        raise ConfigurationError(f"{name} must be a positive integer, got: {value}")
    if maximum is not None and result > maximum:
        raise ConfigurationError(f"{name} must be at most {maximum}, got: {value}")
    return result


def load_env_file(env_file: Path) -> None:
    """
    Load KEY=value pairs from a .env file into os.environ.

    Variables already present in the environment are left untouched.

    Args:
        env_file: Path to the .env file
    """
    if not env_file.exists():
        return

    with open(env_file, encoding="utf-8-sig") as f:  # utf-8-sig handles BOM
        for line_num, line in enumerate(f, 1):
            line = line.strip()

            # Skip empty lines and comments
            if not line or line.startswith("#"):
                continue

            if "=" not in line:
                logger.warning(f".env line {line_num}: missing '=' separator, skipping")
                continue

            key, value = line.split("=", 1)
            key = key.strip()

            if not key:
                logger.warning(f".env line {line_num}: empty key, skipping")
                continue

            os.environ.setdefault(key, parse_env_value(value))


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================


def load_config(config_dir: Optional[Path] = None) -> dict[str, Any]:
    """
    Load configuration from .env file and environment variables.

    Args:
        config_dir: Optional directory containing the .env file.
                   If None, the directory is auto-detected.

    Returns:
        Configuration dictionary with all settings

    Raises:
        ConfigurationError: If a configured value is invalid
    """
    config_dir = get_config_dir(config_dir)
    load_env_file(config_dir / ".env")

    data_dir_value = os.getenv("FOCUSGATE_DATA_DIR")
    data_dir = Path(data_dir_value).expanduser() if data_dir_value else get_data_dir()

    if data_dir.exists() and not data_dir.is_dir():
        raise ConfigurationError(f"FOCUSGATE_DATA_DIR is not a directory: {data_dir}")

    pending_seconds = safe_int(
        os.getenv("FOCUSGATE_PENDING_GRANT_SECONDS"),
        DEFAULT_PENDING_GRANT_SECONDS,
        "FOCUSGATE_PENDING_GRANT_SECONDS",
        maximum=MAX_PENDING_GRANT_SECONDS,
    )
    if pending_seconds == 0:
        raise ConfigurationError("FOCUSGATE_PENDING_GRANT_SECONDS must be greater than zero")

    config: dict[str, Any] = {
        "config_dir": str(config_dir),
        "data_dir": data_dir,
        "pending_grant_ms": pending_seconds * 1000,
        "debounce_ms": safe_int(
            os.getenv("FOCUSGATE_DEBOUNCE_MS"),
            DEFAULT_DEBOUNCE_MS,
            "FOCUSGATE_DEBOUNCE_MS",
            maximum=MAX_DEBOUNCE_MS,
        ),
        "oracle_retries": safe_int(
            os.getenv("FOCUSGATE_ORACLE_RETRIES"),
            DEFAULT_ORACLE_RETRIES,
            "FOCUSGATE_ORACLE_RETRIES",
            maximum=MAX_ORACLE_RETRIES,
        ),
        "default_pause_minutes": safe_int(
            os.getenv("FOCUSGATE_DEFAULT_PAUSE_MINUTES"),
            DEFAULT_PAUSE_MINUTES,
            "FOCUSGATE_DEFAULT_PAUSE_MINUTES",
        ),
    }

    if config["default_pause_minutes"] == 0:
        raise ConfigurationError("FOCUSGATE_DEFAULT_PAUSE_MINUTES must be greater than zero")

    return config
