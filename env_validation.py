"""Environment variable validation and management."""

import os
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

def validate_environment() -> None:
    """Validate the telemetry service configuration.

    Missing values are replaced by defaults so that dependent modules see
    consistent settings. Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "telemetry.db",
        "DB_TIMEOUT_SECONDS": "5",
        "SESSION_IDLE_TIMEOUT_MINUTES": "30",
        "ROLLUP_CACHE_SIZE": "256",
        "CATALOG_TIMEOUT_SECONDS": "3",
    }

    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "CATALOG_URL": "Remote course catalog base URL",
    }

    positive_numbers = (
        "DB_TIMEOUT_SECONDS",
        "SESSION_IDLE_TIMEOUT_MINUTES",
        "ROLLUP_CACHE_SIZE",
        "CATALOG_TIMEOUT_SECONDS",
    )
    invalid = []
    for var in positive_numbers:
        raw = os.getenv(var, "")
        try:
            if float(raw) <= 0:
                invalid.append(f"{var}={raw}")
        except ValueError:
            invalid.append(f"{var}={raw}")
    if invalid:
        raise EnvironmentError(
            f"Expected positive numbers for: {', '.join(invalid)}"
        )

    catalog_url = os.getenv("CATALOG_URL")
    if catalog_url and not (catalog_url.startswith("http://") or catalog_url.startswith("https://")):
        raise EnvironmentError(f"Invalid URL format for CATALOG_URL: {catalog_url}")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")

def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}

def get_env_int(name: str, default: int) -> int:
    """Get integer value from environment variable, falling back on bad input."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(float(value))
    except ValueError:
        logger.warning("Ignoring non-numeric value for %s: %r", name, value)
        return default

def get_env_float(name: str, default: float) -> float:
    """Get float value from environment variable, falling back on bad input."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Ignoring non-numeric value for %s: %r", name, value)
        return default

def describe_environment(names: Optional[Dict[str, str]] = None) -> Dict[str, Optional[str]]:
    """Return the effective configuration values for logging at start-up."""
    keys = names or {
        "DB_PATH": "",
        "DB_TIMEOUT_SECONDS": "",
        "SESSION_IDLE_TIMEOUT_MINUTES": "",
        "ROLLUP_CACHE_SIZE": "",
        "CATALOG_URL": "",
    }
    return {key: os.getenv(key) for key in keys}
