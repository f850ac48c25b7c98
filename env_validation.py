"""Environment variable validation and typed accessors."""

import os
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
        "OLLAMA_URL": os.getenv("OLLAMA_URL") or "http://localhost:11434",
    }

    # Dependent modules read these at import time.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "OLLAMA_MODEL": "Model identifier sent to the generate endpoint",
        "LLM_TIMEOUT": "Timeout in seconds for model calls (unbounded when unset)",
        "EVENT_PUBLISH_URL": "Endpoint receiving outbound tutor events",
        "CONTENT_SERVICE_URL": "Service listing the content ids of a course",
        "SEARCH_SERVICE_URL": "Service answering semantic search queries",
    }

    url_vars = {"OLLAMA_URL", "EVENT_PUBLISH_URL", "CONTENT_SERVICE_URL", "SEARCH_SERVICE_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    ranges: Dict[str, tuple[str, str]] = {
        "skill level": ("SKILL_LEVEL_THRESHOLD_LOW", "SKILL_LEVEL_THRESHOLD_HIGH"),
        "correctness": ("CORRECTNESS_LEVEL_HIGH", "CORRECTNESS_LEVEL_MAX"),
    }
    for label, (low_var, high_var) in ranges.items():
        low = get_env_optional_float(low_var)
        high = get_env_optional_float(high_var)
        if low is not None and high is not None and low > high:
            raise EnvironmentError(
                f"Invalid {label} thresholds: {low_var}={low} exceeds {high_var}={high}"
            )

    for var in ("HISTORY_MAX_PAIRS", "HISTORY_MAX_AGE_MINUTES"):
        if get_env_int(var, 1) < 1:
            raise EnvironmentError(f"{var} must be a positive integer")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.error("Invalid integer for %s: '%s'; using default %s", name, raw, default)
        return default


def get_env_float(name: str, default: float) -> float:
    value = get_env_optional_float(name)
    return default if value is None else value


def get_env_optional_float(name: str) -> Optional[float]:
    """Return the float value of ``name`` or ``None`` when unset or invalid."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        return float(raw)
    except ValueError:
        logger.error("Invalid float for %s: '%s'; ignoring", name, raw)
        return None
