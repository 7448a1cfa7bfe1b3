"""Environment variable validation and management."""

import os
import logging
from pathlib import Path
from typing import Dict

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

def validate_environment() -> None:
    """Validate the logic tool configuration.

    Raises EnvironmentError if validation fails.
    """
    db_path = os.getenv("DB_PATH") or "data.db"
    defaults = {
        "DB_PATH": db_path,
        "LOGIC_LOCK_DIR": os.getenv("LOGIC_LOCK_DIR") or str(Path(db_path).resolve().parent),
        "LOGIC_DB_MAX_CONNECTIONS": os.getenv("LOGIC_DB_MAX_CONNECTIONS") or "10",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars: Dict[str, str] = {
        "LOGIC_MODULE_CATALOG": "JSON/YAML file with module definitions loaded at startup",
    }

    raw_connections = os.environ["LOGIC_DB_MAX_CONNECTIONS"]
    try:
        connections = int(raw_connections)
    except ValueError as exc:
        raise EnvironmentError(f"LOGIC_DB_MAX_CONNECTIONS must be an integer: {raw_connections}") from exc
    if connections < 1:
        raise EnvironmentError("LOGIC_DB_MAX_CONNECTIONS must be at least 1")

    lock_dir = Path(os.environ["LOGIC_LOCK_DIR"])
    try:
        lock_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise EnvironmentError(f"Cannot create lock directory {lock_dir}: {exc}") from exc
    if not os.access(lock_dir, os.W_OK):
        raise EnvironmentError(f"Lock directory is not writable: {lock_dir}")

    catalog = os.getenv("LOGIC_MODULE_CATALOG")
    if catalog and not Path(catalog).exists():
        raise EnvironmentError(f"Module catalog not found: {catalog}")

    # Log optional variables status
    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")

    if get_env_bool("LOGIC_ALLOW_REVIEW_EDITS"):
        logger.warning("LOGIC_ALLOW_REVIEW_EDITS is on; submitted attempts accept further input")

def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}
