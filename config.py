"""
Configuration
=============
Environment loading for the food court API.

Values come from the process environment, optionally seeded from a `.env`
file. Everything is read once at import time into module-level constants.
"""

import os
import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid."""
    pass


def load_environment():
    """Load variables from .env if present. Safe to call multiple times."""
    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment from .env file")


load_environment()


def _get_optional_env(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _get_int_env(key: str, default: int) -> int:
    """
    Get integer environment variable.

    Raises:
        ConfigurationError: If value is not a valid integer
    """
    value = os.getenv(key)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"Invalid integer value for {key}: {value}")


def _get_bool_env(key: str, default: bool = False) -> bool:
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on", "enabled")


# Database
DATABASE_URL = _get_optional_env("DATABASE_URL")
DATABASE_NAME = _get_optional_env("DATABASE_NAME")

# Security/JWT
JWT_SECRET = _get_optional_env("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
JWT_EXPIRE_DAYS = _get_int_env("JWT_EXPIRE_DAYS", 7)
BCRYPT_ROUNDS = _get_int_env("BCRYPT_ROUNDS", 12)

# Object storage
PUBLIC_BASE_URL = _get_optional_env("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
MAX_IMAGE_SIZE = _get_int_env("MAX_IMAGE_SIZE", 5 * 1024 * 1024)

# Fees (Rupiah)
APP_FEE = _get_int_env("APP_FEE", 1000)
DELIVERY_FEE = _get_int_env("DELIVERY_FEE", 5000)

# Order lifecycle
COMPLETE_FROM_READY = _get_bool_env("COMPLETE_FROM_READY", False)
CHECKOUT_CLAIM_TTL_SECONDS = _get_int_env("CHECKOUT_CLAIM_TTL_SECONDS", 60)
CART_WRITE_RETRIES = _get_int_env("CART_WRITE_RETRIES", 5)

# Server
LOG_LEVEL = (_get_optional_env("LOG_LEVEL", "INFO") or "INFO").upper()
PORT = _get_int_env("PORT", 8000)

if APP_FEE < 0 or DELIVERY_FEE < 0:
    raise ConfigurationError("APP_FEE and DELIVERY_FEE must not be negative")

if CART_WRITE_RETRIES < 1:
    raise ConfigurationError("CART_WRITE_RETRIES must be at least 1")
