"""Configuration loader.

Reads environment variables and `.env` to configure the service.
"""

from __future__ import annotations

import os
from typing import List, Optional
from pathlib import Path

from dotenv import load_dotenv

# Load variables from a .env file if present (project root).
load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env")


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes")


def _parse_int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value is not None else default
    except ValueError:
        return default


def _parse_float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value is not None else default
    except ValueError:
        return default


def _get_list(name: str) -> list[str]:
    raw = _get_env(name, "") or ""
    return [s.strip() for s in raw.split(",") if s.strip()]


# ---- Check scheduling --------------------------------------------------------

# Minutes between check runs. A tracked item is due once its last check is
# older than this.
CHECK_INTERVAL_MINUTES: int = _parse_int(_get_env("CHECK_INTERVAL_MINUTES"), 30)

# Size of the worker pool; each worker runs one product pipeline at a time.
MAX_CONCURRENT_FETCHES: int = _parse_int(_get_env("MAX_CONCURRENT_FETCHES"), 3)

# Distinct product URLs picked up per run, oldest-checked first.
MAX_PRODUCTS_PER_RUN: int = _parse_int(_get_env("MAX_PRODUCTS_PER_RUN"), 50)

# Check-run rows kept per product; older rows are pruned after each run.
CHECK_RUN_RETENTION: int = _parse_int(_get_env("CHECK_RUN_RETENTION"), 100)

# ---- Fetching ----------------------------------------------------------------

FETCH_TIMEOUT_SECONDS: float = _parse_float(_get_env("FETCH_TIMEOUT_SECONDS"), 15.0)

# Extra attempts after a timeout or transport error (0 disables retrying).
FETCH_RETRIES: int = _parse_int(_get_env("FETCH_RETRIES"), 2)

# Pages shorter than this are treated as a challenge/placeholder page.
MIN_HTML_LENGTH: int = _parse_int(_get_env("MIN_HTML_LENGTH"), 5000)

MAX_HTML_BYTES: int = _parse_int(_get_env("MAX_HTML_BYTES"), 10 * 1024 * 1024)

# Headless Chromium fallback (requires `python -m playwright install chromium`).
BROWSER_ENABLED: bool = _parse_bool(_get_env("BROWSER_ENABLED", "true"), True)
BROWSER_TIMEOUT_MS: int = _parse_int(_get_env("BROWSER_TIMEOUT_MS"), 30000)

# ---- Extraction / ingestion --------------------------------------------------

# Cap on variant combinations kept per product.
MAX_VARIANTS: int = _parse_int(_get_env("MAX_VARIANTS"), 100)

MAX_IMAGES: int = _parse_int(_get_env("MAX_IMAGES"), 10)

# Attempts for a per-item transaction that hit a locked/busy database.
INGEST_RETRIES: int = _parse_int(_get_env("INGEST_RETRIES"), 3)

# Base delay (seconds) for exponential back-off between retries.
RETRY_BACKOFF_SECONDS: float = _parse_float(_get_env("RETRY_BACKOFF_SECONDS"), 0.5)

# Path to SQLite database.
SQLITE_DB_PATH: str = _get_env("SQLITE_DB_PATH", "monitor.db")

# Logging level: DEBUG, INFO, WARNING, ERROR.
LOG_LEVEL: str = _get_env("LOG_LEVEL", "INFO")

# ---- HTTP API ----------------------------------------------------------------

API_ENABLED: bool = _parse_bool(_get_env("API_ENABLED", "true"), True)
API_HOST: str = _get_env("API_HOST", "127.0.0.1")
API_PORT: int = _parse_int(_get_env("API_PORT"), 8080)

# ---- Delivery ----------------------------------------------------------------

# Seconds between delivery passes over unsent notifications.
DELIVERY_INTERVAL_SECONDS: int = _parse_int(_get_env("DELIVERY_INTERVAL_SECONDS"), 60)

# Discord webhook URL. Discord delivery is skipped when unset.
DISCORD_WEBHOOK_URL: Optional[str] = _get_env("DISCORD_WEBHOOK_URL")

# ---- Email notifications -----------------------------------------------------

EMAIL_ENABLED: bool = _parse_bool(_get_env("EMAIL_ENABLED", "false"), False)
EMAIL_SMTP_HOST: str = _get_env("EMAIL_SMTP_HOST", "smtp.gmail.com")
EMAIL_SMTP_PORT: int = _parse_int(_get_env("EMAIL_SMTP_PORT"), 587)  # 587 (TLS) or 465 (SSL)
EMAIL_USE_TLS: bool = _parse_bool(_get_env("EMAIL_USE_TLS", "true"), True)  # if False and port=465, SSL will be used
EMAIL_USERNAME: str | None = _get_env("EMAIL_USERNAME")
EMAIL_PASSWORD: str | None = _get_env("EMAIL_PASSWORD")
EMAIL_FROM: str | None = _get_env("EMAIL_FROM")
EMAIL_TO: List[str] = _get_list("EMAIL_TO")  # comma-separated
EMAIL_SUBJECT_PREFIX: str = _get_env("EMAIL_SUBJECT_PREFIX", "[Restock]")

# ---- Validation --------------------------------------------------------------

def validate() -> None:
    """Validate configuration values that would break the service at runtime."""
    if CHECK_INTERVAL_MINUTES <= 0:
        raise ValueError("CHECK_INTERVAL_MINUTES must be positive")
    if MAX_CONCURRENT_FETCHES <= 0:
        raise ValueError("MAX_CONCURRENT_FETCHES must be positive")
    if MAX_VARIANTS <= 0:
        raise ValueError("MAX_VARIANTS must be positive")
    if FETCH_TIMEOUT_SECONDS <= 0:
        raise ValueError("FETCH_TIMEOUT_SECONDS must be positive")
    if FETCH_RETRIES < 0 or INGEST_RETRIES < 1:
        raise ValueError("FETCH_RETRIES must be >= 0 and INGEST_RETRIES >= 1")
    if EMAIL_ENABLED and not EMAIL_TO:
        raise ValueError("EMAIL_ENABLED is set but EMAIL_TO is empty")


__all__ = [
    # Scheduling
    "CHECK_INTERVAL_MINUTES",
    "MAX_CONCURRENT_FETCHES",
    "MAX_PRODUCTS_PER_RUN",
    "CHECK_RUN_RETENTION",
    # Fetching
    "FETCH_TIMEOUT_SECONDS",
    "FETCH_RETRIES",
    "MIN_HTML_LENGTH",
    "MAX_HTML_BYTES",
    "BROWSER_ENABLED",
    "BROWSER_TIMEOUT_MS",
    # Extraction / ingestion
    "MAX_VARIANTS",
    "MAX_IMAGES",
    "INGEST_RETRIES",
    "RETRY_BACKOFF_SECONDS",
    "SQLITE_DB_PATH",
    "LOG_LEVEL",
    # API
    "API_ENABLED",
    "API_HOST",
    "API_PORT",
    # Delivery
    "DELIVERY_INTERVAL_SECONDS",
    "DISCORD_WEBHOOK_URL",
    "EMAIL_ENABLED", "EMAIL_SMTP_HOST", "EMAIL_SMTP_PORT", "EMAIL_USE_TLS",
    "EMAIL_USERNAME", "EMAIL_PASSWORD", "EMAIL_FROM", "EMAIL_TO", "EMAIL_SUBJECT_PREFIX",
    # Helpers
    "validate",
]
