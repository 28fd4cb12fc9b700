"""
Runtime configuration for the delivery backend.

Values come from environment variables (optionally loaded from a ``.env``
file via python-dotenv). Every accessor reads the environment at call time
so tests can override settings with ``patch.dict(os.environ, ...)``.
"""

import logging
import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_PLATFORM_NAME = "The Patterns Place"
DEFAULT_FROM_EMAIL = "noreply@thepatternsplace.com"
DEFAULT_ALLOWED_STORAGE_HOSTS = ["*.supabase.co"]
DEFAULT_FETCH_TIMEOUT_SECONDS = 30.0
DEFAULT_EMAIL_SEND_TIMEOUT_SECONDS = 30.0

# Resend rejects messages whose attachments exceed 40 MB in total
DEFAULT_MAX_DOWNLOAD_BYTES = 40 * 1024 * 1024

DEFAULT_BRAND_MARK_PATH = Path(__file__).resolve().parent / "static" / "brand-mark.png"


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}; using default {default}")
        return default
    if value <= 0:
        logger.warning(f"Ignoring non-positive {name}={raw!r}; using default {default}")
        return default
    return value


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}; using default {default}")
        return default
    if value <= 0:
        logger.warning(f"Ignoring non-positive {name}={raw!r}; using default {default}")
        return default
    return value


def get_allowed_storage_hosts() -> List[str]:
    """
    Host patterns that product files may be fetched from.

    Read from ALLOWED_STORAGE_HOSTS as a comma-separated list, e.g.:
        ALLOWED_STORAGE_HOSTS=*.supabase.co,cdn.thepatternsplace.com

    Defaults to ``["*.supabase.co"]``.
    """
    raw = os.getenv("ALLOWED_STORAGE_HOSTS", "").strip()
    if not raw:
        return list(DEFAULT_ALLOWED_STORAGE_HOSTS)
    return [h.strip().lower() for h in raw.split(",") if h.strip()]


def get_fetch_timeout() -> float:
    return _get_float("FETCH_TIMEOUT_SECONDS", DEFAULT_FETCH_TIMEOUT_SECONDS)


def get_email_send_timeout() -> float:
    return _get_float("EMAIL_SEND_TIMEOUT_SECONDS", DEFAULT_EMAIL_SEND_TIMEOUT_SECONDS)


def get_max_download_bytes() -> int:
    return _get_int("MAX_DOWNLOAD_BYTES", DEFAULT_MAX_DOWNLOAD_BYTES)


def get_brand_mark_path() -> Path:
    raw = os.getenv("BRAND_MARK_PATH", "").strip()
    return Path(raw) if raw else DEFAULT_BRAND_MARK_PATH


def get_platform_name() -> str:
    return os.getenv("PLATFORM_NAME", "").strip() or DEFAULT_PLATFORM_NAME


def get_resend_api_key() -> str:
    return os.getenv("RESEND_API_KEY", "").strip()


def get_sender_address() -> str:
    """Return the From header, e.g. ``The Patterns Place <noreply@...>``."""
    from_email = os.getenv("RESEND_FROM_EMAIL", "").strip() or DEFAULT_FROM_EMAIL
    from_name = os.getenv("RESEND_FROM_NAME", "").strip() or get_platform_name()
    return f"{from_name} <{from_email}>"


def get_delivery_webhook_secret() -> str:
    return os.getenv("DELIVERY_WEBHOOK_SECRET", "").strip()
