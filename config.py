"""
Configuration for the Razorpay → FileMaker fee bridge.

Why env vars instead of config files: the FileMaker password and the
Razorpay webhook secret must never be committed, and the hosting platform
injects environment variables at deploy time.
"""

from __future__ import annotations

import os
import logging
from dataclasses import dataclass
from typing import Union

logger = logging.getLogger(__name__)

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


def parse_origins(raw: str) -> list[str]:
    """Split the comma-separated ALLOWED_ORIGINS value used for CORS."""
    return [o.strip() for o in raw.split(",") if o.strip()]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    raise SystemExit(f"{name} must be a boolean (true/false), got {raw!r}")


def _env_number(name: str, default: str, kind: type = int):
    raw = os.environ.get(name, default)
    try:
        return kind(raw)
    except ValueError:
        raise SystemExit(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    """
    Application settings loaded exclusively from environment variables.

    FM_PASSWORD and the webhook secrets are validated here but read at use
    time through SecretsManager, never passed around as attributes.
    """

    FM_HOST: str = ""
    FM_FILE: str = ""
    FM_USER: str = ""
    FM_PASSWORD: str = ""
    FM_LAYOUT: str = "razor"
    FM_TIMEOUT_SECONDS: float = 15.0
    FM_VERIFY_TLS: bool = True
    # Path to a CA bundle for FileMaker servers with a private certificate.
    FM_CA_BUNDLE: str = ""
    RAZORPAY_WEBHOOK_SECRET: str = ""
    # Accepted alongside the current secret while the dashboard is being updated.
    RAZORPAY_WEBHOOK_SECRET_PREVIOUS: str = ""
    DATASET_URL: str = ""
    DATASET_QUERY: str = "SELECT * FROM students"
    DATASET_RELOAD_SECONDS: int = 3600
    DATASET_NAME_COLUMN: str = "student_name"
    DATASET_ADMISSION_COLUMN: str = "admission_number"
    DATASET_SCHOOL_COLUMN: str = "school"
    DEFAULT_SCHOOL: str = "Janakpuri"
    SEARCH_MAX_RESULTS: int = 50
    LOG_LEVEL: str = "INFO"

    @property
    def filemaker_tls_verify(self) -> Union[bool, str]:
        """Value for httpx's ``verify``: a CA bundle path, or a bool."""
        if self.FM_CA_BUNDLE:
            return self.FM_CA_BUNDLE
        return self.FM_VERIFY_TLS


def load_settings() -> Settings:
    """
    Load settings from environment variables ONLY.

    Fails fast when any FileMaker setting is missing: without them no
    payment can be recorded. A missing webhook secret is not fatal (search
    still works) but every webhook will then be answered "invalid-signature".
    """
    settings = Settings(
        FM_HOST=os.environ.get("FM_HOST", "").strip(),
        FM_FILE=os.environ.get("FM_FILE", "").strip(),
        FM_USER=os.environ.get("FM_USER", ""),
        FM_PASSWORD=os.environ.get("FM_PASSWORD", ""),
        FM_LAYOUT=os.environ.get("FM_LAYOUT", "razor"),
        FM_TIMEOUT_SECONDS=_env_number("FM_TIMEOUT_SECONDS", "15", float),
        FM_VERIFY_TLS=_env_bool("FM_VERIFY_TLS", True),
        FM_CA_BUNDLE=os.environ.get("FM_CA_BUNDLE", ""),
        RAZORPAY_WEBHOOK_SECRET=os.environ.get("RAZORPAY_WEBHOOK_SECRET", ""),
        RAZORPAY_WEBHOOK_SECRET_PREVIOUS=os.environ.get("RAZORPAY_WEBHOOK_SECRET_PREVIOUS", ""),
        DATASET_URL=os.environ.get("DATASET_URL", ""),
        DATASET_QUERY=os.environ.get("DATASET_QUERY", "SELECT * FROM students"),
        DATASET_RELOAD_SECONDS=_env_number("DATASET_RELOAD_SECONDS", "3600"),
        DATASET_NAME_COLUMN=os.environ.get("DATASET_NAME_COLUMN", "student_name"),
        DATASET_ADMISSION_COLUMN=os.environ.get("DATASET_ADMISSION_COLUMN", "admission_number"),
        DATASET_SCHOOL_COLUMN=os.environ.get("DATASET_SCHOOL_COLUMN", "school"),
        DEFAULT_SCHOOL=os.environ.get("DEFAULT_SCHOOL", "Janakpuri"),
        SEARCH_MAX_RESULTS=_env_number("SEARCH_MAX_RESULTS", "50"),
        LOG_LEVEL=os.environ.get("LOG_LEVEL", "INFO"),
    )

    # Fail-fast validation: check presence but NEVER log the actual value
    missing = [
        name for name in ("FM_HOST", "FM_FILE", "FM_USER", "FM_PASSWORD")
        if not getattr(settings, name)
    ]
    if missing:
        msg = f"Missing required environment variables: {', '.join(missing)}."
        logger.critical(msg)
        raise SystemExit(msg)

    if not settings.RAZORPAY_WEBHOOK_SECRET:
        logger.error("RAZORPAY_WEBHOOK_SECRET is not set; every webhook will fail verification")
    if not settings.FM_HOST.startswith("https://"):
        logger.warning("FM_HOST is not an https:// URL; FileMaker credentials travel in clear text")
    if not settings.FM_VERIFY_TLS and not settings.FM_CA_BUNDLE:
        logger.warning("FM_VERIFY_TLS is disabled; FileMaker certificates are NOT being checked")

    logger.info(
        "Settings loaded. FileMaker host=%s file=%s layout=%s, webhook secret: %s",
        settings.FM_HOST, settings.FM_FILE, settings.FM_LAYOUT,
        "[SET]" if settings.RAZORPAY_WEBHOOK_SECRET else "[MISSING]",
    )
    return settings
