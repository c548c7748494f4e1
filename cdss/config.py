from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "y")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


# Absolute paths for the database, uploads and bundled region rules
BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
DATA_DIR = os.path.join(BASE_DIR, "data")
DB_PATH = os.path.abspath(os.getenv("CDSS_DB_PATH", os.path.join(DATA_DIR, "cdss.db")))
UPLOADS_DIR = os.path.abspath(os.getenv("CDSS_UPLOADS_DIR", os.path.join(DATA_DIR, "uploads")))
RULES_DIR = os.path.join(DATA_DIR, "rules")

AUTH_SECRET = os.getenv("AUTH_SECRET", "cdss-dev-secret-change-me")
AUTH_COOKIE = "cdss_token"
SESSION_MAX_AGE_DAYS = _env_int("SESSION_MAX_AGE_DAYS", 7)

OTP_EXPIRATION_TIME = _env_int("OTP_EXPIRATION_TIME", 5)
OTP_RATE_LIMIT_SECONDS = _env_int("OTP_RATE_LIMIT_SECONDS", 60)
OTP_MAX_ATTEMPTS = _env_int("OTP_MAX_ATTEMPTS", 5)

EMAIL = os.getenv("EMAIL", "")
EMAIL_APP_PWD = os.getenv("EMAIL_APP_PWD", "")
SMTP_HOST = os.getenv("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = _env_int("SMTP_PORT", 587)
MAIL_ENABLED = _env_flag("MAIL_ENABLED", "0")

MISTRAL_API_KEY = os.getenv("MISTRAL_API_KEY", "")
AI_BASE_URL = os.getenv("AI_BASE_URL", "https://api.mistral.ai/v1")
AI_MODEL = os.getenv("AI_MODEL", "mistral-medium")
AI_TIMEOUT_SECONDS = _env_int("AI_TIMEOUT_SECONDS", 60)

MAX_UPLOAD_MB = _env_int("MAX_UPLOAD_MB", 10)
ALLOWED_UPLOAD_TYPES = (
    "image/png",
    "image/jpeg",
    "image/webp",
    "image/gif",
    "application/pdf",
)

DEMO_DEFAULT_PASSWORD = os.getenv("DEMO_DEFAULT_PASSWORD", "Demo@1234")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

_LOGGING_READY = False


def setup_logging() -> None:
    global _LOGGING_READY
    if _LOGGING_READY:
        return
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    _LOGGING_READY = True
