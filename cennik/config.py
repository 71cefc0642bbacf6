"""Centralized configuration for the Cennik app."""

import os
from pathlib import Path

from dotenv import load_dotenv

# Determine project root (parent of 'cennik' directory)
_THIS_DIR = Path(__file__).parent
_PROJECT_ROOT = _THIS_DIR.parent

# Load environment variables from .env file (explicitly specify path)
load_dotenv(dotenv_path=_PROJECT_ROOT / ".env")

# Data - use absolute paths for consistent loading
DATA_DIR = Path(os.getenv("CENNIK_DATA_DIR", str(_PROJECT_ROOT / "data")))
PUBLIC_DIR = Path(os.getenv("CENNIK_PUBLIC_DIR", str(_PROJECT_ROOT / "public")))
DB_PATH = Path(os.getenv("CENNIK_DB_PATH", str(DATA_DIR / "cennik.db")))
LOG_DIR = Path(os.getenv("CENNIK_LOG_DIR", str(_PROJECT_ROOT / "logs")))

PRODUCERS_FILE = "producers.json"
SCHEDULED_CHANGES_FILE = "scheduled-changes.json"
CREDENTIALS_FILE = "credentials.json"

# Flask app settings (allow env overrides; default debug off for safety)
# Render sets PORT dynamically; fall back to FLASK_PORT or 5000 for local.
FLASK_HOST = os.getenv("FLASK_HOST", "0.0.0.0")
FLASK_PORT = int(os.getenv("FLASK_PORT", os.getenv("PORT", "5000")))
FLASK_DEBUG = os.getenv("FLASK_DEBUG", "False").lower() == "true"
SECRET_KEY = os.getenv("SECRET_KEY", "dev-cennik-secret")
MAX_UPLOAD_SIZE = int(os.getenv("MAX_UPLOAD_SIZE", str(20 * 1024 * 1024)))

# Optional site-wide basic auth (disabled when unset)
SITE_USER = os.getenv("SITE_USER")
SITE_PASS = os.getenv("SITE_PASS")

# Mail
SMTP_HOST = os.getenv("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_SECURE = os.getenv("SMTP_SECURE", "false").lower() == "true"
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASS = os.getenv("SMTP_PASS")
SMTP_FROM = os.getenv("SMTP_FROM") or SMTP_USER
NOTIFICATION_EMAIL = os.getenv("NOTIFICATION_EMAIL")
REPORT_EMAIL = os.getenv("REPORT_EMAIL") or NOTIFICATION_EMAIL

# OCR (vision model used when a PDF has no text layer)
OCR_MODEL = os.getenv("OCR_MODEL", "gpt-4o-mini")
OCR_MIN_TEXT_LENGTH = int(os.getenv("OCR_MIN_TEXT_LENGTH", "30"))

# Caches
SEARCH_CACHE_TTL = float(os.getenv("SEARCH_CACHE_TTL", "300"))
SCHEDULED_CACHE_TTL = float(os.getenv("SCHEDULED_CACHE_TTL", "1"))
SEARCH_RESULT_LIMIT = int(os.getenv("SEARCH_RESULT_LIMIT", "5"))

# Price groups of the flat table layout
TABLE_PRICE_GROUPS = [
    "grupa I",
    "grupa II",
    "grupa III",
    "grupa IV",
    "grupa V",
    "grupa VI",
]
