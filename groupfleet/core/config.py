# groupfleet/core/config.py
"""
Application configuration - loads from environment variables.
Single source of truth for all settings.
"""
import os
from typing import Optional
from urllib.parse import quote_plus
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables FIRST
BASE_DIR = Path(__file__).resolve().parent.parent.parent
env_path = BASE_DIR / '.env'
load_dotenv(dotenv_path=env_path)


def _bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() not in ("0", "false", "no")


# ────────────────────────────────────────────
# Messaging Gateway
# ────────────────────────────────────────────
GATEWAY_BASE_URL: str = os.getenv("GATEWAY_BASE_URL", "http://localhost:8080")
GATEWAY_API_TOKEN: Optional[str] = os.getenv("GATEWAY_API_TOKEN")
GATEWAY_TIMEOUT: float = float(os.getenv("GATEWAY_TIMEOUT", "30"))

INVITE_LINK_PREFIX: str = os.getenv("INVITE_LINK_PREFIX", "https://chat.whatsapp.com/")
WELCOME_MESSAGE_TEMPLATE: str = os.getenv(
    "WELCOME_MESSAGE_TEMPLATE",
    "🤖 *Group created automatically*\n\n"
    "Group \"{group_name}\" was created by {company_name}.\n\n"
    "This group is part of an automatically managed series and is monitored "
    "so a new group is opened when it gets full."
)
COMPANY_NAME: str = os.getenv("COMPANY_NAME", "GroupFleet")

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

# ────────────────────────────────────────────
# Sync Engine tuning
# ────────────────────────────────────────────
SYNC_BATCH_SIZE: int = int(os.getenv("SYNC_BATCH_SIZE", "5"))
SYNC_BATCH_DELAY: float = float(os.getenv("SYNC_BATCH_DELAY", "1.0"))
SYNC_MAX_RETRIES: int = int(os.getenv("SYNC_MAX_RETRIES", "3"))
SYNC_RETRY_DELAY: float = float(os.getenv("SYNC_RETRY_DELAY", "1.0"))
SYNC_RATE_LIMIT_BACKOFF: float = float(os.getenv("SYNC_RATE_LIMIT_BACKOFF", "5.0"))

# ────────────────────────────────────────────
# Monitoring
# ────────────────────────────────────────────
MONITORING_ENABLED: bool = _bool("MONITORING_ENABLED", "true")
MONITOR_INTERVAL_SECONDS: float = float(os.getenv("MONITOR_INTERVAL_SECONDS", "300"))
CLEANUP_MAX_AGE_DAYS: int = int(os.getenv("CLEANUP_MAX_AGE_DAYS", "30"))
CLEANUP_MAX_PARTICIPANTS: int = int(os.getenv("CLEANUP_MAX_PARTICIPANTS", "5"))
PREMATURE_RETIREMENT_PERCENTAGE: float = float(os.getenv("PREMATURE_RETIREMENT_PERCENTAGE", "90"))

# ────────────────────────────────────────────
# Series defaults
# ────────────────────────────────────────────
DEFAULT_MAX_PARTICIPANTS: int = int(os.getenv("DEFAULT_MAX_PARTICIPANTS", "256"))
DEFAULT_THRESHOLD_PERCENTAGE: float = float(os.getenv("DEFAULT_THRESHOLD_PERCENTAGE", "95"))
MIN_MAX_PARTICIPANTS = 10
MAX_MAX_PARTICIPANTS = 1024
MIN_THRESHOLD_PERCENTAGE = 50
MAX_THRESHOLD_PERCENTAGE = 99

# ────────────────────────────────────────────
# Database Configuration
# ────────────────────────────────────────────
DB_USER = os.getenv("DB_USER", "postgres")
DB_PASSWORD = os.getenv("DB_PASSWORD", "")
DB_HOST = os.getenv("DB_HOST", "localhost")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "groupfleet_db")
DATABASE_URL = os.getenv("DATABASE_URL")

if not DATABASE_URL:
    encoded_password = quote_plus(DB_PASSWORD)
    DATABASE_URL = f"postgresql://{DB_USER}:{encoded_password}@{DB_HOST}:{DB_PORT}/{DB_NAME}"

# ────────────────────────────────────────────
# JWT Configuration
# ────────────────────────────────────────────
JWT_SECRET_KEY: str = os.getenv("JWT_SECRET_KEY", "")
JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")

if not JWT_SECRET_KEY:
    import warnings
    warnings.warn("JWT_SECRET_KEY not set! Only X-Tenant-Id header auth will work.")
