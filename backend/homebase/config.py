import os
from pathlib import Path


def _read_str_env(name: str, default: str = "") -> str:
    value = os.getenv(name, default).strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        value = value[1:-1].strip()
    return value


def _read_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    return value if value > 0 else default


def _read_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


DEFAULT_DB_PATH = str(Path(__file__).resolve().parents[1] / "data" / "homebase.sqlite3")
DB_PATH = _read_str_env("HOMEBASE_DB_PATH", DEFAULT_DB_PATH) or DEFAULT_DB_PATH

LOG_LEVEL = _read_str_env("LOG_LEVEL", "INFO").upper() or "INFO"

# Auth
AUTH_SECRET = _read_str_env("AUTH_SECRET", "dev-insecure-secret-change-me")
AUTH_TOKEN_TTL_HOURS = _read_int_env("AUTH_TOKEN_TTL_HOURS", 24)
AUTH_REQUIRED = _read_bool_env("AUTH_REQUIRED", False)
AUTH_DEMO_PASSWORD = _read_str_env("AUTH_DEMO_PASSWORD", "homebase-demo")
SERVICE_ROLE_KEY = _read_str_env("SERVICE_ROLE_KEY")

CORS_ORIGINS = _parse_csv_env("CORS_ORIGINS", "*")
TRUSTED_HOSTS = _parse_csv_env("TRUSTED_HOSTS", "*")

# Notification policy
QUIET_HOURS_DEFAULT_START = _read_str_env("QUIET_HOURS_DEFAULT_START", "22:00")
QUIET_HOURS_DEFAULT_END = _read_str_env("QUIET_HOURS_DEFAULT_END", "08:00")
DEFAULT_TIMEZONE = _read_str_env("DEFAULT_TIMEZONE", "UTC") or "UTC"
NOTIFY_DEDUP_MINUTES = _read_int_env("NOTIFY_DEDUP_MINUTES", 60)

# Outbox retry policy
OUTBOX_MAX_ATTEMPTS = _read_int_env("OUTBOX_MAX_ATTEMPTS", 5)
OUTBOX_BASE_BACKOFF_MINUTES = _read_int_env("OUTBOX_BASE_BACKOFF_MINUTES", 5)
OUTBOX_IMMEDIATE_DELIVERY = _read_bool_env("OUTBOX_IMMEDIATE_DELIVERY", True)

# Workflow automation
FOLLOW_UP_DELAY_HOURS = _read_int_env("FOLLOW_UP_DELAY_HOURS", 24)
WORKFLOW_REFETCH_SECONDS = _read_int_env("WORKFLOW_REFETCH_SECONDS", 30)

# Delivery providers
FIREBASE_CREDENTIALS_PATH = _read_str_env("FIREBASE_CREDENTIALS_PATH")
RESEND_API_KEY = _read_str_env("RESEND_API_KEY")
EMAIL_FROM_ADDRESS = _read_str_env("EMAIL_FROM_ADDRESS", "HomeBase <notifications@homebaseproapp.com>")
APP_URL = _read_str_env("APP_URL", "https://homebaseproapp.com").rstrip("/")
