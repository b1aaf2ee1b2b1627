# backend/config.py
import os
from dotenv import load_dotenv

BASE_DIR = os.path.abspath(os.path.dirname(__file__))
load_dotenv(os.path.join(BASE_DIR, ".env"))

INSTANCE_DIR = os.path.join(BASE_DIR, "instance")
os.makedirs(INSTANCE_DIR, exist_ok=True)

def _env(key: str, default=None):
    v = os.getenv(key)
    if v is not None:
        v = v.strip()
    return v if v not in (None, "", "None") else default

def _env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v in (None, "", "None"):
        return default
    return str(v).strip().lower() in ("1", "true", "t", "yes", "y", "on")

def _env_list(key: str, default: str = "") -> list[str]:
    raw = _env(key, default) or ""
    return [part.strip() for part in raw.split(",") if part.strip()]

def _resolve_sqlite_uri(db_url: str | None) -> str:
    if not db_url:
        db_path = os.path.join(INSTANCE_DIR, "database.db")
        os.makedirs(os.path.dirname(db_path), exist_ok=True)
        return "sqlite:///" + db_path.replace("\\", "/")

    if db_url.startswith("sqlite:///"):
        raw_path = db_url.replace("sqlite:///", "", 1)
        if not os.path.isabs(raw_path):
            raw_path = os.path.join(BASE_DIR, raw_path)
        db_path = os.path.normpath(raw_path)
        os.makedirs(os.path.dirname(db_path), exist_ok=True)
        return "sqlite:///" + db_path.replace("\\", "/")

    return db_url

class Config:
    SECRET_KEY = _env("SECRET_KEY", "dev-please-change-me")

    SQLALCHEMY_DATABASE_URI = _resolve_sqlite_uri(_env("DATABASE_URL"))
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JSON_SORT_KEYS = False

    CORS_ORIGINS = _env_list("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173")

    MAIL_SERVER = _env("MAIL_SERVER", "smtp.gmail.com")
    MAIL_PORT = int(_env("MAIL_PORT", 465))
    MAIL_USE_SSL = _env_bool("MAIL_USE_SSL", True)
    MAIL_USE_TLS = _env_bool("MAIL_USE_TLS", False)
    MAIL_USERNAME = _env("MAIL_USERNAME")
    MAIL_PASSWORD = _env("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = _env("MAIL_DEFAULT_SENDER", _env("MAIL_USERNAME"))
    MAIL_SUPPRESS_SEND = _env_bool("MAIL_SUPPRESS_SEND", False)
    MAIL_DEBUG = _env_bool("MAIL_DEBUG", False)

    # operations staff copied on new orders and confirmed payments
    ORDER_NOTIFICATION_EMAILS = _env_list("ORDER_NOTIFICATION_EMAILS")
    NOTIFICATION_MAX_ATTEMPTS = int(_env("NOTIFICATION_MAX_ATTEMPTS", 5))

    # Safaricom Daraja (Lipa Na M-Pesa Online)
    MPESA_ENVIRONMENT = _env("MPESA_ENVIRONMENT", _env("MPESA_ENV", "sandbox"))
    MPESA_BASE_URL = _env("MPESA_BASE_URL")
    MPESA_CONSUMER_KEY = _env("MPESA_CONSUMER_KEY", "")
    MPESA_CONSUMER_SECRET = _env("MPESA_CONSUMER_SECRET", "")
    MPESA_BUSINESS_SHORT_CODE = _env("MPESA_BUSINESS_SHORT_CODE", "")
    MPESA_PASSKEY = _env("MPESA_PASSKEY", "")
    MPESA_CALLBACK_URL = _env("MPESA_CALLBACK_URL", "")
    MPESA_TOKEN_TIMEOUT = float(_env("MPESA_TOKEN_TIMEOUT", 10))
    MPESA_REQUEST_TIMEOUT = float(_env("MPESA_REQUEST_TIMEOUT", 30))
