import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    app_base_url: str

    storage_backend: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    default_commission_rate: float
    min_withdrawal_amount: float
    notify_webhook_url: str
    automation_api_key: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getfloat(name: str, default: float) -> float:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///saudemax.db"),
        app_base_url=_getenv("APP_BASE_URL", "http://localhost:5000").rstrip("/"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        default_commission_rate=_getfloat("DEFAULT_COMMISSION_RATE", 10.0),
        min_withdrawal_amount=_getfloat("MIN_WITHDRAWAL_AMOUNT", 50.0),
        notify_webhook_url=_getenv("NOTIFY_WEBHOOK_URL", ""),
        automation_api_key=_getenv("AUTOMATION_API_KEY", ""),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "APP_BASE_URL": s.app_base_url,
        "STORAGE_BACKEND": s.storage_backend,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        # affiliate program
        "DEFAULT_COMMISSION_RATE": s.default_commission_rate,
        "MIN_WITHDRAWAL_AMOUNT": s.min_withdrawal_amount,
        "NOTIFY_WEBHOOK_URL": s.notify_webhook_url,
        "AUTOMATION_API_KEY": s.automation_api_key,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # member document uploads (10MB)
        "MAX_CONTENT_LENGTH": 10 * 1024 * 1024,
    }
