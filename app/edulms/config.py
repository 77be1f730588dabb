import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    max_course_load: int
    default_max_file_size: int

    gateway_env: str
    gateway_consumer_key: str
    gateway_consumer_secret: str
    gateway_shortcode: str
    gateway_passkey: str
    gateway_timeout_seconds: int
    callback_url: str
    callback_token: str
    reconcile_after_minutes: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getint(name: str, default: int) -> int:
    raw = _getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///edulms.db"),
        max_course_load=_getint("MAX_COURSE_LOAD", 6),
        default_max_file_size=_getint("DEFAULT_MAX_FILE_SIZE", 10 * 1024 * 1024),
        gateway_env=_getenv("PAYMENT_GATEWAY_ENV", "sandbox"),
        gateway_consumer_key=_getenv("PAYMENT_GATEWAY_CONSUMER_KEY", ""),
        gateway_consumer_secret=_getenv("PAYMENT_GATEWAY_CONSUMER_SECRET", ""),
        gateway_shortcode=_getenv("PAYMENT_GATEWAY_SHORTCODE", ""),
        gateway_passkey=_getenv("PAYMENT_GATEWAY_PASSKEY", ""),
        gateway_timeout_seconds=_getint("PAYMENT_GATEWAY_TIMEOUT_SECONDS", 15),
        callback_url=_getenv("PAYMENT_CALLBACK_URL", ""),
        callback_token=_getenv("PAYMENT_CALLBACK_TOKEN", ""),
        reconcile_after_minutes=_getint("PAYMENT_RECONCILE_AFTER_MINUTES", 10),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "MAX_COURSE_LOAD": s.max_course_load,
        "DEFAULT_MAX_FILE_SIZE": s.default_max_file_size,
        "PAYMENT_GATEWAY_ENV": s.gateway_env,
        "PAYMENT_GATEWAY_CONSUMER_KEY": s.gateway_consumer_key,
        "PAYMENT_GATEWAY_CONSUMER_SECRET": s.gateway_consumer_secret,
        "PAYMENT_GATEWAY_SHORTCODE": s.gateway_shortcode,
        "PAYMENT_GATEWAY_PASSKEY": s.gateway_passkey,
        "PAYMENT_GATEWAY_TIMEOUT_SECONDS": s.gateway_timeout_seconds,
        "PAYMENT_CALLBACK_URL": s.callback_url,
        "PAYMENT_CALLBACK_TOKEN": s.callback_token,
        "PAYMENT_RECONCILE_AFTER_MINUTES": s.reconcile_after_minutes,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # request body limit (submissions carry storage keys, not file bodies)
        "MAX_CONTENT_LENGTH": 2 * 1024 * 1024,
    }
