import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    mis_database_url: str
    mis_pool_size: int
    mis_pool_timeout_seconds: int
    mis_fetch_timeout_seconds: float

    list_refresh_enabled: bool
    list_refresh_interval_seconds: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getint(name: str, default: int) -> int:
    raw = _getenv(name)
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///backoffice.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        mis_database_url=_getenv("MIS_DATABASE_URL", ""),
        mis_pool_size=_getint("MIS_POOL_SIZE", 5),
        mis_pool_timeout_seconds=_getint("MIS_POOL_TIMEOUT_SECONDS", 10),
        mis_fetch_timeout_seconds=float(_getint("MIS_FETCH_TIMEOUT_SECONDS", 20)),
        list_refresh_enabled=_getenv("LIST_REFRESH_ENABLED", "0") == "1",
        # Hourly by default; never faster than once a minute.
        list_refresh_interval_seconds=max(60, _getint("LIST_REFRESH_INTERVAL_SECONDS", 3600)),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "MIS_DATABASE_URL": s.mis_database_url,
        "MIS_POOL_SIZE": s.mis_pool_size,
        "MIS_POOL_TIMEOUT_SECONDS": s.mis_pool_timeout_seconds,
        "MIS_FETCH_TIMEOUT_SECONDS": s.mis_fetch_timeout_seconds,
        "LIST_REFRESH_ENABLED": s.list_refresh_enabled,
        "LIST_REFRESH_INTERVAL_SECONDS": s.list_refresh_interval_seconds,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        "MAX_CONTENT_LENGTH": 2 * 1024 * 1024,
    }
