import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    page_size_default: int
    page_size_max: int
    purge_after_months: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///featuremap.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        page_size_default=_getenv_int("PAGE_SIZE_DEFAULT", 20),
        page_size_max=_getenv_int("PAGE_SIZE_MAX", 100),
        purge_after_months=_getenv_int("PURGE_AFTER_MONTHS", 6),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "PAGE_SIZE_DEFAULT": s.page_size_default,
        "PAGE_SIZE_MAX": s.page_size_max,
        "PURGE_AFTER_MONTHS": s.purge_after_months,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
    }
