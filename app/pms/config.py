import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    lifecycle_max_attempts: int
    store_retry_attempts: int
    store_retry_backoff_seconds: float
    notification_max_attempts: int
    notification_list_limit: int
    notification_workers: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from None


def _getenv_float(name: str, default: float) -> float:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return max(0.0, float(raw))
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from None


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///pms.db"),
        lifecycle_max_attempts=_getenv_int("LIFECYCLE_MAX_ATTEMPTS", 3),
        store_retry_attempts=_getenv_int("STORE_RETRY_ATTEMPTS", 3),
        store_retry_backoff_seconds=_getenv_float("STORE_RETRY_BACKOFF_SECONDS", 0.2),
        notification_max_attempts=_getenv_int("NOTIFICATION_MAX_ATTEMPTS", 5),
        notification_list_limit=_getenv_int("NOTIFICATION_LIST_LIMIT", 50),
        notification_workers=_getenv_int("NOTIFICATION_WORKERS", 2, minimum=0),
    )


def load_config() -> dict:
    s = load_settings()
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        # lifecycle / store behaviour
        "LIFECYCLE_MAX_ATTEMPTS": s.lifecycle_max_attempts,
        "STORE_RETRY_ATTEMPTS": s.store_retry_attempts,
        "STORE_RETRY_BACKOFF_SECONDS": s.store_retry_backoff_seconds,
        # notifications
        "NOTIFICATION_MAX_ATTEMPTS": s.notification_max_attempts,
        "NOTIFICATION_LIST_LIMIT": s.notification_list_limit,
        # 0 delivers inline on the publishing thread
        "NOTIFICATION_WORKERS": s.notification_workers,
    }
