import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        reconcile_enabled: bool,
        reconcile_hour: int,
        reconcile_minute: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.reconcile_enabled = reconcile_enabled
        self.reconcile_hour = reconcile_hour
        self.reconcile_minute = reconcile_minute
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("STASHBOOK_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "stashbook.db"
    database_url = os.getenv("STASHBOOK_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("STASHBOOK_TIMEZONE", "Europe/Warsaw")
    reconcile_enabled = _env_flag("STASHBOOK_RECONCILE_ENABLED", "true")
    reconcile_hour = int(os.getenv("STASHBOOK_RECONCILE_HOUR", "3"))
    reconcile_minute = int(os.getenv("STASHBOOK_RECONCILE_MINUTE", "15"))
    log_level = os.getenv("STASHBOOK_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        reconcile_enabled=reconcile_enabled,
        reconcile_hour=reconcile_hour,
        reconcile_minute=reconcile_minute,
        log_level=log_level,
    )
