import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        scheduler_enabled: bool,
        reconcile_interval_hours: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.scheduler_enabled = scheduler_enabled
        self.reconcile_interval_hours = reconcile_interval_hours


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINTRACK_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "fintrack.db"
    database_url = os.getenv("FINTRACK_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINTRACK_TIMEZONE", "Europe/Berlin")
    scheduler_enabled = _env_flag("FINTRACK_SCHEDULER_ENABLED", "true")
    reconcile_interval_hours = int(
        os.getenv("FINTRACK_RECONCILE_INTERVAL_HOURS", "6")
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        scheduler_enabled=scheduler_enabled,
        reconcile_interval_hours=reconcile_interval_hours,
    )
