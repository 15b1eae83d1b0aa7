import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        sync_interval_secs: int,
        max_future_months: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.sync_interval_secs = sync_interval_secs
        self.max_future_months = max_future_months
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    sync_interval_secs = int(os.getenv("LEDGER_SYNC_INTERVAL_SECS", "300"))
    max_future_months = int(os.getenv("LEDGER_MAX_FUTURE_MONTHS", "3"))
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        sync_interval_secs=sync_interval_secs,
        max_future_months=max_future_months,
        log_level=log_level,
    )
