import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_due_day: int,
        log_level: str,
        bill_close_hour: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_due_day = default_due_day
        self.log_level = log_level
        self.bill_close_hour = bill_close_hour


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "America/Sao_Paulo")
    default_due_day = int(os.getenv("LEDGER_DEFAULT_DUE_DAY", "10"))
    if not 1 <= default_due_day <= 31:
        raise ValueError("LEDGER_DEFAULT_DUE_DAY must be between 1 and 31")
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    bill_close_hour = int(os.getenv("LEDGER_BILL_CLOSE_HOUR", "0"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_due_day=default_due_day,
        log_level=log_level,
        bill_close_hour=bill_close_hour,
    )
