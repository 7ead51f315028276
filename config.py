import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        db_timeout_secs: float,
        throttle_limit: int,
        throttle_period_secs: float,
        max_workers: int,
        budget_alert_pct: int,
        notify_provider: str,
        notify_webhook_url: Optional[str],
        notify_timeout_secs: float,
        notify_sender: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.db_timeout_secs = db_timeout_secs
        self.throttle_limit = throttle_limit
        self.throttle_period_secs = throttle_period_secs
        self.max_workers = max_workers
        self.budget_alert_pct = budget_alert_pct
        self.notify_provider = notify_provider
        self.notify_webhook_url = notify_webhook_url
        self.notify_timeout_secs = notify_timeout_secs
        self.notify_sender = notify_sender


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "UTC")
    db_timeout_secs = float(os.getenv("LEDGER_DB_TIMEOUT_SECS", "10"))
    throttle_limit = int(os.getenv("LEDGER_THROTTLE_LIMIT", "10"))
    throttle_period_secs = float(os.getenv("LEDGER_THROTTLE_PERIOD_SECS", "60"))
    max_workers = int(os.getenv("LEDGER_MAX_WORKERS", "4"))
    budget_alert_pct = int(os.getenv("LEDGER_BUDGET_ALERT_PCT", "80"))
    notify_provider = os.getenv("LEDGER_NOTIFY_PROVIDER", "log")
    notify_webhook_url = os.getenv("LEDGER_NOTIFY_WEBHOOK_URL") or None
    notify_timeout_secs = float(os.getenv("LEDGER_NOTIFY_TIMEOUT_SECS", "5"))
    notify_sender = os.getenv(
        "LEDGER_NOTIFY_SENDER", "Finance App <onboarding@resend.dev>"
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        db_timeout_secs=db_timeout_secs,
        throttle_limit=throttle_limit,
        throttle_period_secs=throttle_period_secs,
        max_workers=max_workers,
        budget_alert_pct=budget_alert_pct,
        notify_provider=notify_provider,
        notify_webhook_url=notify_webhook_url,
        notify_timeout_secs=notify_timeout_secs,
        notify_sender=notify_sender,
    )
