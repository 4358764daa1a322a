import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        ledger_base_url: str,
        ledger_token: Optional[str],
        ledger_timeout_secs: float,
        sync_lookback_days: int,
        sync_settle_secs: float,
        sync_interval_minutes: int,
        paycheck_minimum_amount: Decimal,
        alerts_enabled: bool,
        alert_threshold: Decimal,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.ledger_base_url = ledger_base_url
        self.ledger_token = ledger_token
        self.ledger_timeout_secs = ledger_timeout_secs
        self.sync_lookback_days = sync_lookback_days
        self.sync_settle_secs = sync_settle_secs
        self.sync_interval_minutes = sync_interval_minutes
        self.paycheck_minimum_amount = paycheck_minimum_amount
        self.alerts_enabled = alerts_enabled
        self.alert_threshold = alert_threshold


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    database_url = os.getenv("BUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGET_TIMEZONE", "America/New_York")
    csrf_secret = os.getenv(
        "BUDGET_CSRF_SECRET",
        "5f0c8e1d6a7b44e2b9c3d1a8e6f27b90c4d5e6f708192a3b4c5d6e7f80912a3b",
    )
    ledger_base_url = os.getenv(
        "BUDGET_LEDGER_BASE_URL", "https://api.lunchmoney.dev/v2"
    ).rstrip("/")
    ledger_token = os.getenv("BUDGET_LEDGER_TOKEN") or None
    ledger_timeout_secs = float(os.getenv("BUDGET_LEDGER_TIMEOUT_SECS", "10"))
    sync_lookback_days = int(os.getenv("BUDGET_SYNC_LOOKBACK_DAYS", "7"))
    sync_settle_secs = float(os.getenv("BUDGET_SYNC_SETTLE_SECS", "1"))
    sync_interval_minutes = int(os.getenv("BUDGET_SYNC_INTERVAL_MINUTES", "60"))
    paycheck_minimum_amount = Decimal(os.getenv("BUDGET_PAYCHECK_MINIMUM", "1000"))
    alerts_enabled = _env_flag("BUDGET_ALERTS_ENABLED", "true")
    alert_threshold = Decimal(os.getenv("BUDGET_ALERT_THRESHOLD", "0.8"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        ledger_base_url=ledger_base_url,
        ledger_token=ledger_token,
        ledger_timeout_secs=ledger_timeout_secs,
        sync_lookback_days=sync_lookback_days,
        sync_settle_secs=sync_settle_secs,
        sync_interval_minutes=sync_interval_minutes,
        paycheck_minimum_amount=paycheck_minimum_amount,
        alerts_enabled=alerts_enabled,
        alert_threshold=alert_threshold,
    )
