import asyncio
import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from services import BudgetService, BudgetStore


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, budget_store: BudgetStore) -> None:
        settings = get_settings()
        self.settings = settings
        self.budget_store = budget_store
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_sync(self, source: str = "manual") -> None:
        logger.info(f"scheduler_sync: source={source}")
        result = asyncio.run(self.budget_store.sync())
        logger.info(
            f"scheduler_sync: source={source} ok={result.ok} message={result.message}"
        )

    def _run_daily(self, source: str = "manual") -> None:
        alerts = self.budget_store.evaluate_alerts()
        budgets = self.budget_store.budgets()
        logger.info(
            f"daily_balance: source={source} balance={budgets.running_balance():.2f} "
            f"alerts={len(alerts)}"
        )
        self._log_week(budgets)

    def _log_week(self, budgets: BudgetService) -> None:
        start, end = budgets.week_interval(budgets.today)
        totals = budgets.totals(start, end)
        top: Optional[str] = next(iter(totals.categories), None)
        logger.info(
            f"weekly_summary: start={start} end={end} spent={totals.expenses:.2f} "
            f"top_category={top}"
        )

    def start(self) -> None:
        # No trigger: runs once, right away, on a worker thread.
        self.scheduler.add_job(
            self._run_sync, args=["startup"], id="ledger_sync_startup"
        )

        trigger = IntervalTrigger(minutes=self.settings.sync_interval_minutes)
        self.scheduler.add_job(
            self._run_sync,
            trigger,
            args=["interval"],
            id="ledger_sync",
            replace_existing=True,
            max_instances=1,
            misfire_grace_time=300,
        )

        trigger = CronTrigger(hour=20, minute=0)
        self.scheduler.add_job(
            self._run_daily,
            trigger,
            args=["daily_20:00"],
            id="daily_summary",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with {self.settings.sync_interval_minutes} minute "
            "sync and daily 20:00 summary"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
