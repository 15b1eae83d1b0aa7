import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from services import BudgetLedger


settings = get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, ledger: BudgetLedger, interval_secs: Optional[int] = None) -> None:
        self.ledger = ledger
        self.interval_secs = interval_secs or settings.sync_interval_secs
        self.scheduler: Optional[AsyncIOScheduler] = None

    async def _run_sync_check(self, source: str = "manual") -> int:
        budgets = self.ledger.sync.loaded_budgets
        logger.info(f"sync_check_run: source={source} budgets={len(budgets)}")
        conflicts = await self.ledger.sync.check_all()
        if conflicts:
            logger.info(f"sync_check_run: source={source} conflicts={len(conflicts)}")
        return len(conflicts)

    def start(self) -> None:
        # Created here so the scheduler binds to the loop that is running now.
        self.scheduler = AsyncIOScheduler(timezone=settings.timezone)
        trigger = IntervalTrigger(seconds=self.interval_secs)
        self.scheduler.add_job(
            self._run_sync_check,
            trigger,
            args=["interval"],
            id="sync_check",
            replace_existing=True,
            misfire_grace_time=60,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info(f"Scheduler started with sync check every {self.interval_secs}s")

    def stop(self) -> None:
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
