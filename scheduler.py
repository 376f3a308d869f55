import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from balances import rebuild_all_balances
from config import get_settings
from database import session_scope


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Periodic reconciliation of stored balances against their ledgers."""

    def __init__(self) -> None:
        settings = get_settings()
        self.hour = settings.reconcile_hour
        self.minute = settings.reconcile_minute
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"reconcile_run: source={source}")
        with session_scope() as session:
            drifted = rebuild_all_balances(session)
        logger.info(f"reconcile_run: source={source} drifted={drifted}")
        return drifted

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(hour=self.hour, minute=self.minute)
        label = f"daily_{self.hour:02d}:{self.minute:02d}"
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[label],
            id="reconcile_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with {label} balance reconciliation")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
