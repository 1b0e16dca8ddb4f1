import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from services import reconcile_all_users


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Periodically replays the ledger and reports cached balances that drifted.

    The job only reports; repairing a balance is an explicit API call.
    """

    def __init__(self) -> None:
        settings = get_settings()
        self.enabled = settings.scheduler_enabled
        self.interval_hours = settings.reconcile_interval_hours
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"reconcile_run: source={source}")
        with session_scope() as session:
            drifted = reconcile_all_users(session, repair=False)
        if drifted:
            logger.warning(f"reconcile_run: source={source} drifted_accounts={drifted}")
        else:
            logger.info(f"reconcile_run: source={source} drifted_accounts=0")
        return drifted

    def start(self) -> None:
        if not self.enabled:
            logger.info("Scheduler disabled by configuration")
            return

        self._run_job("startup")

        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_03:15"],
            id="reconcile_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=self.interval_hours)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[f"every_{self.interval_hours}h"],
            id="reconcile_interval",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily 03:15 and {self.interval_hours}h reconciliation"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
