import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from periods import local_today
from services import close_due_bills


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.close_hour = settings.bill_close_hour
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"bill_closing_run: source={source}")
        with session_scope() as session:
            count = close_due_bills(session, local_today())
        logger.info(f"bill_closing_run: source={source} bills_closed={count}")
        return count

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(hour=self.close_hour, minute=5)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[f"daily_{self.close_hour:02d}:05"],
            id="bill_closing_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="bill_closing_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily {self.close_hour:02d}:05 bill closing "
            "and hourly safety net"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
