"""Periodic inbound sync timer."""

from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config.settings import AppSettings
from ..utils.logging import get_logger

JOB_ID = "inbound-auto-sync"


class SchedulerError(Exception):
    """Raised when scheduler operations fail."""
    pass


class AutoSyncScheduler:
    """Runs the inbound sync on a fixed interval, never overlapping itself."""

    def __init__(
        self,
        settings: AppSettings,
        sync_func: Callable[[], Awaitable[Any]],
        scheduler: Optional[AsyncIOScheduler] = None
    ):
        """Initialize the timer.

        Args:
            settings: Application settings (auto-sync and commerce sections are read)
            sync_func: Coroutine function performing one inbound sync
            scheduler: Scheduler to use; a fresh AsyncIOScheduler by default
        """
        self.settings = settings
        self.sync_func = sync_func
        self.logger = get_logger(self.__class__.__name__)

        self.scheduler = scheduler or AsyncIOScheduler(
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 60
            }
        )
        self.scheduler.add_listener(self._job_executed, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(self._job_error, EVENT_JOB_ERROR)
        self.scheduler.add_listener(self._job_missed, EVENT_JOB_MISSED)

        self.running = False
        self.stats: Dict[str, Any] = {
            "run_count": 0,
            "error_count": 0,
            "skipped_overlaps": 0,
            "last_run": None,
            "last_error": None,
        }

    def start(self) -> Dict[str, Any]:
        """Schedule the timer if enabled and the commerce side is configured.

        Returns:
            ``{"enabled", "reason", "interval_seconds"}``
        """
        config = self.settings.auto_sync
        if not config.enabled:
            self.logger.info("Auto sync disabled")
            return {"enabled": False, "reason": "disabled", "interval_seconds": config.interval_seconds}
        if not self.settings.commerce.is_configured:
            self.logger.warning("Auto sync not started: commerce not configured")
            return {"enabled": False, "reason": "commerce_not_configured", "interval_seconds": config.interval_seconds}

        try:
            # None would add the job paused, so only pass a first run time when wanted
            first_run = {}
            if config.run_immediately:
                first_run["next_run_time"] = datetime.now(timezone.utc) + timedelta(seconds=config.initial_delay_seconds)
            self.scheduler.add_job(
                func=self._run,
                trigger=IntervalTrigger(seconds=config.interval_seconds),
                id=JOB_ID,
                name="Inbound auto sync",
                replace_existing=True,
                **first_run
            )
            if not self.scheduler.running:
                self.scheduler.start()
        except Exception as e:
            self.logger.error("Failed to start auto sync", error=str(e))
            raise SchedulerError(f"Failed to start auto sync: {e}")

        self.logger.info(
            "Auto sync scheduled",
            interval_seconds=config.interval_seconds,
            run_immediately=config.run_immediately
        )
        return {"enabled": True, "reason": None, "interval_seconds": config.interval_seconds}

    def stop(self) -> None:
        """Stop the timer without waiting for a run in progress."""
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        self.logger.info("Auto sync stopped")

    @property
    def next_run_time(self) -> Optional[datetime]:
        job = self.scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None

    async def _run(self) -> Optional[Any]:
        if self.running:
            self.stats["skipped_overlaps"] += 1
            self.logger.info("Auto sync already running, skipping")
            return None
        self.running = True
        try:
            return await self.sync_func()
        finally:
            self.running = False

    def _job_executed(self, event):
        self.stats["run_count"] += 1
        self.stats["last_run"] = datetime.now(timezone.utc)
        result = getattr(event, "retval", None)
        if isinstance(result, dict):
            self.logger.info(
                "Auto sync run finished",
                applied=result.get("applied"),
                reason=result.get("reason"),
                job_id=result.get("job_id")
            )

    def _job_error(self, event):
        self.stats["run_count"] += 1
        self.stats["error_count"] += 1
        self.stats["last_run"] = datetime.now(timezone.utc)
        self.stats["last_error"] = str(event.exception)
        self.logger.error("Auto sync run failed", error=str(event.exception))

    def _job_missed(self, event):
        self.logger.warning("Auto sync run missed", scheduled_run_time=event.scheduled_run_time)
