import asyncio

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from prometheus_client import start_http_server

from costpulse.core.config import Settings
from costpulse.core.exceptions import CostPulseException
from costpulse import runtime

logger = structlog.get_logger()


class SchedulerOrchestrator:
    """Built-in scheduler for deployments without an external one (Azure Automation, cron)."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.scheduler = AsyncIOScheduler()
        self._last_status = {}

    async def collection_job(self):
        try:
            summary = await runtime.run_collection(settings=self.settings)
            self._last_status["daily_collection"] = summary.status.value
        except CostPulseException as e:
            logger.error("scheduled_collection_failed", code=e.code, error=e.message)
            self._last_status["daily_collection"] = "failed"

    async def weekly_analysis_job(self):
        try:
            result = await runtime.run_weekly_analysis(settings=self.settings)
            self._last_status["weekly_analysis"] = result.status.value
        except CostPulseException as e:
            logger.error("scheduled_analysis_failed", code=e.code, error=e.message)
            self._last_status["weekly_analysis"] = "failed"

    def start(self):
        """Defines cron schedules and starts APScheduler."""
        # Collection: daily
        self.scheduler.add_job(
            self.collection_job,
            trigger=CronTrigger(hour=self.settings.SCHEDULER_COLLECTION_HOUR, minute=0, timezone="UTC"),
            id="daily_collection",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        # Analysis: weekly, after that day's collection
        self.scheduler.add_job(
            self.weekly_analysis_job,
            trigger=CronTrigger(
                day_of_week=self.settings.SCHEDULER_ANALYSIS_DAY_OF_WEEK,
                hour=self.settings.SCHEDULER_ANALYSIS_HOUR,
                minute=0,
                timezone="UTC",
            ),
            id="weekly_analysis",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if self.settings.METRICS_PORT:
            start_http_server(self.settings.METRICS_PORT)
            logger.info("metrics_server_started", port=self.settings.METRICS_PORT)
        self.scheduler.start()
        logger.info("scheduler_started", jobs=[job.id for job in self.scheduler.get_jobs()])

    def stop(self):
        self.scheduler.shutdown(wait=True)

    def get_status(self) -> dict:
        return {
            "running": self.scheduler.running,
            "last_status": dict(self._last_status),
            "jobs": [
                {"id": job.id, "next_run_time": str(job.next_run_time)}
                for job in self.scheduler.get_jobs()
            ],
        }

    async def serve_forever(self):
        self.start()
        try:
            await asyncio.Event().wait()
        finally:
            self.stop()
