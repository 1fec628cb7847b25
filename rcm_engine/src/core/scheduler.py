import asyncio
from typing import Any, Awaitable, Callable, Dict

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .container import ServiceContainer
from .exceptions import JobAlreadyRunningError

logger = structlog.get_logger(__name__)

STATUS_SYNC_JOB = "status_sync"
ERA_SYNC_JOB = "era_sync"
AGING_BATCH_JOB = "aging_batch"
COLLECTION_DRIVER_JOB = "collection_driver"


async def run_job(container: ServiceContainer, job_name: str, job: Callable[[], Awaitable[Any]]) -> Any:
    """Runs a background job under its lock. Raises JobAlreadyRunningError on overlap."""
    async with container.job_locks.hold(job_name):
        container.metrics_collector.set_job_running(job_name, True)
        try:
            return await job()
        finally:
            container.metrics_collector.set_job_running(job_name, False)


async def run_aging_batch(container: ServiceContainer, stop_event: asyncio.Event = None) -> Dict[str, Any]:
    scores = await container.aging_service.generate_risk_scores(stop_event=stop_event)
    actions = await container.aging_service.trigger_automated_actions(stop_event=stop_event)
    return {"risk_scores": scores, "automated_actions": actions}


class JobScheduler:
    """
    Periodic jobs on an AsyncIOScheduler. Each job runs at most once at a time and
    missed runs are coalesced; a shared stop event lets sweeps end between items.
    """

    def __init__(self, container: ServiceContainer):
        self.container = container
        self.stop_event = asyncio.Event()
        self._scheduler = AsyncIOScheduler(
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 300},
            timezone="UTC",
        )

    def _jobs(self) -> Dict[str, Any]:
        settings = self.container.settings
        return {
            STATUS_SYNC_JOB: (
                settings.SYNC_INTERVAL_SECONDS,
                lambda: self.container.sync_service.sync_claim_statuses(stop_event=self.stop_event),
            ),
            ERA_SYNC_JOB: (
                settings.ERA_SYNC_INTERVAL_SECONDS,
                lambda: self.container.sync_service.sync_remittances(stop_event=self.stop_event),
            ),
            AGING_BATCH_JOB: (
                settings.AGING_BATCH_INTERVAL_SECONDS,
                lambda: run_aging_batch(self.container, stop_event=self.stop_event),
            ),
            COLLECTION_DRIVER_JOB: (
                settings.COLLECTION_DRIVER_INTERVAL_SECONDS,
                lambda: self.container.collection_service.process_workflow_actions(stop_event=self.stop_event),
            ),
        }

    async def _run(self, job_name: str, job: Callable[[], Awaitable[Any]]) -> None:
        try:
            await run_job(self.container, job_name, job)
        except JobAlreadyRunningError:
            logger.info("Scheduled run skipped; job still running", job_name=job_name)
        except Exception as e:
            logger.error("Scheduled job failed", job_name=job_name, error=str(e), exc_info=True)

    def start(self) -> None:
        for job_name, (interval_seconds, job) in self._jobs().items():
            self._scheduler.add_job(
                self._run,
                trigger=IntervalTrigger(seconds=interval_seconds),
                id=job_name,
                args=(job_name, job),
                replace_existing=True,
            )
            logger.info("Scheduled job registered", job_name=job_name, interval_seconds=interval_seconds)
        self._scheduler.start()
        logger.info("Scheduler started")

    def shutdown(self) -> None:
        self.stop_event.set()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("Scheduler shutdown")

    @property
    def is_running(self) -> bool:
        return self._scheduler.running
