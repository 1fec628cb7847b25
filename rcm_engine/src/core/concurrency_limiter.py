import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict
import structlog

from .exceptions import JobAlreadyRunningError

logger = structlog.get_logger(__name__)


class JobLocks:
    """
    One lock per background job name, shared by the scheduler and the manual API
    triggers so a job never overlaps itself.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, job_name: str) -> asyncio.Lock:
        lock = self._locks.get(job_name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[job_name] = lock
        return lock

    def is_running(self, job_name: str) -> bool:
        return self._lock_for(job_name).locked()

    @asynccontextmanager
    async def hold(self, job_name: str) -> AsyncIterator[None]:
        lock = self._lock_for(job_name)
        if lock.locked():
            logger.info("Job already running, skipping this run.", job_name=job_name)
            raise JobAlreadyRunningError(job_name)
        async with lock:
            yield
