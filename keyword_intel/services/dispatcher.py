"""
Job Dispatcher

Runs analysis jobs as asyncio tasks on the API's event loop:
- at most ``max_concurrent`` jobs run at once, the rest wait their turn
- each job gets a wall-clock deadline; a job that overruns is failed
- a cancelled analysis has its task cancelled mid-flight
- on shutdown, analyses whose jobs were still running are failed
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from keyword_intel.database.models import AnalysisStatus
from keyword_intel.database.repository import AnalysisStore, INTERRUPTED_MESSAGE, TIMEOUT_MESSAGE
from keyword_intel.exceptions import PersistenceError

logger = logging.getLogger(__name__)

JobFactory = Callable[[], Awaitable[AnalysisStatus]]


class JobDispatcher:
    """Worker pool for analysis jobs."""

    def __init__(self, store: AnalysisStore, max_concurrent: int = 4, job_timeout: float = 600.0):
        self.store = store
        self.max_concurrent = max_concurrent
        self.job_timeout = job_timeout
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def active_jobs(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    def submit(self, analysis_id: str, job_factory: JobFactory) -> asyncio.Task:
        """
        Schedule a job. Must be called from the running event loop.

        Tasks are referenced here until done so they are not garbage
        collected mid-flight.
        """
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrent)

        task = asyncio.create_task(self._run(analysis_id, job_factory), name=f"analysis-{analysis_id}")
        self._tasks[analysis_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(analysis_id, None))
        logger.info(f"[{analysis_id}] Job queued ({self.active_jobs} active)")
        return task

    def cancel(self, analysis_id: str) -> bool:
        """Interrupt a running job. False if no job is running for this analysis."""
        task = self._tasks.get(analysis_id)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info(f"[{analysis_id}] Job task cancelled")
        return True

    async def shutdown(self) -> None:
        """
        Cancel every running job, wait for them to unwind, then fail the
        analyses they leave behind so none stays processing across a restart.
        """
        running = {analysis_id: task for analysis_id, task in self._tasks.items() if not task.done()}
        for task in running.values():
            task.cancel()
        if not running:
            return

        await asyncio.gather(*running.values(), return_exceptions=True)
        interrupted = 0
        for analysis_id, task in running.items():
            if task.cancelled() and self._fail(analysis_id, INTERRUPTED_MESSAGE):
                interrupted += 1
        logger.info(f"Cancelled {len(running)} running jobs on shutdown, {interrupted} analyses failed")

    async def _run(self, analysis_id: str, job_factory: JobFactory) -> AnalysisStatus:
        async with self._semaphore:
            try:
                return await asyncio.wait_for(job_factory(), timeout=self.job_timeout)
            except asyncio.TimeoutError:
                logger.error(f"[{analysis_id}] Job exceeded {self.job_timeout}s deadline")
                self._fail(analysis_id, TIMEOUT_MESSAGE)
                return AnalysisStatus.FAILED
            except asyncio.CancelledError:
                logger.info(f"[{analysis_id}] Job interrupted")
                raise

    def _fail(self, analysis_id: str, message: str) -> bool:
        """Fail the analysis if it is still active. A refused write is not an error."""
        try:
            return self.store.finalize(analysis_id, AnalysisStatus.FAILED, error_message=message)
        except PersistenceError as e:
            logger.critical(f"[{analysis_id}] Could not record '{message}': {e}")
            return False
