"""
Job worker: pulls jobs of one channel and executes them with bounded
concurrency, retrying failures with exponential backoff.

The worker is the single place that decides retry versus failure; handlers
just raise.
"""

import asyncio
import time
from concurrent.futures import Future
from typing import Any, Awaitable, Callable, Dict, Optional, Set
from uuid import uuid4

import structlog

from bookscan.common.errors import ExtractionError, JobTimeoutError, PipelineError
from bookscan.common.process import ProcessGuard
from bookscan.orchestrator.core.config import Settings
from bookscan.orchestrator.core.jobs import Job, JobState, utcnow
from bookscan.orchestrator.core.logging import (
    bind_job_id,
    clear_job_context,
    log_error_with_context,
    log_job_event,
)
from bookscan.orchestrator.services.job_store import JobStore

logger = structlog.get_logger(__name__)


def as_pipeline_error(error: BaseException) -> PipelineError:
    """
    Return ``error`` itself when it belongs to the pipeline taxonomy,
    otherwise an ``ExtractionError`` naming only its type and chained to it.
    """
    if isinstance(error, PipelineError):
        return error
    wrapped = ExtractionError(f"Unexpected {type(error).__name__} during processing")
    wrapped.__cause__ = error
    return wrapped


class JobContext:
    """
    What a handler gets besides the job: the process guard of this attempt
    and a progress reporter that may be called from any thread.
    """

    def __init__(self, job: Job, store: JobStore, loop: asyncio.AbstractEventLoop, guard: ProcessGuard):
        self.job = job
        self.store = store
        self.guard = guard
        self._loop = loop
        self._pending: Set[Future] = set()
        self._closed = False

    def report_progress(self, percent: float) -> None:
        percent = max(0, min(100, int(percent)))
        if self._closed or percent <= self.job.progress:
            return
        self.job.progress = percent
        future = asyncio.run_coroutine_threadsafe(self._persist(), self._loop)
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)

    async def _persist(self) -> None:
        if not self._closed:
            await self.store.save(self.job)

    async def close(self) -> None:
        """Stop persisting progress and wait for saves already scheduled."""
        self._closed = True
        pending = [asyncio.wrap_future(future) for future in list(self._pending)]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


JobHandler = Callable[[Job, JobContext], Awaitable[Dict[str, Any]]]


class JobWorker:
    """
    Executes jobs from one channel of a ``JobStore``.

    Features:
    - At most ``worker_concurrency`` jobs run at once
    - Failed attempts go to the delayed state for
      ``backoff_base_seconds * 2 ** (attempt - 1)`` seconds
    - ``InvalidJobData`` fails immediately; everything else is retried up
      to ``max_attempts``
    - Each attempt is bounded by ``job_timeout_seconds``
    - Running jobs hold a lease renewed every third of ``lease_seconds``;
      jobs whose lease ran out are requeued by whichever worker notices
    """

    def __init__(
        self,
        store: JobStore,
        handler: JobHandler,
        settings: Settings,
        channel: Optional[str] = None,
    ):
        self.store = store
        self.handler = handler
        self.settings = settings
        self.channel = channel or settings.queue_name
        self.concurrency = max(1, settings.worker_concurrency)
        self.lease_seconds = settings.lease_seconds
        self.worker_id = uuid4().hex

        self._running = False
        self._closed = False
        self._abandoning = False
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._dispatcher_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._active_jobs: Dict[str, asyncio.Task] = {}
        self.logger = logger.bind(component="JobWorker", channel=self.channel, worker_id=self.worker_id)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def active_job_ids(self) -> Set[str]:
        return set(self._active_jobs)

    async def start(self) -> None:
        """Requeue jobs whose lease expired and start dispatching."""
        if self._running:
            self.logger.warning("Job worker already running")
            return
        if self._closed:
            raise RuntimeError("Job worker is closed")

        await self._recover_expired()

        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._running = True
        self._dispatcher_task = asyncio.create_task(self._run_dispatcher())
        self._heartbeat_task = asyncio.create_task(self._run_heartbeat())

        self.logger.info(
            "Job worker started",
            concurrency=self.concurrency,
            max_attempts=self.settings.max_attempts,
            lease_seconds=self.lease_seconds,
        )

    async def close(self, abandon: bool = False) -> None:
        """
        Stop dispatching and release the store. Safe to call repeatedly.

        Args:
            abandon: Cancel in-flight jobs right away and return them to the
                waiting state instead of letting them finish. In-flight jobs
                still running after ``shutdown_grace_seconds`` are abandoned
                either way.
        """
        if self._closed:
            return
        self._closed = True
        self._running = False
        self.logger.info("Stopping job worker", active_jobs=len(self._active_jobs), abandon=abandon)

        if self._dispatcher_task:
            self._dispatcher_task.cancel()
            try:
                await self._dispatcher_task
            except asyncio.CancelledError:
                pass

        tasks = list(self._active_jobs.values())
        if tasks and not abandon:
            _, pending = await asyncio.wait(tasks, timeout=self.settings.shutdown_grace_seconds)
            if pending:
                self.logger.warning("Timeout waiting for jobs to complete", remaining_jobs=len(pending))
            tasks = list(pending)

        if tasks:
            self._abandoning = True
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass

        await self.store.close()
        self.logger.info("Job worker stopped")

    async def _run_dispatcher(self) -> None:
        """Main loop: promote due retries, wait for a slot, then for a job."""
        while self._running:
            try:
                await self.store.promote_due(self.channel)
                await self._semaphore.acquire()
                try:
                    job = await self.store.pop_waiting(
                        self.channel,
                        timeout=self.settings.poll_interval_seconds,
                        lease_seconds=self.lease_seconds,
                    )
                except BaseException:
                    self._semaphore.release()
                    raise

                if job is None:
                    self._semaphore.release()
                    continue

                task = asyncio.create_task(self._execute(job))
                self._active_jobs[job.id] = task
                task.add_done_callback(lambda _, job_id=job.id: self._release(job_id))

            except asyncio.CancelledError:
                raise
            except Exception as e:
                log_error_with_context(self.logger, e, {"stage": "dispatch"})
                await asyncio.sleep(self.settings.poll_interval_seconds)

    async def _recover_expired(self) -> None:
        recovered = await self.store.recover_active(self.channel, lease_seconds=self.lease_seconds)
        if recovered:
            self.logger.warning("Requeued jobs with expired leases", job_ids=recovered)

    async def _run_heartbeat(self) -> None:
        """Renew the leases of running jobs; while dispatching, reclaim expired ones."""
        interval = self.lease_seconds / 3
        while True:
            await asyncio.sleep(interval)
            try:
                job_ids = self.active_job_ids
                if job_ids:
                    await self.store.renew_leases(self.channel, job_ids, self.lease_seconds)
                if self.running:
                    await self._recover_expired()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log_error_with_context(self.logger, e, {"stage": "heartbeat"})

    def _release(self, job_id: str) -> None:
        self._active_jobs.pop(job_id, None)
        self._semaphore.release()

    async def _execute(self, job: Job) -> None:
        bind_job_id(job.id, channel=self.channel)
        timeout = self.settings.job_timeout_seconds or None

        job.state = JobState.ACTIVE
        job.attempts += 1
        job.progress = 0
        job.worker_id = self.worker_id
        job.started_at = job.started_at or utcnow()
        job.available_at = None
        await self.store.save(job)
        log_job_event(self.logger, "Job started", job.id, kind=job.kind.value, attempt=job.attempts)

        guard = ProcessGuard(timeout)
        context = JobContext(job, self.store, asyncio.get_running_loop(), guard)
        try:
            result = await asyncio.wait_for(self.handler(job, context), timeout=timeout)
        except asyncio.CancelledError:
            guard.cancel()
            await context.close()
            if self._abandoning:
                await self._abandon(job)
            raise
        except asyncio.TimeoutError as e:
            guard.cancel()
            await context.close()
            if not isinstance(e, JobTimeoutError):
                e = JobTimeoutError(f"Job exceeded {timeout}s execution limit")
            await self._handle_failure(job, e)
        except Exception as e:
            await context.close()
            if not isinstance(e, PipelineError):
                log_error_with_context(self.logger, e, {"job_id": job.id, "stage": "handler"})
            await self._handle_failure(job, as_pipeline_error(e))
        else:
            await context.close()
            await self._complete(job, result)
        finally:
            clear_job_context()

    async def _complete(self, job: Job, result: Dict[str, Any]) -> None:
        job.state = JobState.COMPLETED
        job.result = result
        job.progress = 100
        job.finished_at = utcnow()
        await self.store.finish(job, keep=self.settings.keep_completed)
        log_job_event(self.logger, "Job completed", job.id, attempts=job.attempts)

    async def _handle_failure(self, job: Job, error: PipelineError) -> None:
        reason = error.describe()
        job.last_error = reason
        retryable = error.retryable

        if retryable and job.can_retry:
            delay = self.settings.backoff_base_seconds * 2 ** (job.attempts - 1)
            job.state = JobState.DELAYED
            await self.store.schedule_delayed(job, time.time() + delay)
            self.logger.warning(
                "Job attempt failed, retry scheduled",
                job_id=job.id,
                attempt=job.attempts,
                max_attempts=job.max_attempts,
                delay_seconds=delay,
                error=reason,
            )
            return

        job.state = JobState.FAILED
        job.failure_reason = reason
        job.finished_at = utcnow()
        await self.store.finish(job, keep=self.settings.keep_failed)
        self.logger.error(
            "Job failed",
            job_id=job.id,
            attempts=job.attempts,
            retryable=retryable,
            failure_reason=reason,
        )

    async def _abandon(self, job: Job) -> None:
        job.state = JobState.WAITING
        job.worker_id = None
        await self.store.requeue(job)
        log_job_event(self.logger, "Job abandoned and requeued", job.id, attempt=job.attempts)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "worker_id": self.worker_id,
            "running": self.running,
            "active_jobs": len(self._active_jobs),
            "concurrency": self.concurrency,
            "utilization": len(self._active_jobs) / self.concurrency,
        }
