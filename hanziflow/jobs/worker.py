"""
Async Job Worker

Pulls jobs from one queue of the job store and executes them.
Supports:
- Bounded concurrency
- Lock renewal while a handler runs
- Lifecycle events through WorkerObserver
- Graceful shutdown with a grace period
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set
from uuid import uuid4

from hanziflow.db.models import Job, JobState
from hanziflow.errors import EntityBusyError, LockLostError
from .queue import JobStore

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Worker configuration"""
    # Concurrency
    concurrency: int = 5

    # Locking
    lock_duration: float = 300.0  # seconds
    lock_renew_time: Optional[float] = None  # seconds; defaults to half the lock duration

    # Polling
    poll_interval: float = 1.0  # seconds
    stalled_check_interval: float = 30.0  # seconds

    # Timeouts
    job_timeout: Optional[float] = None  # seconds

    # Graceful shutdown
    shutdown_timeout: float = 30.0

    @property
    def renew_interval(self) -> float:
        if self.lock_renew_time and self.lock_renew_time < self.lock_duration:
            return self.lock_renew_time
        return self.lock_duration / 2

    @classmethod
    def from_config(cls, config, queue_name: str) -> 'WorkerConfig':
        settings = config.get_queue_config(queue_name)
        return cls(
            concurrency=int(settings.get('concurrency', 5)),
            lock_duration=float(settings.get('lock_duration', 300.0)),
            lock_renew_time=settings.get('lock_renew_time'),
            poll_interval=float(settings.get('poll_interval', 1.0)),
            stalled_check_interval=float(settings.get('stalled_check_interval', 30.0)),
            shutdown_timeout=float(settings.get('shutdown_timeout', 30.0)),
        )


class WorkerObserver(Protocol):
    """Receives worker lifecycle events"""

    def on_active(self, worker_name: str, job: Job) -> None:
        ...

    def on_completed(self, worker_name: str, job: Job, result: Any) -> None:
        ...

    def on_failed(self, worker_name: str, job: Job, error: BaseException) -> None:
        """``job`` reflects the state after the failure; ``failed`` means terminal"""
        ...

    def on_error(self, worker_name: str, error: BaseException) -> None:
        ...


class JobContext:
    """
    Per-job handle given to handlers.

    Handlers call ``ensure_lock()`` before writes so they stop once the
    worker has lost the job's lease.
    """

    def __init__(self, job: Job, lock_token: str, store: JobStore, worker_name: str):
        self.job = job
        self.lock_token = lock_token
        self.store = store
        self.worker_name = worker_name
        self.lock_lost = False

    @property
    def job_id(self) -> str:
        return self.job.job_id

    def mark_lock_lost(self) -> None:
        self.lock_lost = True

    def ensure_lock(self) -> None:
        if self.lock_lost:
            raise LockLostError(self.job_id)

    def update_progress(
        self,
        stage: str,
        message: Optional[str] = None,
        counts: Optional[Dict[str, int]] = None
    ) -> None:
        self.ensure_lock()
        progress: Dict[str, Any] = {'stage': stage}
        if message is not None:
            progress['message'] = message
        if counts is not None:
            progress['counts'] = counts
        self.store.update_progress(self.job_id, progress, self.lock_token)


Handler = Callable[[Job, JobContext], Awaitable[Any]]


class Worker:
    """
    Async job worker for one queue.

    Claims jobs from the job store while it has free slots, runs the handler
    for each, renews the job's lock until the handler returns, then completes
    or fails the job.

    Usage:
        worker = Worker(store, 'card-enrichment', handler, WorkerConfig(concurrency=5))
        worker.add_observer(monitor_observer)

        # Run worker
        await worker.run()
    """

    def __init__(
        self,
        store: JobStore,
        queue: str,
        handler: Handler,
        config: Optional[WorkerConfig] = None,
        observers: Optional[List[WorkerObserver]] = None,
        name: Optional[str] = None
    ):
        self.store = store
        self.queue = queue
        self.handler = handler
        self.config = config or WorkerConfig()
        self.name = name or f"{queue}-worker-{uuid4().hex[:8]}"
        self._observers: List[WorkerObserver] = list(observers or [])

        # State
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._wake = asyncio.Event()
        self._active_jobs: Dict[str, Job] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._last_stalled_check: Optional[float] = None

        # Metrics
        self._processed_count = 0
        self._failed_count = 0
        self._start_time: Optional[datetime] = None

    def add_observer(self, observer: WorkerObserver) -> None:
        self._observers.append(observer)

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> asyncio.Task:
        """Run the worker in a background task"""
        return asyncio.create_task(self.run())

    async def run(self, install_signal_handlers: bool = False) -> None:
        """
        Run the worker.

        Claims and executes jobs until stop() is called.
        """
        logger.info(f"Starting worker {self.name} on {self.queue} (concurrency {self.config.concurrency})")

        self._running = True
        self._start_time = datetime.now(timezone.utc)

        if install_signal_handlers:
            self._setup_signal_handlers()

        try:
            while self._running and not self._shutdown_event.is_set():
                try:
                    self._check_stalled()

                    if len(self._active_jobs) >= self.config.concurrency:
                        await self._idle()
                        continue

                    lock_token = uuid4().hex
                    job = self.store.claim_next(self.queue, lock_token, self.config.lock_duration)
                    if job is None:
                        await self._idle()
                        continue

                    # Reserve the slot before the task first runs
                    self._active_jobs[job.job_id] = job
                    task = asyncio.create_task(self._process_job(job, lock_token))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
                    # A task cancelled before it started never reaches its finally
                    task.add_done_callback(lambda _, job_id=job.job_id: self._active_jobs.pop(job_id, None))

                except Exception as e:
                    logger.exception(f"Worker loop error: {e}")
                    self._notify('on_error', e)
                    await self._idle()

        finally:
            await self._drain()
            self._running = False
            logger.info(
                f"Worker {self.name} stopped. Processed: {self._processed_count}, Failed: {self._failed_count}"
            )

    async def stop(self) -> None:
        """Stop claiming new jobs; in-flight jobs get the shutdown grace period"""
        logger.info(f"Stopping worker {self.name}...")
        self._running = False
        self._shutdown_event.set()
        self._wake.set()

    async def _idle(self) -> None:
        """Sleep until the poll interval passes, a slot frees up or shutdown begins"""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self.config.poll_interval)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()

    def _check_stalled(self) -> None:
        loop_time = asyncio.get_running_loop().time()
        if (
            self._last_stalled_check is not None
            and loop_time - self._last_stalled_check < self.config.stalled_check_interval
        ):
            return
        self._last_stalled_check = loop_time
        recovered = self.store.requeue_stalled(self.queue)
        if recovered:
            logger.warning(f"Recovered {len(recovered)} stalled jobs on {self.queue}")

    async def _process_job(self, job: Job, lock_token: str) -> None:
        """Process a single job"""
        job_id = job.job_id
        context = JobContext(job, lock_token, self.store, self.name)
        self._notify('on_active', job)
        renewer = asyncio.create_task(self._renew_lock(context))

        try:
            if self.config.job_timeout:
                result = await asyncio.wait_for(self.handler(job, context), timeout=self.config.job_timeout)
            else:
                result = await self.handler(job, context)

        except asyncio.CancelledError:
            logger.warning(f"Job {job_id} abandoned; its lock will expire and it will be retried")
            raise

        except Exception as e:
            await self._handle_failure(job, context, e)

        else:
            if context.lock_lost:
                logger.warning(f"Job {job_id} finished after losing its lock; result discarded")
                return
            try:
                completed = self.store.complete(job_id, result, lock_token)
            except LockLostError:
                logger.warning(f"Job {job_id} lost its lock before completion; result discarded")
                return
            self._processed_count += 1
            self._notify('on_completed', completed, result)

        finally:
            renewer.cancel()
            await asyncio.gather(renewer, return_exceptions=True)
            self._active_jobs.pop(job_id, None)
            self._wake.set()

    async def _handle_failure(self, job: Job, context: JobContext, error: Exception) -> None:
        job_id = job.job_id
        if isinstance(error, LockLostError) or context.lock_lost:
            logger.warning(f"Job {job_id} lost its lock; leaving it to stalled-job recovery")
            return

        if isinstance(error, EntityBusyError):
            try:
                self.store.defer(job_id, context.lock_token, error.retry_after)
            except LockLostError:
                logger.warning(f"Job {job_id} lost its lock before it could be deferred")
            return

        try:
            updated = self.store.fail(job_id, error, context.lock_token)
        except LockLostError:
            logger.warning(f"Job {job_id} lost its lock before the failure was recorded")
            return

        if updated.state == JobState.FAILED:
            self._failed_count += 1
        self._notify('on_failed', updated, error)

    async def _renew_lock(self, context: JobContext) -> None:
        """Extend the job's lease every renew interval until cancelled"""
        while True:
            await asyncio.sleep(self.config.renew_interval)
            try:
                renewed = self.store.renew_lock(context.job_id, context.lock_token, self.config.lock_duration)
            except Exception as e:
                logger.error(f"Failed to renew lock for job {context.job_id}: {e}")
                self._notify('on_error', e)
                continue
            if not renewed:
                context.mark_lock_lost()
                return

    async def _drain(self) -> None:
        """Wait for in-flight jobs, abandoning any still running after the grace period"""
        if not self._tasks:
            return
        logger.info(f"Waiting for {len(self._tasks)} active jobs to complete...")
        tasks = list(self._tasks)
        _, pending = await asyncio.wait(tasks, timeout=self.config.shutdown_timeout)
        if pending:
            logger.warning(f"Shutdown timeout - abandoning {len(pending)} jobs")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    def _notify(self, event: str, *args: Any) -> None:
        for observer in self._observers:
            callback = getattr(observer, event, None)
            if callback is None:
                continue
            try:
                callback(self.name, *args)
            except Exception as e:
                logger.exception(f"Observer {observer!r} failed handling {event}: {e}")

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown"""
        try:
            loop = asyncio.get_running_loop()

            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(
                    sig,
                    lambda: asyncio.create_task(self.stop())
                )
        except (NotImplementedError, RuntimeError):
            # Signal handling not available (e.g., Windows)
            pass

    def get_stats(self) -> Dict[str, Any]:
        """Get worker statistics"""
        uptime = None
        if self._start_time:
            uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()

        return {
            'name': self.name,
            'queue': self.queue,
            'running': self._running,
            'active_jobs': len(self._active_jobs),
            'processed_count': self._processed_count,
            'failed_count': self._failed_count,
            'uptime_seconds': uptime,
        }


async def run_worker(
    store: JobStore,
    queue: str,
    handler: Handler,
    config: Optional[WorkerConfig] = None,
    observers: Optional[List[WorkerObserver]] = None
) -> None:
    """
    Convenience function to run a worker.

    Args:
        store: Job store
        queue: Queue to consume
        handler: Async function processing (job, context)
        config: Optional worker configuration
        observers: Optional lifecycle observers
    """
    worker = Worker(store, queue, handler, config, observers)
    await worker.run(install_signal_handlers=True)
