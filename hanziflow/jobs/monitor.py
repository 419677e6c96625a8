"""
Health Monitor

Tracks worker liveness from lifecycle events and a periodic database
self-ping, and aggregates everything into a health report.
"""

import asyncio
import json
import logging
import threading
import time
from dataclasses import asdict, dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional

from hanziflow.db.models import Job, JobState
from .queue import JobStore

logger = logging.getLogger(__name__)


@dataclass
class WorkerMonitorRecord:
    """Liveness snapshot for one worker"""
    worker_name: str
    last_heartbeat: float
    healthy: bool = True
    processed_count: int = 0
    failed_count: int = 0
    active_count: int = 0
    last_error: Optional[str] = None


class HealthMonitor:
    """
    Aggregates per-worker heartbeats for health reporting.

    The monitor is itself a WorkerObserver: ``register(worker)`` attaches it.
    A worker is healthy while its last heartbeat is younger than ``max_age``
    and it has not reported an error since its last successful ping or job
    event. Only the heartbeat loop's ping refreshes heartbeats, and only for
    workers that are still running; a health report never does.

    Usage:
        monitor = HealthMonitor(store)
        monitor.register(worker)
        monitor.start_heartbeat()

        monitor.is_healthy(worker.name)
        monitor.health_report()
    """

    def __init__(
        self,
        store: JobStore,
        heartbeat_interval: float = 30.0,
        max_age: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.store = store
        self.heartbeat_interval = heartbeat_interval
        self.max_age = max_age
        self._clock = clock
        self._records: Dict[str, WorkerMonitorRecord] = {}
        self._workers: Dict[str, Any] = {}
        self._database_ok = True
        self._heartbeat_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, store: JobStore, config) -> 'HealthMonitor':
        return cls(
            store,
            heartbeat_interval=float(config.get('monitoring.heartbeat_interval', 30.0)),
            max_age=float(config.get('monitoring.max_age', 60.0))
        )

    def register(self, worker) -> WorkerMonitorRecord:
        """Attach to a worker's lifecycle events"""
        record = self._record(worker.name)
        self._workers[worker.name] = worker
        worker.add_observer(self)
        logger.info(f"Monitoring worker {worker.name}")
        return record

    def _record(self, worker_name: str) -> WorkerMonitorRecord:
        record = self._records.get(worker_name)
        if record is None:
            record = WorkerMonitorRecord(worker_name=worker_name, last_heartbeat=self._clock())
            self._records[worker_name] = record
        return record

    def _beat(self, worker_name: str) -> WorkerMonitorRecord:
        record = self._record(worker_name)
        record.last_heartbeat = self._clock()
        return record

    def _recover(self, worker_name: str) -> WorkerMonitorRecord:
        record = self._beat(worker_name)
        if not record.healthy:
            logger.info(f"Worker {worker_name} recovered from: {record.last_error}")
        record.healthy = True
        record.last_error = None
        return record

    # WorkerObserver

    def on_active(self, worker_name: str, job: Job) -> None:
        record = self._recover(worker_name)
        record.active_count += 1

    def on_completed(self, worker_name: str, job: Job, result: Any) -> None:
        record = self._recover(worker_name)
        record.processed_count += 1
        record.active_count = max(0, record.active_count - 1)

    def on_failed(self, worker_name: str, job: Job, error: BaseException) -> None:
        record = self._beat(worker_name)
        record.active_count = max(0, record.active_count - 1)
        if job.state == JobState.FAILED:
            record.failed_count += 1
            logger.error(
                f"Job {job.job_id} on {job.queue} failed permanently "
                f"after {job.attempts_made} attempts: {job.failed_reason}"
            )

    def on_error(self, worker_name: str, error: BaseException) -> None:
        record = self._record(worker_name)
        record.healthy = False
        record.last_error = str(error) or error.__class__.__name__
        logger.error(f"Worker {worker_name} reported an error: {record.last_error}")

    # Health

    def is_healthy(self, worker_name: str, max_age: Optional[float] = None) -> bool:
        record = self._records.get(worker_name)
        if record is None:
            return False
        max_age = self.max_age if max_age is None else max_age
        return record.healthy and (self._clock() - record.last_heartbeat) <= max_age

    def reset_error(self, worker_name: str) -> None:
        record = self._records.get(worker_name)
        if record:
            record.healthy = True
            record.last_error = None

    def _ping_database(self) -> bool:
        try:
            self.store.db.ping()
        except Exception as e:
            self._database_ok = False
            logger.error(f"Health ping failed: {e}")
            return False
        self._database_ok = True
        return True

    def ping(self) -> bool:
        """
        Self-ping the store's database.

        On success every registered worker that is still running gets a
        heartbeat and is healthy again.
        """
        if not self._ping_database():
            return False
        for worker_name, worker in self._workers.items():
            if worker.running:
                self._recover(worker_name)
        return True

    async def _heartbeat_loop(self) -> None:
        while True:
            self.ping()
            await asyncio.sleep(self.heartbeat_interval)

    def start_heartbeat(self) -> asyncio.Task:
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        return self._heartbeat_task

    async def stop_heartbeat(self) -> None:
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            await asyncio.gather(self._heartbeat_task, return_exceptions=True)
            self._heartbeat_task = None

    def health_report(self) -> Dict[str, Any]:
        """
        Aggregate health: ``ok`` only when the database answers and every
        registered worker is healthy.
        """
        connected = self._ping_database()
        workers = {}
        for name, record in self._records.items():
            snapshot = asdict(record)
            snapshot['healthy'] = self.is_healthy(name)
            snapshot['seconds_since_heartbeat'] = round(self._clock() - record.last_heartbeat, 3)
            workers[name] = snapshot

        queues: Dict[str, Any] = {}
        if connected:
            try:
                queues = self.store.get_queue_stats()
            except Exception as e:
                logger.error(f"Failed to collect queue stats: {e}")
                connected = False

        ok = connected and all(w['healthy'] for w in workers.values())
        return {
            'status': 'ok' if ok else 'degraded',
            'database': {'connected': connected},
            'workers': workers,
            'queues': queues,
        }


def serve_health(monitor: HealthMonitor, host: str = '0.0.0.0', port: int = 8080) -> ThreadingHTTPServer:
    """
    Serve GET /health in a background thread.

    Responds 200 when the report is ok and 503 when degraded.
    """

    class HealthHandler(BaseHTTPRequestHandler):
        def do_GET(self):
            if self.path.rstrip('/') != '/health':
                self.send_response(404)
                self.end_headers()
                return
            report = monitor.health_report()
            body = json.dumps(report, default=str).encode('utf-8')
            self.send_response(200 if report['status'] == 'ok' else 503)
            self.send_header('Content-Type', 'application/json')
            self.send_header('Content-Length', str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format, *args):
            logger.debug(f"health: {format % args}")

    server = ThreadingHTTPServer((host, port), HealthHandler)
    thread = threading.Thread(target=server.serve_forever, name='health-server', daemon=True)
    thread.start()
    logger.info(f"Health endpoint listening on {host}:{port}/health")
    return server
