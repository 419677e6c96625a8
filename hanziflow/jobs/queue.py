"""
Job Store

Durable named queues backed by the jobs table.
Supports:
- Priority then FIFO dispatch, delayed jobs
- Lock/lease ownership with renewal and stalled-job recovery
- Retries with exponential backoff
- Retention trimming of finished jobs
- Duplicate prevention for outstanding jobs
- Per-card leases shared by card and deck enrichment
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import IntegrityError

from hanziflow.db.connection import Database
from hanziflow.db.models import EntityLease, Job, JobState, utcnow
from hanziflow.errors import JobStateError, LockLostError, is_retryable
from .backoff import BackoffPolicy, compute_backoff

logger = logging.getLogger(__name__)

STALLED_REASON = 'job stalled more than allowable limit'


class JobPriority(IntEnum):
    """Job priority levels; higher dispatches first"""
    BACKGROUND = 1
    BULK_IMPORT = 10
    DECK = 20
    SINGLE_CARD = 50
    USER_INITIATED = 100


@dataclass
class QueueOptions:
    """Per-queue retry and retention settings"""
    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    keep_completed: int = 100
    keep_failed: int = 50

    @classmethod
    def from_config(cls, config, queue_name: str) -> 'QueueOptions':
        settings = config.get_queue_config(queue_name)
        return cls(
            max_attempts=int(settings.get('max_attempts', 3)),
            backoff=BackoffPolicy.from_dict(settings.get('backoff')),
            keep_completed=int(settings.get('keep_completed', 100)),
            keep_failed=int(settings.get('keep_failed', 50)),
        )


def _pk(job_id: Any) -> Optional[int]:
    try:
        return int(job_id)
    except (TypeError, ValueError):
        return None


class JobStore:
    """
    Store for queued jobs.

    State machine: waiting -> active -> completed | waiting (retry) | failed.
    Only the holder of a job's lock token may complete, fail or renew it.

    Usage:
        store = JobStore(db)

        job_id = store.enqueue('card-enrichment', 'enrich-card', {'entity_id': card_id},
                               priority=JobPriority.USER_INITIATED)

        job = store.claim_next('card-enrichment', lock_token, lock_duration=300)
        store.complete(job.job_id, {'ok': True}, lock_token)
    """

    def __init__(
        self,
        db: Database,
        queue_options: Optional[Dict[str, QueueOptions]] = None,
        default_options: Optional[QueueOptions] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.db = db
        self.queue_options = dict(queue_options or {})
        self.default_options = default_options or QueueOptions()
        self._clock = clock

    @classmethod
    def from_config(cls, db: Database, config, clock: Callable[[], datetime] = utcnow) -> 'JobStore':
        queues = config.get('jobs.queues', {}) or {}
        return cls(
            db,
            queue_options={name: QueueOptions.from_config(config, name) for name in queues},
            default_options=QueueOptions.from_config(config, '__defaults__'),
            clock=clock
        )

    def options_for(self, queue: str) -> QueueOptions:
        return self.queue_options.get(queue, self.default_options)

    def now(self) -> datetime:
        return self._clock()

    def enqueue(
        self,
        queue: str,
        job_type: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: int = 0,
        delay: float = 0.0,
        max_attempts: Optional[int] = None,
        backoff: Optional[BackoffPolicy] = None,
        dedupe_key: Optional[str] = None
    ) -> str:
        """
        Enqueue a job.

        Args:
            queue: Queue name
            job_type: Handler-specific job type
            payload: JSON-serializable job data
            priority: Higher values dispatch first
            delay: Seconds before the job becomes eligible
            max_attempts: Attempts before the job fails for good
            backoff: Retry delay policy
            dedupe_key: If an outstanding job has this key, its id is returned instead

        Returns:
            Job ID
        """
        options = self.options_for(queue)

        if dedupe_key:
            existing = self.find_outstanding(dedupe_key)
            if existing:
                logger.debug(f"Duplicate job detected: {dedupe_key} -> {existing.job_id}")
                return existing.job_id

        now = self._clock()
        try:
            with self.db.transaction() as session:
                job = Job(
                    queue=queue,
                    job_type=job_type,
                    payload=dict(payload or {}),
                    priority=int(priority),
                    state=JobState.WAITING,
                    available_at=now + timedelta(seconds=max(0.0, delay)),
                    attempts_made=0,
                    max_attempts=max_attempts or options.max_attempts,
                    backoff=(backoff or options.backoff).to_dict(),
                    dedupe_key=dedupe_key,
                    created_at=now
                )
                session.add(job)
                session.flush()
                job_id = job.job_id
        except IntegrityError:
            # Lost a race with another submitter for the same key
            existing = self.find_outstanding(dedupe_key) if dedupe_key else None
            if existing is None:
                raise
            return existing.job_id

        logger.info(f"Enqueued job {job_id} ({job_type}) on {queue} with priority {priority}")
        return job_id

    def enqueue_batch(self, queue: str, jobs: List[Dict[str, Any]]) -> List[str]:
        """
        Enqueue multiple jobs.

        Args:
            queue: Queue name
            jobs: Each with job_type and payload; optional priority, delay,
                  max_attempts, backoff, dedupe_key

        Returns:
            List of job IDs
        """
        return [self.enqueue(queue, **job) for job in jobs]

    def find_outstanding(self, dedupe_key: str) -> Optional[Job]:
        """Waiting or active job holding the dedupe key"""
        with self.db.session() as session:
            query = select(Job).where(
                and_(
                    Job.dedupe_key == dedupe_key,
                    Job.state.in_(JobState.OUTSTANDING)
                )
            ).limit(1)
            return session.execute(query).scalar_one_or_none()

    def update_waiting_payload(self, job_id: str, updates: Dict[str, Any]) -> bool:
        """Merge keys into the payload of a job that has not started yet"""
        with self.db.transaction() as session:
            job = session.get(Job, _pk(job_id), with_for_update=True)
            if job is None or job.state != JobState.WAITING:
                return False
            job.payload = {**(job.payload or {}), **updates}
            return True

    def claim_next(
        self,
        queue: str,
        lock_token: str,
        lock_duration: float,
        job_types: Optional[List[str]] = None
    ) -> Optional[Job]:
        """
        Activate the next eligible job: highest priority, then oldest.

        Returns:
            The activated job, or None if nothing is eligible
        """
        for _ in range(5):
            now = self._clock()
            with self.db.session() as session:
                query = select(Job.id).where(
                    and_(
                        Job.queue == queue,
                        Job.state == JobState.WAITING,
                        Job.available_at <= now
                    )
                )
                if job_types:
                    query = query.where(Job.job_type.in_(job_types))
                query = query.order_by(Job.priority.desc(), Job.id.asc()).limit(5)
                candidates = list(session.execute(query).scalars())

            if not candidates:
                return None

            for candidate in candidates:
                try:
                    return self.mark_active(str(candidate), lock_token, lock_duration)
                except JobStateError:
                    # Claimed by another worker in the meantime
                    continue
        return None

    def mark_active(self, job_id: str, lock_token: str, lock_duration: float) -> Job:
        """
        waiting -> active, taking the lock.

        Raises:
            JobStateError: if the job is not an eligible waiting job
        """
        now = self._clock()
        with self.db.transaction() as session:
            result = session.execute(
                update(Job)
                .where(
                    and_(
                        Job.id == _pk(job_id),
                        Job.state == JobState.WAITING,
                        Job.available_at <= now
                    )
                )
                .values(
                    state=JobState.ACTIVE,
                    lock_token=lock_token,
                    lock_expires_at=now + timedelta(seconds=lock_duration),
                    processed_at=now
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise JobStateError(f"Job {job_id} is not waiting")
            job = session.get(Job, _pk(job_id))

        logger.info(f"Job {job_id} active on {job.queue} (attempt {job.attempts_made + 1}/{job.max_attempts})")
        return job

    def renew_lock(self, job_id: str, lock_token: str, lock_duration: float) -> bool:
        """
        Extend the lease; False if the token no longer owns the job.
        """
        now = self._clock()
        with self.db.transaction() as session:
            result = session.execute(
                update(Job)
                .where(
                    and_(
                        Job.id == _pk(job_id),
                        Job.state == JobState.ACTIVE,
                        Job.lock_token == lock_token
                    )
                )
                .values(lock_expires_at=now + timedelta(seconds=lock_duration))
                .execution_options(synchronize_session=False)
            )
            renewed = result.rowcount == 1

        if not renewed:
            logger.warning(f"Lock renewal failed for job {job_id}; ownership lost")
        return renewed

    def _owned_job(self, session, job_id: str, lock_token: Optional[str]) -> Job:
        job = session.get(Job, _pk(job_id), with_for_update=True)
        if job is None:
            raise JobStateError(f"Job {job_id} not found")
        if job.state != JobState.ACTIVE:
            if lock_token is not None:
                raise LockLostError(job_id)
            raise JobStateError(f"Job {job_id} is {job.state}, not active")
        if lock_token is not None and job.lock_token != lock_token:
            raise LockLostError(job_id)
        return job

    def complete(self, job_id: str, result: Any = None, lock_token: Optional[str] = None) -> Job:
        """
        active -> completed, then trim old completed jobs of the queue.

        Raises:
            LockLostError: if lock_token no longer owns the job
        """
        now = self._clock()
        with self.db.transaction() as session:
            job = self._owned_job(session, job_id, lock_token)
            job.state = JobState.COMPLETED
            job.result = result
            job.finished_at = now
            job.lock_token = None
            job.lock_expires_at = None
            session.flush()
            self._trim(session, job.queue, JobState.COMPLETED, self.options_for(job.queue).keep_completed)

        logger.info(f"Job {job_id} completed")
        return job

    def fail(self, job_id: str, error: BaseException, lock_token: Optional[str] = None) -> Job:
        """
        Record a failed attempt.

        Retryable errors with attempts remaining go back to waiting after the
        backoff delay; everything else ends in failed with the reason kept.

        Raises:
            LockLostError: if lock_token no longer owns the job
        """
        now = self._clock()
        reason = str(error) or error.__class__.__name__
        with self.db.transaction() as session:
            job = self._owned_job(session, job_id, lock_token)
            job.attempts_made += 1
            job.failed_reason = reason
            job.lock_token = None
            job.lock_expires_at = None

            if is_retryable(error) and job.attempts_made < job.max_attempts:
                delay = compute_backoff(job.attempts_made, BackoffPolicy.from_dict(job.backoff))
                job.state = JobState.WAITING
                job.available_at = now + timedelta(seconds=delay)
                logger.warning(
                    f"Job {job_id} failed attempt {job.attempts_made}/{job.max_attempts}: {reason}. "
                    f"Retrying in {delay:.1f}s"
                )
            else:
                job.state = JobState.FAILED
                job.finished_at = now
                session.flush()
                self._trim(session, job.queue, JobState.FAILED, self.options_for(job.queue).keep_failed)
                logger.error(f"Job {job_id} failed permanently after {job.attempts_made} attempts: {reason}")

        return job

    def update_progress(self, job_id: str, progress: Dict[str, Any], lock_token: Optional[str] = None) -> bool:
        """Store progress for status polling; has no effect on state"""
        conditions = [Job.id == _pk(job_id)]
        if lock_token is not None:
            conditions.append(Job.lock_token == lock_token)
        with self.db.transaction() as session:
            result = session.execute(
                update(Job)
                .where(and_(*conditions))
                .values(progress=dict(progress))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def defer(self, job_id: str, lock_token: Optional[str], delay: float) -> Job:
        """
        active -> waiting without using an attempt.

        Raises:
            LockLostError: if lock_token no longer owns the job
        """
        now = self._clock()
        with self.db.transaction() as session:
            job = self._owned_job(session, job_id, lock_token)
            job.state = JobState.WAITING
            job.lock_token = None
            job.lock_expires_at = None
            job.available_at = now + timedelta(seconds=max(0.0, delay))
        logger.info(f"Job {job_id} deferred for {delay:.1f}s")
        return job

    def acquire_entity_lease(self, entity_id: str, job_id: str) -> bool:
        """
        Take the card's lease for a job.

        A lease stays held while its job is active with an unexpired lock,
        so a crashed holder frees the card once stalled-job recovery could
        take the job back.

        Returns:
            True if the job now holds the lease
        """
        now = self._clock()
        try:
            with self.db.transaction() as session:
                lease = session.get(EntityLease, entity_id, with_for_update=True)
                if lease is None:
                    session.add(EntityLease(entity_id=entity_id, job_id=job_id, acquired_at=now))
                    session.flush()
                    return True
                if lease.job_id == job_id:
                    return True
                holder_pk = _pk(lease.job_id)
                holder = session.get(Job, holder_pk) if holder_pk is not None else None
                if (
                    holder is not None
                    and holder.state == JobState.ACTIVE
                    and holder.lock_expires_at is not None
                    and holder.lock_expires_at >= now
                ):
                    logger.debug(f"Card {entity_id} is leased to job {lease.job_id}")
                    return False
                logger.info(f"Job {job_id} took over the lease on {entity_id} from job {lease.job_id}")
                lease.job_id = job_id
                lease.acquired_at = now
                return True
        except IntegrityError:
            # Another job inserted the lease first
            return False

    def release_entity_lease(self, entity_id: str, job_id: str) -> bool:
        with self.db.transaction() as session:
            result = session.execute(
                delete(EntityLease)
                .where(and_(EntityLease.entity_id == entity_id, EntityLease.job_id == job_id))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def get_job(self, job_id: str) -> Optional[Job]:
        with self.db.session() as session:
            return session.get(Job, _pk(job_id))

    def get_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """State, progress and result/failure snapshot of a job"""
        job = self.get_job(job_id)
        if job is None:
            return None
        status = job.to_status()
        status['delayed'] = job.state == JobState.WAITING and job.available_at > self._clock()
        return status

    def requeue_stalled(self, queue: Optional[str] = None) -> List[str]:
        """
        Recover active jobs whose lock expired without renewal.

        Each recovery counts as an attempt; a job out of attempts fails.

        Returns:
            IDs of the recovered jobs
        """
        now = self._clock()
        recovered = []
        with self.db.transaction() as session:
            query = select(Job).where(
                and_(
                    Job.state == JobState.ACTIVE,
                    Job.lock_expires_at < now
                )
            )
            if queue:
                query = query.where(Job.queue == queue)
            for job in session.execute(query.with_for_update()).scalars():
                job.attempts_made += 1
                job.lock_token = None
                job.lock_expires_at = None
                if job.attempts_made >= job.max_attempts:
                    job.state = JobState.FAILED
                    job.failed_reason = STALLED_REASON
                    job.finished_at = now
                    logger.error(f"Job {job.job_id} stalled and has no attempts left")
                else:
                    job.state = JobState.WAITING
                    job.available_at = now
                    logger.warning(f"Job {job.job_id} stalled; returned to waiting")
                recovered.append(job.job_id)
        return recovered

    def retry_failed(self, job_id: str, reset_attempts: bool = True) -> bool:
        """
        Put a failed job back to waiting.

        Returns:
            True if reset to waiting
        """
        try:
            with self.db.transaction() as session:
                job = session.get(Job, _pk(job_id), with_for_update=True)
                if not job or job.state != JobState.FAILED:
                    return False
                job.state = JobState.WAITING
                job.available_at = self._clock()
                job.finished_at = None
                job.failed_reason = None
                if reset_attempts:
                    job.attempts_made = 0
        except IntegrityError:
            logger.warning(f"Job {job_id} not retried: another job for the same key is outstanding")
            return False

        logger.info(f"Reset job {job_id} to waiting")
        return True

    def count_waiting(self, queue: str) -> int:
        with self.db.session() as session:
            return session.execute(
                select(func.count()).select_from(Job).where(
                    and_(Job.queue == queue, Job.state == JobState.WAITING)
                )
            ).scalar_one()

    def get_queue_stats(self, queue: Optional[str] = None) -> Dict[str, Any]:
        """Job counts per queue and state"""
        now = self._clock()
        with self.db.session() as session:
            query = select(Job.queue, Job.state, func.count()).group_by(Job.queue, Job.state)
            delayed_query = select(Job.queue, func.count()).where(
                and_(Job.state == JobState.WAITING, Job.available_at > now)
            ).group_by(Job.queue)
            if queue:
                query = query.where(Job.queue == queue)
                delayed_query = delayed_query.where(Job.queue == queue)

            stats: Dict[str, Any] = {}
            for queue_name, state, count in session.execute(query):
                counts = stats.setdefault(queue_name, {s: 0 for s in (
                    JobState.WAITING, JobState.ACTIVE, JobState.COMPLETED, JobState.FAILED, "delayed"
                )})
                counts[state] = count
            for queue_name, count in session.execute(delayed_query):
                stats[queue_name]['delayed'] = count
            return stats

    def clear_queue(self, queue: str) -> int:
        """Delete every job of a queue"""
        with self.db.transaction() as session:
            result = session.execute(
                delete(Job).where(Job.queue == queue).execution_options(synchronize_session=False)
            )
            count = result.rowcount
        logger.info(f"Cleared {count} jobs from {queue}")
        return count

    def _trim(self, session, queue: str, state: str, keep: int) -> None:
        """Keep only the most recent ``keep`` jobs in a terminal state"""
        if keep is None or keep < 0:
            return
        keep_ids = list(session.execute(
            select(Job.id)
            .where(and_(Job.queue == queue, Job.state == state))
            .order_by(Job.finished_at.desc(), Job.id.desc())
            .limit(keep)
        ).scalars())
        result = session.execute(
            delete(Job)
            .where(and_(Job.queue == queue, Job.state == state, Job.id.not_in(keep_ids)))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.debug(f"Trimmed {result.rowcount} {state} jobs from {queue}")
