"""
Tests for the durable job store: dispatch order, retries, leases and retention.
"""

import pytest

from hanziflow.db.models import JobState
from hanziflow.errors import (
    ConfigurationError,
    JobStateError,
    LockLostError,
    TransientExternalError
)
from hanziflow.jobs.backoff import BackoffPolicy
from hanziflow.jobs.queue import STALLED_REASON, JobPriority, JobStore, QueueOptions
from helpers import DictConfig, FakeDateTimeClock, make_database

QUEUE = 'card-enrichment'


class TestJobStore:
    """Job store against an in-memory database with a fake clock"""

    def setup_method(self):
        self.db = make_database()
        self.clock = FakeDateTimeClock()
        self.store = JobStore(
            self.db,
            default_options=QueueOptions(
                max_attempts=3,
                backoff=BackoffPolicy(type='exponential', delay=5),
                keep_completed=2,
                keep_failed=2
            ),
            clock=self.clock
        )

    def teardown_method(self):
        self.db.dispose()

    def _claim(self, token='worker-1', lock_duration=30):
        return self.store.claim_next(QUEUE, token, lock_duration)

    def test_enqueue_creates_waiting_job(self):
        job_id = self.store.enqueue(QUEUE, 'enrich-card', {'entity_id': 'card_1'})
        status = self.store.get_status(job_id)
        assert status['state'] == JobState.WAITING
        assert status['attempts_made'] == 0
        assert status['max_attempts'] == 3
        assert status['delayed'] is False

    def test_priority_then_fifo(self):
        low = self.store.enqueue(QUEUE, 'enrich-card', priority=JobPriority.BULK_IMPORT)
        first_high = self.store.enqueue(QUEUE, 'enrich-card', priority=JobPriority.USER_INITIATED)
        second_high = self.store.enqueue(QUEUE, 'enrich-card', priority=JobPriority.USER_INITIATED)

        order = [self._claim().job_id for _ in range(3)]

        assert order == [first_high, second_high, low]
        assert self._claim() is None

    def test_queues_are_isolated(self):
        self.store.enqueue('deck-import', 'import-deck')
        assert self._claim() is None

    def test_delayed_job_waits(self):
        job_id = self.store.enqueue(QUEUE, 'enrich-card', delay=10)
        assert self.store.get_status(job_id)['delayed'] is True
        assert self._claim() is None

        self.clock.advance(10)
        assert self._claim().job_id == job_id

    def test_claim_takes_lock(self):
        self.store.enqueue(QUEUE, 'enrich-card')
        job = self._claim(token='abc', lock_duration=30)
        assert job.state == JobState.ACTIVE
        assert job.lock_token == 'abc'
        assert (job.lock_expires_at - self.clock()).total_seconds() == 30

    def test_mark_active_requires_waiting(self):
        job_id = self.store.enqueue(QUEUE, 'enrich-card')
        self.store.mark_active(job_id, 'a', 30)
        with pytest.raises(JobStateError):
            self.store.mark_active(job_id, 'b', 30)

    def test_complete_stores_result(self):
        job_id = self.store.enqueue(QUEUE, 'enrich-card')
        self._claim(token='t')
        self.store.complete(job_id, {'cached': True}, lock_token='t')

        status = self.store.get_status(job_id)
        assert status['state'] == JobState.COMPLETED
        assert status['result'] == {'cached': True}
        assert status['finished_at'] is not None

    def test_complete_with_wrong_token_loses_lock(self):
        job_id = self.store.enqueue(QUEUE, 'enrich-card')
        self._claim(token='t')
        with pytest.raises(LockLostError):
            self.store.complete(job_id, {}, lock_token='other')
        assert self.store.get_status(job_id)['state'] == JobState.ACTIVE

    def test_retry_after_backoff(self):
        job_id = self.store.enqueue(QUEUE, 'enrich-card')
        self._claim(token='t')

        self.store.fail(job_id, TransientExternalError('timeout'), lock_token='t')

        status = self.store.get_status(job_id)
        assert status['state'] == JobState.WAITING
        assert status['attempts_made'] == 1
        assert status['failed_reason'] == 'timeout'
        assert status['delayed'] is True

        # Not eligible until the 5s backoff has passed
        self.clock.advance(4.9)
        assert self._claim() is None
        self.clock.advance(0.1)
        assert self._claim(token='t2').job_id == job_id

        # Second failure doubles the delay
        self.store.fail(job_id, TransientExternalError('timeout'), lock_token='t2')
        self.clock.advance(9.9)
        assert self._claim() is None
        self.clock.advance(0.1)
        assert self._claim(token='t3').job_id == job_id

    def test_fails_for_good_after_max_attempts(self):
        job_id = self.store.enqueue(QUEUE, 'enrich-card', max_attempts=2)
        for attempt in range(2):
            self.clock.advance(60)
            token = f't{attempt}'
            assert self._claim(token=token).job_id == job_id
            self.store.fail(job_id, TransientExternalError('timeout'), lock_token=token)

        status = self.store.get_status(job_id)
        assert status['state'] == JobState.FAILED
        assert status['attempts_made'] == 2
        assert status['failed_reason'] == 'timeout'

    def test_non_retryable_error_fails_immediately(self):
        job_id = self.store.enqueue(QUEUE, 'enrich-card')
        self._claim(token='t')
        self.store.fail(job_id, ConfigurationError('missing API key'), lock_token='t')

        status = self.store.get_status(job_id)
        assert status['state'] == JobState.FAILED
        assert status['attempts_made'] == 1

    def test_unknown_errors_are_retried(self):
        job_id = self.store.enqueue(QUEUE, 'enrich-card')
        self._claim(token='t')
        self.store.fail(job_id, RuntimeError('boom'), lock_token='t')
        assert self.store.get_status(job_id)['state'] == JobState.WAITING

    def test_renew_lock(self):
        job_id = self.store.enqueue(QUEUE, 'enrich-card')
        self._claim(token='t', lock_duration=30)
        self.clock.advance(20)

        assert self.store.renew_lock(job_id, 't', 30)
        assert not self.store.renew_lock(job_id, 'someone-else', 30)

        job = self.store.get_job(job_id)
        assert (job.lock_expires_at - self.clock()).total_seconds() == 30

    def test_expired_lock_is_requeued_and_old_owner_cannot_finish(self):
        job_id = self.store.enqueue(QUEUE, 'enrich-card')
        self._claim(token='old', lock_duration=30)

        assert self.store.requeue_stalled() == []
        self.clock.advance(31)
        assert self.store.requeue_stalled() == [job_id]

        status = self.store.get_status(job_id)
        assert status['state'] == JobState.WAITING
        assert status['attempts_made'] == 1

        # A second worker picks it up; the first can no longer settle it
        assert self._claim(token='new').job_id == job_id
        with pytest.raises(LockLostError):
            self.store.complete(job_id, {'stale': True}, lock_token='old')
        with pytest.raises(LockLostError):
            self.store.fail(job_id, RuntimeError('late'), lock_token='old')
        assert not self.store.renew_lock(job_id, 'old', 30)

        self.store.complete(job_id, {'ok': True}, lock_token='new')
        assert self.store.get_status(job_id)['result'] == {'ok': True}

    def test_stalled_job_out_of_attempts_fails(self):
        job_id = self.store.enqueue(QUEUE, 'enrich-card', max_attempts=1)
        self._claim(token='t', lock_duration=10)
        self.clock.advance(11)
        self.store.requeue_stalled(QUEUE)

        status = self.store.get_status(job_id)
        assert status['state'] == JobState.FAILED
        assert status['failed_reason'] == STALLED_REASON

    def test_dedupe_returns_outstanding_job(self):
        first = self.store.enqueue(QUEUE, 'enrich-card', dedupe_key='card-enrichment:card_1')
        second = self.store.enqueue(QUEUE, 'enrich-card', dedupe_key='card-enrichment:card_1')
        assert first == second

        self._claim(token='t')
        self.store.complete(first, {}, lock_token='t')

        third = self.store.enqueue(QUEUE, 'enrich-card', dedupe_key='card-enrichment:card_1')
        assert third != first

    def test_update_waiting_payload(self):
        job_id = self.store.enqueue(QUEUE, 'enrich-card', {'entity_id': 'c1', 'force': False})
        assert self.store.update_waiting_payload(job_id, {'force': True})
        assert self.store.get_job(job_id).payload == {'entity_id': 'c1', 'force': True}

        self._claim(token='t')
        assert not self.store.update_waiting_payload(job_id, {'force': False})

    def test_progress_is_visible_in_status(self):
        job_id = self.store.enqueue(QUEUE, 'enrich-card')
        self._claim(token='t')
        assert self.store.update_progress(job_id, {'stage': 'image'}, lock_token='t')
        assert not self.store.update_progress(job_id, {'stage': 'audio'}, lock_token='other')
        assert self.store.get_status(job_id)['progress'] == {'stage': 'image'}

    def test_retention_keeps_most_recent_completed(self):
        ids = []
        for _ in range(3):
            job_id = self.store.enqueue(QUEUE, 'enrich-card')
            self._claim(token='t')
            self.clock.advance(1)
            self.store.complete(job_id, {}, lock_token='t')
            ids.append(job_id)

        assert self.store.get_status(ids[0]) is None
        assert self.store.get_status(ids[1])['state'] == JobState.COMPLETED
        assert self.store.get_status(ids[2])['state'] == JobState.COMPLETED

    def test_retry_failed(self):
        job_id = self.store.enqueue(QUEUE, 'enrich-card')
        self._claim(token='t')
        self.store.fail(job_id, ConfigurationError('bad'), lock_token='t')

        assert self.store.retry_failed(job_id)
        status = self.store.get_status(job_id)
        assert status['state'] == JobState.WAITING
        assert status['attempts_made'] == 0
        assert not self.store.retry_failed(job_id)

    def test_queue_stats_and_clear(self):
        self.store.enqueue(QUEUE, 'enrich-card')
        self.store.enqueue(QUEUE, 'enrich-card', delay=30)
        self.store.enqueue('deck-import', 'import-deck')
        self._claim()

        stats = self.store.get_queue_stats()
        assert stats[QUEUE]['active'] == 1
        assert stats[QUEUE]['waiting'] == 1
        assert stats[QUEUE]['delayed'] == 1
        assert stats['deck-import']['waiting'] == 1
        assert self.store.count_waiting(QUEUE) == 1

        assert self.store.clear_queue(QUEUE) == 2
        assert QUEUE not in self.store.get_queue_stats()

    def test_unknown_job(self):
        assert self.store.get_status('12345') is None

    def test_defer_keeps_attempts(self):
        job_id = self.store.enqueue(QUEUE, 'enrich-card')
        self._claim(token='t1')

        job = self.store.defer(job_id, 't1', 5)

        assert job.state == JobState.WAITING
        status = self.store.get_status(job_id)
        assert status['attempts_made'] == 0
        assert status['delayed'] is True
        self.clock.advance(5)
        assert self._claim().job_id == job_id

    def test_defer_requires_lock(self):
        job_id = self.store.enqueue(QUEUE, 'enrich-card')
        self._claim(token='t1')
        with pytest.raises(LockLostError):
            self.store.defer(job_id, 'other', 5)

    def test_entity_lease_excludes_other_active_jobs(self):
        card_job = self.store.enqueue(QUEUE, 'enrich-card')
        deck_job = self.store.enqueue('deck-enrichment', 'enrich-deck')
        self._claim(token='t1')
        self.store.claim_next('deck-enrichment', 't2', 30)

        assert self.store.acquire_entity_lease('card_1', card_job)
        assert self.store.acquire_entity_lease('card_1', card_job)
        assert not self.store.acquire_entity_lease('card_1', deck_job)
        assert self.store.acquire_entity_lease('card_2', deck_job)

        assert not self.store.release_entity_lease('card_1', deck_job)
        assert self.store.release_entity_lease('card_1', card_job)
        assert self.store.acquire_entity_lease('card_1', deck_job)

    def test_entity_lease_of_a_stalled_holder_is_taken_over(self):
        holder = self.store.enqueue(QUEUE, 'enrich-card')
        self._claim(token='t1', lock_duration=30)
        assert self.store.acquire_entity_lease('card_1', holder)

        self.clock.advance(31)
        assert self.store.acquire_entity_lease('card_1', 'deck-1')

    def test_entity_lease_of_a_finished_holder_is_taken_over(self):
        holder = self.store.enqueue(QUEUE, 'enrich-card')
        self._claim(token='t1')
        assert self.store.acquire_entity_lease('card_1', holder)
        self.store.complete(holder, {}, 't1')

        assert self.store.acquire_entity_lease('card_1', 'other')


class TestJobStoreConfig:

    def test_from_config_reads_per_queue_options(self):
        config = DictConfig({
            'jobs': {
                'defaults': {'max_attempts': 3, 'backoff': {'type': 'exponential', 'delay': 5}},
                'queues': {'deck-import': {'max_attempts': 5, 'keep_completed': 10}},
            }
        })
        db = make_database()
        try:
            store = JobStore.from_config(db, config)
            assert store.options_for('deck-import').max_attempts == 5
            assert store.options_for('deck-import').keep_completed == 10
            assert store.options_for('card-enrichment').max_attempts == 3
            assert store.options_for('card-enrichment').backoff.delay == 5
        finally:
            db.dispose()
