"""
Tests for the token bucket, the distributed limiter and the registry.
"""

import asyncio
import random
import time
from datetime import timedelta
from unittest.mock import Mock

import pytest

from hanziflow.db.models import RateLimitHit
from hanziflow.errors import ConfigurationError, RateLimitExceeded
from hanziflow.jobs.rate_limiter import (
    BucketConfig,
    DistributedRateLimiter,
    RateLimiterRegistry,
    SqlTokenStore,
    TokenBucket
)
from helpers import DictConfig, FakeClock, make_database


class TestBucketConfig:

    def test_burst_defaults_to_twice_rate(self):
        assert BucketConfig(rate=3).burst == 6

    def test_rejects_non_positive_rate(self):
        with pytest.raises(ConfigurationError):
            BucketConfig(rate=0)

    def test_from_dict(self):
        config = BucketConfig.from_dict({'rate': 2, 'burst': 5})
        assert config.rate == 2.0
        assert config.burst == 5


class TestTokenBucket:
    """Token bucket accounting with an injected clock"""

    def setup_method(self):
        self.clock = FakeClock()
        self.bucket = TokenBucket('openai', BucketConfig(rate=2, burst=5), clock=self.clock, sleep=self.clock.sleep)

    def test_starts_full(self):
        assert self.bucket.tokens == 5

    def test_try_acquire_drains_burst(self):
        assert all(self.bucket.try_acquire() for _ in range(5))
        assert not self.bucket.try_acquire()

    def test_refill_is_lazy_and_capped(self):
        for _ in range(5):
            self.bucket.try_acquire()
        self.clock.advance(1.0)
        assert self.bucket.tokens == pytest.approx(2.0)
        self.clock.advance(1000)
        assert self.bucket.tokens == 5

    @pytest.mark.asyncio
    async def test_tokens_stay_within_bounds(self):
        rng = random.Random(42)
        for _ in range(500):
            action = rng.random()
            if action < 0.4:
                self.bucket.try_acquire(rng.choice([1, 2, 3]))
            elif action < 0.7:
                await self.bucket.acquire(rng.choice([1, 2, 5]))
            else:
                self.clock.advance(rng.uniform(0, 3))
            assert 0 <= self.bucket.tokens <= self.bucket.burst

    @pytest.mark.asyncio
    async def test_sequential_acquires_wait_for_refill(self):
        start = self.clock()
        for _ in range(15):
            await self.bucket.acquire()
        # (N - B) / R = (15 - 5) / 2
        assert self.clock() - start >= 5.0 - 1e-9

    @pytest.mark.asyncio
    async def test_sequential_acquires_take_real_time(self):
        bucket = TokenBucket('fast', BucketConfig(rate=40, burst=4))
        start = time.monotonic()
        for _ in range(12):
            await bucket.acquire()
        # (12 - 4) / 40 seconds at least
        assert time.monotonic() - start >= 0.2 - 0.02

    @pytest.mark.asyncio
    async def test_cost_above_burst_fails_immediately(self):
        with pytest.raises(ConfigurationError):
            await self.bucket.acquire(6)
        with pytest.raises(ConfigurationError):
            self.bucket.try_acquire(6)
        assert self.clock.sleeps == []

    @pytest.mark.asyncio
    async def test_waiting_suspends_only_the_caller(self):
        bucket = TokenBucket('slow', BucketConfig(rate=10, burst=1))
        await bucket.acquire()

        other_ran = asyncio.Event()

        async def other():
            other_ran.set()

        waiter = asyncio.create_task(bucket.acquire())
        await asyncio.gather(other(), waiter)
        assert other_ran.is_set()

    @pytest.mark.asyncio
    async def test_limit_decorator(self):
        calls = []

        @self.bucket.limit
        async def call_api(value):
            calls.append(value)
            return value * 2

        assert await call_api(21) == 42
        assert calls == [21]
        assert self.bucket.tokens == 4

    def test_configure_resets_to_full(self):
        self.bucket.try_acquire(5)
        self.bucket.configure(1, 3)
        assert self.bucket.burst == 3
        assert self.bucket.tokens == 3

    def test_stats(self):
        self.bucket.try_acquire()
        stats = self.bucket.get_stats()
        assert stats['name'] == 'openai'
        assert stats['acquired'] == 1
        assert stats['tokens'] == 4


class TestSqlTokenStore:
    """Shared sliding-window accounting in the database"""

    def setup_method(self):
        self.db = make_database()
        self.store = SqlTokenStore(self.db)

    def teardown_method(self):
        self.db.dispose()

    def test_grants_up_to_capacity(self):
        assert all(self.store.acquire('openai', 1, 3, 60) for _ in range(3))
        assert not self.store.acquire('openai', 1, 3, 60)

    def test_keys_are_independent(self):
        for _ in range(3):
            self.store.acquire('openai', 1, 3, 60)
        assert self.store.acquire('image', 1, 3, 60)

    def test_hits_outside_window_are_pruned(self):
        with self.db.transaction() as session:
            old = self.db.server_time(session) - timedelta(seconds=120)
            session.add(RateLimitHit(key='openai', hit_at=old, cost=3))
        assert self.store.acquire('openai', 1, 3, 60)

    def test_reset(self):
        for _ in range(3):
            self.store.acquire('openai', 1, 3, 60)
        self.store.reset('openai')
        assert self.store.acquire('openai', 1, 3, 60)


class TestDistributedRateLimiter:

    def setup_method(self):
        self.clock = FakeClock()

    def _limiter(self, store, **kwargs):
        return DistributedRateLimiter(
            'openai', BucketConfig(rate=2, burst=3), store,
            clock=self.clock, sleep=self.clock.sleep, **kwargs
        )

    def test_window_is_burst_over_rate(self):
        assert self._limiter(Mock()).window == pytest.approx(1.5)

    def test_processes_share_the_budget(self):
        db = make_database()
        try:
            first = self._limiter(SqlTokenStore(db))
            second = self._limiter(SqlTokenStore(db))
            assert first.try_acquire()
            assert second.try_acquire()
            assert first.try_acquire()
            assert not second.try_acquire()
        finally:
            db.dispose()

    @pytest.mark.asyncio
    async def test_acquire_retries_until_granted(self):
        store = Mock()
        store.acquire.side_effect = [False, False, True]
        limiter = self._limiter(store, poll_interval=0.1)

        await limiter.acquire()

        assert store.acquire.call_count == 3
        assert self.clock.sleeps == [pytest.approx(0.1), pytest.approx(0.2)]

    @pytest.mark.asyncio
    async def test_acquire_gives_up_after_max_wait(self):
        store = Mock()
        store.acquire.return_value = False
        limiter = self._limiter(store, poll_interval=0.5)

        with pytest.raises(RateLimitExceeded) as exc_info:
            await limiter.acquire(max_wait=1.5)

        assert exc_info.value.retryable
        assert exc_info.value.waited == 1.5
        assert self.clock.sleeps == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_cost_above_burst_is_a_configuration_error(self):
        store = Mock()
        limiter = self._limiter(store)
        with pytest.raises(ConfigurationError):
            await limiter.acquire(4)
        store.acquire.assert_not_called()


class TestRateLimiterRegistry:

    def setup_method(self):
        self.config = DictConfig({
            'rate_limits': {
                'openai': {'rate': 2, 'burst': 5},
                'image': {'rate': 1},
            },
            'distributed_rate_limit': {'enabled': False},
        })

    def test_builds_local_buckets(self):
        registry = RateLimiterRegistry.from_config(self.config)
        assert isinstance(registry.get('openai'), TokenBucket)
        assert registry.get('openai').burst == 5
        assert registry.get('image').burst == 2
        assert 'tts' not in registry

    def test_unknown_service_is_a_configuration_error(self):
        registry = RateLimiterRegistry.from_config(self.config)
        with pytest.raises(ConfigurationError):
            registry.get('tts')

    def test_builds_distributed_limiters_when_enabled(self):
        self.config.data['distributed_rate_limit'] = {'enabled': True, 'max_wait_seconds': 2.0}
        db = make_database()
        try:
            registry = RateLimiterRegistry.from_config(self.config, db)
            limiter = registry.get('openai')
            assert isinstance(limiter, DistributedRateLimiter)
            assert limiter.max_wait == 2.0
        finally:
            db.dispose()

    def test_distributed_needs_a_database(self):
        self.config.data['distributed_rate_limit'] = {'enabled': True}
        registry = RateLimiterRegistry.from_config(self.config)
        assert isinstance(registry.get('openai'), TokenBucket)

    @pytest.mark.asyncio
    async def test_acquire_by_service(self):
        registry = RateLimiterRegistry.from_config(self.config)
        await registry.acquire('openai')
        assert registry.get_stats()['openai']['acquired'] == 1
