"""
Rate Limiter

Bounds calls to external services (AI, image, speech providers).
Supports:
- In-process token buckets with burst capacity and lazy refill
- A distributed variant whose token log lives in the shared database
- A per-service registry built from configuration
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from functools import wraps
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

from hanziflow.db.connection import Database
from hanziflow.db.models import RateLimitBucket, RateLimitHit
from hanziflow.errors import ConfigurationError, RateLimitExceeded

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class BucketConfig:
    """Token bucket configuration"""
    rate: float  # tokens per second
    burst: Optional[float] = None  # defaults to 2x rate

    def __post_init__(self):
        if self.rate is None or self.rate <= 0:
            raise ConfigurationError(f"Rate must be positive, got {self.rate}")
        if self.burst is None:
            self.burst = self.rate * 2
        if self.burst <= 0:
            raise ConfigurationError(f"Burst must be positive, got {self.burst}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BucketConfig':
        return cls(rate=float(data['rate']), burst=data.get('burst'))


class TokenBucket:
    """
    Token bucket rate limiter for one external dependency.

    Tokens refill continuously at ``rate`` per second up to ``burst``; the
    refill is computed lazily from elapsed time on each access. Waiters are
    served in arrival order, and waiting suspends only the calling task.

    Usage:
        bucket = TokenBucket('openai', BucketConfig(rate=2, burst=5))

        # Wait for a token
        await bucket.acquire()

        # Or use as decorator
        @bucket.limit
        async def call_api():
            ...
    """

    def __init__(
        self,
        name: str,
        config: BucketConfig,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._pending = 0
        self._acquired = 0
        self._waited = 0.0
        self.configure(config.rate, config.burst)

    def configure(self, rate: float, burst: Optional[float] = None) -> None:
        """(Re)configure the bucket; it starts full"""
        config = BucketConfig(rate=rate, burst=burst)
        self.rate = config.rate
        self.burst = config.burst
        self._tokens = float(self.burst)
        self._last_refill = self._clock()

    def _refill(self) -> None:
        """Refill token bucket based on elapsed time"""
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._last_refill = now
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)

    @property
    def tokens(self) -> float:
        self._refill()
        return self._tokens

    @property
    def pending(self) -> int:
        """Tasks currently waiting for tokens"""
        return self._pending

    def _check_cost(self, cost: float) -> None:
        if cost > self.burst:
            raise ConfigurationError(
                f"Cost {cost} exceeds burst size {self.burst} for {self.name}; it could never be granted"
            )

    def try_acquire(self, cost: float = 1) -> bool:
        """Take tokens if available right now, without waiting"""
        self._check_cost(cost)
        if self._lock.locked():
            # Someone is already queued; do not jump ahead of them
            return False
        self._refill()
        if self._tokens >= cost:
            self._tokens -= cost
            self._acquired += 1
            return True
        return False

    async def acquire(self, cost: float = 1) -> None:
        """
        Wait until ``cost`` tokens are available, then debit them.

        Raises:
            ConfigurationError: if cost exceeds the burst size
        """
        self._check_cost(cost)
        if cost <= 0:
            return

        self._pending += 1
        try:
            async with self._lock:
                while True:
                    self._refill()
                    if self._tokens >= cost:
                        self._tokens -= cost
                        self._acquired += 1
                        return
                    wait_time = (cost - self._tokens) / self.rate
                    logger.debug(f"Rate limited on {self.name}, waiting {wait_time:.3f}s")
                    self._waited += wait_time
                    await self._sleep(wait_time)
        finally:
            self._pending -= 1

    def limit(self, func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        """
        Decorator to rate limit a coroutine function.

        Usage:
            @bucket.limit
            async def call_api():
                ...
        """
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            await self.acquire()
            return await func(*args, **kwargs)
        return wrapper

    def get_stats(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'rate': self.rate,
            'burst': self.burst,
            'tokens': round(self.tokens, 3),
            'pending': self._pending,
            'acquired': self._acquired,
            'waited_seconds': round(self._waited, 3),
        }


class SharedTokenStore(Protocol):
    """Coordination store for distributed limiting"""

    def acquire(self, key: str, cost: float, capacity: float, window: float) -> bool:
        ...


class SqlTokenStore:
    """
    Sliding-window token log kept in the shared database.

    Each grant is a timestamped row; a grant succeeds when the tokens logged
    inside the trailing window plus ``cost`` fit the capacity. Timestamps come
    from the database server so every process measures the window alike.
    """

    def __init__(self, db: Database):
        self.db = db

    def acquire(self, key: str, cost: float, capacity: float, window: float) -> bool:
        try:
            with self.db.transaction() as session:
                # Row lock serializes concurrent grants for the same key
                bucket = session.execute(
                    select(RateLimitBucket).where(RateLimitBucket.key == key).with_for_update()
                ).scalar_one_or_none()
                if bucket is None:
                    bucket = RateLimitBucket(key=key)
                    session.add(bucket)
                    session.flush()

                now = self.db.server_time(session)
                cutoff = now - timedelta(seconds=window)
                session.execute(
                    delete(RateLimitHit).where(RateLimitHit.key == key, RateLimitHit.hit_at <= cutoff)
                )
                used = session.execute(
                    select(func.coalesce(func.sum(RateLimitHit.cost), 0.0)).where(RateLimitHit.key == key)
                ).scalar_one()

                if used + cost > capacity:
                    return False

                session.add(RateLimitHit(key=key, hit_at=now, cost=cost))
                bucket.updated_at = now
                return True
        except IntegrityError:
            # Another process created the bucket row first; let the caller retry
            return False

    def reset(self, key: str) -> None:
        with self.db.transaction() as session:
            session.execute(delete(RateLimitHit).where(RateLimitHit.key == key))


class DistributedRateLimiter:
    """
    Rate limiter shared by every worker process.

    At most ``burst`` tokens are granted within any trailing window of
    ``burst / rate`` seconds, which holds the sustained rate at ``rate``.
    ``try_acquire`` answers immediately; ``acquire`` polls with a bounded
    wait and raises RateLimitExceeded when the wait runs out.
    """

    def __init__(
        self,
        name: str,
        config: BucketConfig,
        store: SharedTokenStore,
        max_wait: float = 5.0,
        poll_interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.name = name
        self.rate = config.rate
        self.burst = config.burst
        self.window = self.burst / self.rate
        self.store = store
        self.max_wait = max_wait
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep

    def try_acquire(self, cost: float = 1) -> bool:
        if cost > self.burst:
            raise ConfigurationError(
                f"Cost {cost} exceeds burst size {self.burst} for {self.name}; it could never be granted"
            )
        return self.store.acquire(self.name, cost, self.burst, self.window)

    async def acquire(self, cost: float = 1, max_wait: Optional[float] = None) -> None:
        """
        Retry until granted or ``max_wait`` elapses.

        Raises:
            RateLimitExceeded: the wait budget ran out (retryable)
            ConfigurationError: cost exceeds the burst size
        """
        max_wait = self.max_wait if max_wait is None else max_wait
        started = self._clock()
        delay = self.poll_interval

        while True:
            if self.try_acquire(cost):
                return
            waited = self._clock() - started
            if waited >= max_wait:
                raise RateLimitExceeded(self.name, waited)
            pause = min(delay, max_wait - waited)
            logger.debug(f"Distributed limit on {self.name}, retrying in {pause:.3f}s")
            await self._sleep(pause)
            delay = min(delay * 2, self.window)

    def get_stats(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'rate': self.rate,
            'burst': self.burst,
            'window_seconds': self.window,
            'distributed': True,
        }


class RateLimiterRegistry:
    """
    Named limiters, one per external service.

    Usage:
        limiters = RateLimiterRegistry.from_config(config)
        await limiters.acquire('openai')
    """

    def __init__(self, limiters: Optional[Dict[str, Any]] = None):
        self._limiters: Dict[str, Any] = dict(limiters or {})

    @classmethod
    def from_config(cls, config, db: Optional[Database] = None) -> 'RateLimiterRegistry':
        """
        Build limiters from the ``rate_limits`` section.

        When ``distributed_rate_limit.enabled`` is set and a database is given,
        every service uses the shared SQL token store.
        """
        distributed = config.get('distributed_rate_limit', {}) or {}
        use_shared = bool(distributed.get('enabled')) and db is not None
        store = SqlTokenStore(db) if use_shared else None

        limiters: Dict[str, Any] = {}
        for service, settings in (config.get('rate_limits', {}) or {}).items():
            bucket_config = BucketConfig.from_dict(settings)
            if use_shared:
                limiters[service] = DistributedRateLimiter(
                    service,
                    bucket_config,
                    store,
                    max_wait=float(distributed.get('max_wait_seconds', 5.0)),
                    poll_interval=float(distributed.get('poll_interval_seconds', 0.1))
                )
            else:
                limiters[service] = TokenBucket(service, bucket_config)
        return cls(limiters)

    def register(self, service: str, limiter: Any) -> None:
        self._limiters[service] = limiter

    def get(self, service: str) -> Any:
        try:
            return self._limiters[service]
        except KeyError:
            raise ConfigurationError(f"No rate limiter configured for service: {service}")

    def __contains__(self, service: str) -> bool:
        return service in self._limiters

    async def acquire(self, service: str, cost: float = 1) -> None:
        await self.get(service).acquire(cost)

    def get_stats(self) -> Dict[str, Any]:
        return {name: limiter.get_stats() for name, limiter in self._limiters.items()}
