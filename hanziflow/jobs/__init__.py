"""
hanziflow Jobs Module

Provides durable, rate-limited async job execution.

Components:
- JobStore: Priority queues with delays, retries and lock/lease ownership
- Worker: Claims jobs and runs handlers with bounded concurrency
- TokenBucket / DistributedRateLimiter: Bound calls to external services
- HealthMonitor: Worker liveness and health reporting
- TTLCache: Clock-injected cache used by the batch processor
"""

from .backoff import BackoffPolicy, compute_backoff
from .cache import TTLCache
from .monitor import HealthMonitor, WorkerMonitorRecord, serve_health
from .queue import JobPriority, JobStore, QueueOptions
from .rate_limiter import (
    BucketConfig,
    DistributedRateLimiter,
    RateLimiterRegistry,
    SqlTokenStore,
    TokenBucket
)
from .worker import JobContext, Worker, WorkerConfig, WorkerObserver, run_worker

__all__ = [
    # Store
    'JobStore',
    'JobPriority',
    'QueueOptions',
    'BackoffPolicy',
    'compute_backoff',

    # Worker
    'Worker',
    'WorkerConfig',
    'WorkerObserver',
    'JobContext',
    'run_worker',

    # Rate limiting
    'TokenBucket',
    'BucketConfig',
    'DistributedRateLimiter',
    'SqlTokenStore',
    'RateLimiterRegistry',

    # Monitoring
    'HealthMonitor',
    'WorkerMonitorRecord',
    'serve_health',

    'TTLCache',
]
