"""
Retry backoff policy.

compute_backoff is a pure function of the attempt number so schedules can be
checked without timers.
"""

import random
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional


@dataclass
class BackoffPolicy:
    """How long a failed job waits before it becomes eligible again"""
    type: str = 'exponential'  # 'exponential' or 'fixed'
    delay: float = 5.0  # seconds
    jitter: float = 0.0  # fraction of the delay added at random
    max_delay: float = 300.0  # seconds

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'BackoffPolicy':
        if not data:
            return cls()
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


def compute_backoff(
    attempt: int,
    policy: Optional[BackoffPolicy] = None,
    rand: Callable[[], float] = random.random
) -> float:
    """
    Delay in seconds before retrying after the given failed attempt.

    Args:
        attempt: 1-based count of attempts made so far
        policy: Backoff policy (defaults to exponential from 5s)
        rand: Source of uniform [0, 1) values for jitter

    Returns:
        delay * 2^(attempt - 1) for exponential, delay for fixed, capped at
        max_delay and scaled by (1 + jitter * rand()).
    """
    policy = policy or BackoffPolicy()
    if attempt < 1:
        attempt = 1

    if policy.type == 'fixed':
        delay = policy.delay
    else:
        delay = policy.delay * (2 ** (attempt - 1))

    delay = min(delay, policy.max_delay)

    if policy.jitter:
        delay *= 1 + policy.jitter * rand()

    return delay
