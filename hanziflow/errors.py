"""
Error taxonomy for the enrichment pipeline.

The ``retryable`` flag tells the job store whether a failure may be
rescheduled with backoff or must fail the job immediately.
"""

from typing import Optional


class EnrichmentError(Exception):
    """Base class for pipeline errors"""
    retryable = True


class TransientExternalError(EnrichmentError):
    """Network failure, timeout or provider-side throttling"""

    def __init__(self, message: str, service: Optional[str] = None):
        super().__init__(message)
        self.service = service


class RateLimitExceeded(TransientExternalError):
    """A distributed rate limiter could not grant tokens within the max wait"""

    def __init__(self, key: str, waited: float):
        super().__init__(f"Rate limit exceeded for {key} after waiting {waited:.2f}s", service=key)
        self.key = key
        self.waited = waited


class ValidationError(EnrichmentError):
    """Malformed or incomplete output from an external collaborator"""


class ConfigurationError(EnrichmentError):
    """Invalid setup; retrying cannot help"""
    retryable = False


class LockLostError(EnrichmentError):
    """The job's lease expired or was taken over by another worker"""

    def __init__(self, job_id: str):
        super().__init__(f"Lock lost for job {job_id}")
        self.job_id = job_id


class EntityNotFoundError(EnrichmentError):

    def __init__(self, entity_id: str):
        super().__init__(f"Card not found: {entity_id}")
        self.entity_id = entity_id


class EntityBusyError(EnrichmentError):
    """Another job holds the card's lease; the job is deferred, not failed"""

    def __init__(self, entity_id: str, retry_after: float = 5.0):
        super().__init__(f"Card {entity_id} is being enriched by another job")
        self.entity_id = entity_id
        self.retry_after = retry_after


class JobStateError(EnrichmentError):
    """Illegal job state transition, e.g. activating a job that is not waiting"""
    retryable = False


def is_retryable(error: BaseException) -> bool:
    """Unknown exceptions are treated as transient"""
    return getattr(error, 'retryable', True)
