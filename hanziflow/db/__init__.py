from .connection import Base, Database
from .models import CardRecord, DictionaryEntry, EntityLease, Job, JobState, RateLimitBucket, RateLimitHit

__all__ = [
    'Base', 'Database', 'CardRecord', 'DictionaryEntry', 'EntityLease', 'Job', 'JobState',
    'RateLimitBucket', 'RateLimitHit'
]
