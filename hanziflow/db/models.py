"""
Database models for hanziflow

Tables:
- jobs: durable queue entries with lock/lease state
- cards: the enrichable flashcard entities
- dictionary_entries: CC-CEDICT style reference data
- rate_limit_hits: token log for the distributed rate limiter
- rate_limit_buckets: per-key rows locked by the distributed rate limiter
- entity_leases: per-card guard held by the job enriching it
"""

from datetime import datetime, timezone
from typing import Any, Dict
from uuid import uuid4

from sqlalchemy import (
    Boolean, Column, DateTime, Float, Index, Integer, JSON, String, Text, text
)

from .connection import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobState:
    WAITING = 'waiting'
    ACTIVE = 'active'
    COMPLETED = 'completed'
    FAILED = 'failed'

    OUTSTANDING = (WAITING, ACTIVE)
    TERMINAL = (COMPLETED, FAILED)


class Job(Base):
    """A unit of queued work.

    State machine: waiting -> active -> completed | waiting (retry) | failed.
    A waiting job whose available_at lies in the future is "delayed".
    """
    __tablename__ = 'jobs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    queue = Column(String(64), nullable=False)
    job_type = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    priority = Column(Integer, nullable=False, default=0)
    state = Column(String(16), nullable=False, default=JobState.WAITING)
    available_at = Column(DateTime, nullable=False, default=utcnow)

    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    backoff = Column(JSON, nullable=True)

    progress = Column(JSON, nullable=True)
    result = Column(JSON, nullable=True)
    failed_reason = Column(Text, nullable=True)

    lock_token = Column(String(64), nullable=True)
    lock_expires_at = Column(DateTime, nullable=True)
    dedupe_key = Column(String(255), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    processed_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('ix_jobs_dispatch', 'queue', 'state', 'priority'),
        # At most one outstanding job per dedupe key
        Index(
            'uq_jobs_outstanding_dedupe',
            'dedupe_key',
            unique=True,
            sqlite_where=text("dedupe_key IS NOT NULL AND state IN ('waiting', 'active')"),
            postgresql_where=text("dedupe_key IS NOT NULL AND state IN ('waiting', 'active')"),
        ),
    )

    @property
    def job_id(self) -> str:
        return str(self.id)

    def to_status(self) -> Dict[str, Any]:
        return {
            'id': self.job_id,
            'queue': self.queue,
            'type': self.job_type,
            'state': self.state,
            'progress': self.progress,
            'result': self.result,
            'failed_reason': self.failed_reason,
            'attempts_made': self.attempts_made,
            'max_attempts': self.max_attempts,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'processed_at': self.processed_at.isoformat() if self.processed_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
        }

    def __repr__(self) -> str:
        return f"<Job {self.id} {self.queue}/{self.job_type} {self.state}>"


class EntityLease(Base):
    """Card currently being enriched; held by the job whose id is stored"""
    __tablename__ = 'entity_leases'

    entity_id = Column(String(64), primary_key=True)
    job_id = Column(String(64), nullable=False)
    acquired_at = Column(DateTime, nullable=False, default=utcnow)


class CardRecord(Base):
    """Persisted form of an enrichable flashcard entity"""
    __tablename__ = 'cards'

    id = Column(String(64), primary_key=True, default=lambda: f"card_{uuid4().hex}")
    key = Column(String(64), nullable=False, index=True)
    pronunciation = Column(String(255), nullable=True)
    gloss = Column(Text, nullable=True)
    complexity = Column(JSON, nullable=True)
    confusions = Column(JSON, nullable=True)
    image_ref = Column(String(512), nullable=True)
    audio_ref = Column(String(512), nullable=True)
    insights = Column(JSON, nullable=True)
    insights_generated_at = Column(DateTime, nullable=True)
    cached = Column(Boolean, nullable=False, default=False)
    disambiguated = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class DictionaryEntry(Base):
    __tablename__ = 'dictionary_entries'

    id = Column(Integer, primary_key=True, autoincrement=True)
    traditional = Column(String(64), nullable=False, index=True)
    simplified = Column(String(64), nullable=False, index=True)
    pinyin = Column(String(255), nullable=False)
    definitions = Column(JSON, nullable=False, default=list)


class RateLimitHit(Base):
    """One consumed token; rows older than the window are pruned on acquire"""
    __tablename__ = 'rate_limit_hits'

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(128), nullable=False)
    hit_at = Column(DateTime, nullable=False)
    cost = Column(Float, nullable=False, default=1.0)

    __table_args__ = (
        Index('ix_rate_limit_hits_key_time', 'key', 'hit_at'),
    )


class RateLimitBucket(Base):
    """Per-key row locked while a distributed acquire decides"""
    __tablename__ = 'rate_limit_buckets'

    key = Column(String(128), primary_key=True)
    updated_at = Column(DateTime, nullable=True)
