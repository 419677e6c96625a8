"""
Batch Processor

Runs the enrichment pipeline over a group of cards, fetching shared data
once per distinct key instead of once per card:
- card records for every task in one query
- dictionary entries per distinct key
- existing-media flags per distinct key

Failures are isolated: every task settles and reports its own outcome.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from hanziflow.db.models import Job
from hanziflow.db.repository import CardRepository
from hanziflow.errors import EntityBusyError, EntityNotFoundError
from hanziflow.jobs.cache import TTLCache
from hanziflow.storage.media_store import MediaStore
from .collaborators import EnrichmentServices
from .pipeline import EnrichmentPipeline, Guard, PipelineResult, Prefetched

logger = logging.getLogger(__name__)


@dataclass
class BatchConfig:
    """Batch processing configuration"""
    size: int = 10
    delay: float = 1.0  # seconds between batches
    parallel: int = 5
    cache_ttl: float = 300.0
    max_dictionary_cache: int = 1000
    max_media_cache: int = 500

    @classmethod
    def from_config(cls, config) -> 'BatchConfig':
        settings = config.get('batch', {}) or {}
        return cls(
            size=int(settings.get('size', 10)),
            delay=float(settings.get('delay', 1.0)),
            parallel=int(settings.get('parallel', 5)),
            cache_ttl=float(settings.get('cache_ttl', 300.0)),
            max_dictionary_cache=int(settings.get('max_dictionary_cache', 1000)),
            max_media_cache=int(settings.get('max_media_cache', 500)),
        )


def dynamic_batch_size(base: int, backlog: int) -> int:
    """Grow batches with the backlog: x2 over 1000 waiting, x1.5 over 500"""
    if backlog > 1000:
        return base * 2
    if backlog > 500:
        return int(base * 1.5)
    return base


class EntityLeases(Protocol):
    """Per-card exclusion shared with other jobs"""

    def acquire(self, entity_id: str) -> bool:
        ...

    def release(self, entity_id: str) -> None:
        ...


@dataclass
class EnrichmentTask:
    entity_id: str
    force: bool = False
    task_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_job(cls, job: Job) -> 'EnrichmentTask':
        payload = job.payload or {}
        context = {k: payload[k] for k in ('user_id', 'provider') if payload.get(k) is not None}
        return cls(
            entity_id=payload['entity_id'],
            force=bool(payload.get('force', False)),
            task_id=job.job_id,
            context=context
        )


@dataclass
class BatchItemResult:
    task: EnrichmentTask
    result: Optional[PipelineResult] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def busy(self) -> bool:
        return isinstance(self.error, EntityBusyError)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'entity_id': self.task.entity_id, 'ok': self.ok}
        if self.result is not None:
            data['cached'] = self.result.cached
            data['failed_stages'] = self.result.failed_stages
        if self.error is not None:
            data['error'] = str(self.error)
        return data


class BatchProcessor:
    """
    Batched pipeline runs with prefetching.

    The dictionary and media caches belong to the processor and expire on
    the injected clock, so separate processors never share state.

    Usage:
        processor = BatchProcessor(pipeline, BatchConfig(size=10))
        results = await processor.process_batch(tasks)
    """

    def __init__(
        self,
        pipeline: EnrichmentPipeline,
        config: Optional[BatchConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.pipeline = pipeline
        self.config = config or BatchConfig()
        self._sleep = sleep
        self.dictionary_cache: TTLCache = TTLCache(self.config.cache_ttl, self.config.max_dictionary_cache, clock)
        self.media_cache: TTLCache = TTLCache(self.config.cache_ttl, self.config.max_media_cache, clock)

    @property
    def repo(self) -> CardRepository:
        return self.pipeline.repo

    @property
    def services(self) -> EnrichmentServices:
        return self.pipeline.services

    @property
    def media_store(self) -> Optional[MediaStore]:
        return self.pipeline.media_store

    async def _prefetch_dictionary(self, keys: List[str]) -> None:
        lookup = self.services.dictionary_lookup
        missing = self.dictionary_cache.missing(keys)
        if lookup is None or not missing:
            return

        found = await asyncio.gather(
            *(lookup(key, {}) for key in missing),
            return_exceptions=True
        )
        for key, entries in zip(missing, found):
            if isinstance(entries, Exception):
                # Left uncached; the pipeline run looks it up itself
                logger.warning(f"Dictionary prefetch failed for {key}: {entries}")
                continue
            self.dictionary_cache.set(key, list(entries or []))

    def _prefetch_media(self, keys: List[str]) -> None:
        if self.media_store is None:
            return
        for key in self.media_cache.missing(keys):
            self.media_cache.set(key, self.media_store.existing_media(key))

    def _remember_media(self, result: PipelineResult) -> None:
        entity = result.entity
        flags = dict(self.media_cache.get(entity.key) or {})
        if entity.image_ref:
            flags['image'] = True
        if entity.audio_ref:
            flags['audio'] = True
        if flags:
            self.media_cache.set(entity.key, flags)

    async def process_batch(
        self,
        tasks: List[EnrichmentTask],
        guard: Optional[Guard] = None,
        leases: Optional[EntityLeases] = None
    ) -> List[BatchItemResult]:
        """
        Process one batch with settle-all semantics.

        Tasks naming the same card run once, with ``force`` if any of them
        asked for it. With ``leases``, a card held by another job is not run
        and its tasks settle with EntityBusyError.

        Returns:
            One result per task, in task order
        """
        if not tasks:
            return []

        entities = self.repo.find_many(task.entity_id for task in tasks)
        keys = list(dict.fromkeys(entity.key for entity in entities.values()))

        await self._prefetch_dictionary(keys)
        self._prefetch_media(keys)

        grouped: Dict[str, List[EnrichmentTask]] = {}
        for task in tasks:
            grouped.setdefault(task.entity_id, []).append(task)

        semaphore = asyncio.Semaphore(max(1, self.config.parallel))

        async def run_one(entity_id: str, group: List[EnrichmentTask]) -> PipelineResult:
            entity = entities.get(entity_id)
            if entity is None:
                raise EntityNotFoundError(entity_id)
            prefetched = Prefetched(
                dictionary_entries=self.dictionary_cache.get(entity.key),
                media=self.media_cache.get(entity.key)
            )
            async with semaphore:
                if leases is not None and not leases.acquire(entity_id):
                    raise EntityBusyError(entity_id)
                try:
                    if leases is not None:
                        # Another job may have written the card since the batch read
                        entity = self.repo.find_by_id(entity_id) or entity
                    result = await self.pipeline.run(
                        entity,
                        force=any(task.force for task in group),
                        prefetched=prefetched,
                        guard=guard,
                        context=group[0].context
                    )
                finally:
                    if leases is not None:
                        leases.release(entity_id)
            self._remember_media(result)
            return result

        entity_ids = list(grouped)
        settled = await asyncio.gather(
            *(run_one(entity_id, grouped[entity_id]) for entity_id in entity_ids),
            return_exceptions=True
        )
        outcomes = dict(zip(entity_ids, settled))

        results = []
        for task in tasks:
            outcome = outcomes[task.entity_id]
            if isinstance(outcome, EntityBusyError):
                logger.info(f"Skipped card {task.entity_id}: {outcome}")
                results.append(BatchItemResult(task, error=outcome))
            elif isinstance(outcome, BaseException):
                logger.error(f"Enrichment failed for card {task.entity_id}: {outcome}")
                results.append(BatchItemResult(task, error=outcome))
            else:
                results.append(BatchItemResult(task, result=outcome))

        failed = sum(1 for r in results if not r.ok)
        logger.info(f"Batch of {len(tasks)} tasks over {len(keys)} keys done, {failed} failed")
        return results

    async def process_all(
        self,
        tasks: List[EnrichmentTask],
        guard: Optional[Guard] = None,
        backlog: int = 0,
        on_batch: Optional[Callable[[List[BatchItemResult]], None]] = None,
        leases: Optional[EntityLeases] = None
    ) -> List[BatchItemResult]:
        """
        Process tasks in consecutive batches with the inter-batch delay.

        Args:
            tasks: Everything to process
            guard: Lock guard passed to every pipeline run
            backlog: Waiting jobs; larger backlogs get larger batches
            on_batch: Called with the results so far after each batch
            leases: Per-card leases taken around each pipeline run
        """
        size = max(1, dynamic_batch_size(self.config.size, backlog))
        results: List[BatchItemResult] = []

        for start in range(0, len(tasks), size):
            if start and self.config.delay > 0:
                await self._sleep(self.config.delay)
            results.extend(await self.process_batch(tasks[start:start + size], guard=guard, leases=leases))
            if on_batch:
                on_batch(results)

        self.dictionary_cache.evict_expired()
        self.media_cache.evict_expired()
        return results

    def get_stats(self) -> Dict[str, Any]:
        return {
            'dictionary_cache': self.dictionary_cache.get_stats(),
            'media_cache': self.media_cache.get_stats(),
        }
