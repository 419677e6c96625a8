"""
Job submission and queue handlers for card and deck enrichment.
"""

import logging
from typing import Any, Dict, List, Optional

from hanziflow.db.models import Job, JobState
from hanziflow.db.repository import CardRepository
from hanziflow.errors import EntityBusyError, EntityNotFoundError, ValidationError
from hanziflow.jobs.queue import JobPriority, JobStore
from hanziflow.jobs.worker import Handler, JobContext
from hanziflow.models.entity import EnrichableEntity
from .batch import BatchProcessor, EnrichmentTask
from .pipeline import EnrichmentPipeline

logger = logging.getLogger(__name__)

CARD_ENRICHMENT_QUEUE = 'card-enrichment'
DECK_ENRICHMENT_QUEUE = 'deck-enrichment'
DECK_IMPORT_QUEUE = 'deck-import'

ENRICH_CARD = 'enrich-card'
ENRICH_DECK = 'enrich-deck'
IMPORT_DECK = 'import-deck'


def card_dedupe_key(entity_id: str) -> str:
    return f"{CARD_ENRICHMENT_QUEUE}:{entity_id}"


def submit_card_enrichment(
    store: JobStore,
    entity_id: str,
    force: bool = False,
    priority: int = JobPriority.USER_INITIATED,
    user_id: Optional[str] = None,
    provider: Optional[str] = None,
    disambiguation_selection: Optional[Dict[str, str]] = None
) -> str:
    """
    Enqueue enrichment of one card.

    At most one enrichment job per card is outstanding: a second request
    gets the existing job's id. A forced request upgrades a job that has not
    started yet.

    Returns:
        Job ID
    """
    dedupe_key = card_dedupe_key(entity_id)
    existing = store.find_outstanding(dedupe_key)
    if existing is not None:
        updates: Dict[str, Any] = {}
        if force and not (existing.payload or {}).get('force'):
            updates['force'] = True
        if disambiguation_selection:
            updates['disambiguation_selection'] = dict(disambiguation_selection)
        if updates and existing.state == JobState.WAITING:
            store.update_waiting_payload(existing.job_id, updates)
        logger.info(f"Card {entity_id} already has outstanding job {existing.job_id}")
        return existing.job_id

    payload: Dict[str, Any] = {'entity_id': entity_id, 'force': force}
    if user_id is not None:
        payload['user_id'] = user_id
    if provider is not None:
        payload['provider'] = provider
    if disambiguation_selection:
        payload['disambiguation_selection'] = dict(disambiguation_selection)

    return store.enqueue(
        CARD_ENRICHMENT_QUEUE,
        ENRICH_CARD,
        payload,
        priority=priority,
        dedupe_key=dedupe_key
    )


def submit_deck_enrichment(
    store: JobStore,
    entity_ids: List[str],
    force: bool = False,
    priority: int = JobPriority.DECK,
    user_id: Optional[str] = None
) -> str:
    payload: Dict[str, Any] = {'entity_ids': list(entity_ids), 'force': force}
    if user_id is not None:
        payload['user_id'] = user_id
    return store.enqueue(DECK_ENRICHMENT_QUEUE, ENRICH_DECK, payload, priority=priority)


def submit_deck_import(
    store: JobStore,
    keys: List[str],
    priority: int = JobPriority.BULK_IMPORT,
    user_id: Optional[str] = None
) -> str:
    payload: Dict[str, Any] = {'keys': list(keys)}
    if user_id is not None:
        payload['user_id'] = user_id
    return store.enqueue(DECK_IMPORT_QUEUE, IMPORT_DECK, payload, priority=priority)


class JobEntityLeases:
    """Card leases held on behalf of one job"""

    def __init__(self, store: JobStore, job_id: str):
        self.store = store
        self.job_id = job_id

    def acquire(self, entity_id: str) -> bool:
        return self.store.acquire_entity_lease(entity_id, self.job_id)

    def release(self, entity_id: str) -> None:
        self.store.release_entity_lease(entity_id, self.job_id)


class EnrichmentHandlers:
    """
    Job handlers for the enrichment queues.

    Usage:
        handlers = EnrichmentHandlers(store, cards, pipeline, batch_processor)
        worker = Worker(store, CARD_ENRICHMENT_QUEUE, handlers.for_queue(CARD_ENRICHMENT_QUEUE))
    """

    def __init__(
        self,
        store: JobStore,
        repo: CardRepository,
        pipeline: EnrichmentPipeline,
        batch_processor: Optional[BatchProcessor] = None
    ):
        self.store = store
        self.repo = repo
        self.pipeline = pipeline
        self.batch_processor = batch_processor or BatchProcessor(pipeline)

    def for_queue(self, queue: str) -> Handler:
        handlers = {
            CARD_ENRICHMENT_QUEUE: self.enrich_card,
            DECK_ENRICHMENT_QUEUE: self.enrich_deck,
            DECK_IMPORT_QUEUE: self.import_deck,
        }
        if queue not in handlers:
            raise ValueError(f"No handler for queue: {queue}")
        return handlers[queue]

    async def enrich_card(self, job: Job, ctx: JobContext) -> Dict[str, Any]:
        payload = job.payload or {}
        entity_id = payload.get('entity_id')
        if not entity_id:
            raise ValidationError(f"Job {job.job_id} has no entity_id")

        # A busy card is held by a deck job; the worker defers this one
        leases = JobEntityLeases(self.store, job.job_id)
        if not leases.acquire(entity_id):
            raise EntityBusyError(entity_id)
        try:
            entity = self.repo.find_by_id(entity_id)
            if entity is None:
                raise EntityNotFoundError(entity_id)
            return await self._enrich_leased_card(job, ctx, entity)
        finally:
            leases.release(entity_id)

    async def _enrich_leased_card(self, job: Job, ctx: JobContext, entity: EnrichableEntity) -> Dict[str, Any]:
        payload = job.payload or {}
        selection = payload.get('disambiguation_selection')
        if selection:
            entity.pronunciation = selection.get('pronunciation') or entity.pronunciation
            entity.gloss = selection.get('gloss') or entity.gloss
            entity.disambiguated = True
            # A user's choice invalidates whatever depended on the old reading
            entity.complexity = None
            entity.audio_ref = None
            entity.cached = False
            ctx.ensure_lock()
            self.repo.save(entity)

        task = EnrichmentTask.from_job(job)
        result = await self.pipeline.run(
            entity,
            force=task.force,
            progress=lambda stage, message: ctx.update_progress(stage, message),
            guard=ctx.ensure_lock,
            context=task.context
        )
        ctx.update_progress('done', f"Enriched {entity.key}")
        return result.to_dict()

    async def enrich_deck(self, job: Job, ctx: JobContext) -> Dict[str, Any]:
        payload = job.payload or {}
        force = bool(payload.get('force', False))
        context = {'user_id': payload['user_id']} if payload.get('user_id') else {}
        tasks = [
            EnrichmentTask(entity_id=entity_id, force=force, task_id=job.job_id, context=context)
            for entity_id in payload.get('entity_ids', [])
        ]
        total = len(tasks)
        ctx.update_progress('enriching', f"Enriching {total} cards", {'processed': 0, 'failed': 0, 'total': total})

        def on_batch(results):
            failed = sum(1 for r in results if not r.ok)
            ctx.update_progress(
                'enriching',
                f"Enriched {len(results)} of {total} cards",
                {'processed': len(results), 'failed': failed, 'total': total}
            )

        results = await self.batch_processor.process_all(
            tasks,
            guard=ctx.ensure_lock,
            backlog=self.store.count_waiting(job.queue),
            on_batch=on_batch,
            leases=JobEntityLeases(self.store, job.job_id)
        )
        # Busy cards are being enriched by their own card job
        busy = [r.task.entity_id for r in results if r.busy]
        failed = [r.task.entity_id for r in results if not r.ok and not r.busy]
        ctx.update_progress(
            'done',
            f"Enriched {total - len(failed) - len(busy)} of {total} cards",
            {'processed': len(results), 'failed': len(failed), 'total': total}
        )
        return {'total': total, 'succeeded': total - len(failed) - len(busy), 'failed': failed, 'busy': busy}

    async def import_deck(self, job: Job, ctx: JobContext) -> Dict[str, Any]:
        payload = job.payload or {}
        keys = [key.strip() for key in payload.get('keys', []) if key and key.strip()]
        if not keys:
            raise ValidationError(f"Job {job.job_id} has no keys to import")

        distinct = list(dict.fromkeys(keys))
        entity_ids = []
        for index, key in enumerate(distinct, start=1):
            ctx.ensure_lock()
            entity_ids.append(self.repo.get_or_create(key).id)
            if index % 50 == 0:
                ctx.update_progress('importing', f"Imported {index} cards", {'processed': index, 'total': len(distinct)})

        ctx.ensure_lock()
        deck_job_id = submit_deck_enrichment(self.store, entity_ids, user_id=payload.get('user_id'))
        ctx.update_progress('done', f"Imported {len(entity_ids)} cards")
        return {'entity_ids': entity_ids, 'enrichment_job_id': deck_job_id}
