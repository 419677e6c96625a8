"""
hanziflow Enrichment Module

Fills in flashcards stage by stage.

Components:
- EnrichmentPipeline: Ordered, skippable stages for one card
- BatchProcessor: Groups cards and prefetches shared data once per key
- EnrichmentHandlers: Queue handlers for card, deck and import jobs
- EnrichmentServices: The async collaborators the stages call
"""

from .batch import BatchConfig, BatchItemResult, BatchProcessor, EnrichmentTask, dynamic_batch_size
from .cedict import load_cedict, parse_cedict_line
from .collaborators import EnrichmentServices, SqlDictionary
from .complexity import analyze_complexity
from .confusion import fallback_confusions, filter_confusions
from .handlers import (
    CARD_ENRICHMENT_QUEUE,
    DECK_ENRICHMENT_QUEUE,
    DECK_IMPORT_QUEUE,
    EnrichmentHandlers,
    submit_card_enrichment,
    submit_deck_enrichment,
    submit_deck_import
)
from .pipeline import EnrichmentPipeline, PipelineResult, Prefetched, StageOutcome, StageStatus
from .pronunciation import get_preferred_entry, has_tone_marks, tone_numbers_to_marks

__all__ = [
    # Pipeline
    'EnrichmentPipeline',
    'PipelineResult',
    'Prefetched',
    'StageOutcome',
    'StageStatus',
    'EnrichmentServices',
    'SqlDictionary',

    # Batching
    'BatchProcessor',
    'BatchConfig',
    'BatchItemResult',
    'EnrichmentTask',
    'dynamic_batch_size',

    # Jobs
    'EnrichmentHandlers',
    'CARD_ENRICHMENT_QUEUE',
    'DECK_ENRICHMENT_QUEUE',
    'DECK_IMPORT_QUEUE',
    'submit_card_enrichment',
    'submit_deck_enrichment',
    'submit_deck_import',

    # Stage helpers
    'analyze_complexity',
    'filter_confusions',
    'fallback_confusions',
    'get_preferred_entry',
    'has_tone_marks',
    'tone_numbers_to_marks',
    'load_cedict',
    'parse_cedict_line',
]
