"""
Enrichment Pipeline

Brings one card to "fully enriched" through an ordered sequence of stages:

1. lexical      - dictionary lookup, preferred entry for polyphonic keys
2. interpretation - pronunciation and gloss (AI, rate limited)
3. complexity   - local metrics, no external call
4. confusions   - similar keys (AI, rate limited)
5. image        - shared visual asset (rate limited)
6. audio        - shared audio asset (rate limited), needs a pronunciation
7. insights     - validated rich insights (AI, rate limited)
8. commit       - sets ``cached`` and persists

A stage is skipped when valid output already exists and ``force`` is not
set, so a second run over an enriched card makes no external calls. Results
are checkpointed after every stage that changes the card; a later failure
never discards earlier stages.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from hanziflow.db.models import utcnow
from hanziflow.db.repository import CardRepository
from hanziflow.errors import ConfigurationError, LockLostError, ValidationError
from hanziflow.jobs.rate_limiter import RateLimiterRegistry
from hanziflow.models.entity import MISSING_GLOSSES, DictionaryRecord, EnrichableEntity
from hanziflow.models.insights import validate_insights
from hanziflow.storage.media_store import MediaStore
from .collaborators import EnrichmentServices
from .complexity import analyze_complexity
from .confusion import fallback_confusions, filter_confusions
from .pronunciation import get_preferred_entry, tone_numbers_to_marks

logger = logging.getLogger(__name__)

STAGES = (
    'lexical', 'interpretation', 'complexity', 'confusions',
    'image', 'audio', 'insights', 'commit',
)

# Rate-limiter service per external stage
STAGE_SERVICES = {
    'interpretation': 'openai',
    'confusions': 'openai',
    'image': 'image',
    'audio': 'tts',
    'insights': 'openai',
}

DB_READ = 'db-read'
DB_WRITE = 'db-write'


class StageStatus:
    SKIPPED = 'skipped'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'


@dataclass
class StageOutcome:
    stage: str
    status: str
    error: Optional[str] = None
    changed: bool = False


@dataclass
class Prefetched:
    """Data a batch already fetched; None fields are looked up by the run itself"""
    dictionary_entries: Optional[List[DictionaryRecord]] = None
    media: Optional[Dict[str, bool]] = None


@dataclass
class PipelineResult:
    entity: EnrichableEntity
    stages: Dict[str, StageOutcome] = field(default_factory=dict)
    external_calls: int = 0

    @property
    def cached(self) -> bool:
        return self.entity.cached

    @property
    def failed_stages(self) -> List[str]:
        return [name for name, outcome in self.stages.items() if outcome.status == StageStatus.FAILED]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entity_id': self.entity.id,
            'key': self.entity.key,
            'cached': self.entity.cached,
            'has_insights': self.entity.has_insights,
            'external_calls': self.external_calls,
            'stages': {name: outcome.status for name, outcome in self.stages.items()},
            'failed_stages': self.failed_stages,
        }


ProgressCallback = Callable[[str, str], None]
Guard = Callable[[], None]


class _Run:
    """Mutable state of one pipeline run"""

    def __init__(self, entity, force, prefetched, progress, guard, context):
        self.entity = entity
        self.force = force
        self.prefetched = prefetched or Prefetched()
        self.progress = progress
        self.guard = guard
        self.context = context
        self.dictionary_entry: Optional[DictionaryRecord] = None
        self.result = PipelineResult(entity=entity)


class EnrichmentPipeline:
    """
    Per-card stage sequence.

    Usage:
        pipeline = EnrichmentPipeline(cards, services, media_store, limiters)
        result = await pipeline.run(entity, force=False, guard=ctx.ensure_lock)
    """

    def __init__(
        self,
        repo: CardRepository,
        services: EnrichmentServices,
        media_store: Optional[MediaStore] = None,
        limiters: Optional[RateLimiterRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
        confusion_limit: int = 3
    ):
        self.repo = repo
        self.services = services
        self.media_store = media_store
        self.limiters = limiters
        self._clock = clock
        self.confusion_limit = confusion_limit

    async def run(
        self,
        entity: EnrichableEntity,
        force: bool = False,
        prefetched: Optional[Prefetched] = None,
        progress: Optional[ProgressCallback] = None,
        guard: Optional[Guard] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> PipelineResult:
        """
        Enrich ``entity`` in place and persist it.

        Args:
            entity: Card to enrich
            force: Redo every stage even if its output exists
            prefetched: Dictionary entries and media flags from a batch
            progress: Called with (stage, message) as each stage starts
            guard: Called before every write; raises to stop a run that
                   no longer owns its job
            context: Extra request data handed to every collaborator

        Raises:
            Whatever interpretation raises when no dictionary fallback exists,
            ConfigurationError and LockLostError.
        """
        run = _Run(entity, force, prefetched, progress, guard, dict(context or {}))

        if entity.cached and not force:
            logger.debug(f"Card {entity.id} ({entity.key}) already enriched; nothing to do")
            for stage in STAGES:
                run.result.stages[stage] = StageOutcome(stage, StageStatus.SKIPPED)
            return run.result

        logger.info(f"Enriching card {entity.id} ({entity.key}){' with force' if force else ''}")

        for stage, step in (
            ('lexical', self._lexical),
            ('interpretation', self._interpretation),
            ('complexity', self._complexity),
            ('confusions', self._confusions),
            ('image', self._image),
            ('audio', self._audio),
            ('insights', self._insights),
        ):
            self._report(run, stage)
            outcome = await step(run)
            run.result.stages[stage] = outcome
            if outcome.changed:
                await self._checkpoint(run)

        self._report(run, 'commit')
        entity.cached = not run.result.failed_stages
        run.result.stages['commit'] = StageOutcome('commit', StageStatus.SUCCEEDED, changed=True)
        await self._checkpoint(run)

        logger.info(
            f"Card {entity.id} ({entity.key}) enriched: cached={entity.cached}, "
            f"external calls={run.result.external_calls}, failed stages={run.result.failed_stages}"
        )
        return run.result

    # Plumbing

    def _report(self, run: _Run, stage: str) -> None:
        if run.progress:
            run.progress(stage, f"{stage} for {run.entity.key}")

    async def _limit(self, service: str) -> None:
        if self.limiters is not None and service in self.limiters:
            await self.limiters.acquire(service)

    async def _checkpoint(self, run: _Run) -> None:
        if run.guard:
            run.guard()
        await self._limit(DB_WRITE)
        self.repo.save(run.entity)

    def _collaborator_context(self, run: _Run) -> Dict[str, Any]:
        entry = run.dictionary_entry
        return {
            **run.context,
            'entity_id': run.entity.id,
            'pronunciation': run.entity.pronunciation,
            'gloss': run.entity.gloss,
            'dictionary_entry': asdict(entry) if entry else None,
        }

    async def _call(self, run: _Run, stage: str, collaborator, key: str) -> Any:
        await self._limit(STAGE_SERVICES[stage])
        run.result.external_calls += 1
        return await collaborator(key, self._collaborator_context(run))

    def _failed(self, run: _Run, stage: str, error: Exception, changed: bool = False) -> StageOutcome:
        """Stage-local failure: logged and recorded, the run continues"""
        if isinstance(error, (LockLostError, ConfigurationError)):
            raise error
        if isinstance(error, ValidationError):
            logger.warning(f"Discarded {stage} output for {run.entity.key}: {error}")
        else:
            logger.error(f"Stage {stage} failed for {run.entity.key}: {error}")
        return StageOutcome(stage, StageStatus.FAILED, error=str(error), changed=changed)

    # Stages

    async def _lexical(self, run: _Run) -> StageOutcome:
        entity = run.entity
        if entity.has_pronunciation and entity.has_gloss and not run.force:
            return StageOutcome('lexical', StageStatus.SKIPPED)

        entries = run.prefetched.dictionary_entries
        if entries is None:
            if self.services.dictionary_lookup is None:
                return StageOutcome('lexical', StageStatus.SKIPPED)
            try:
                await self._limit(DB_READ)
                entries = await self.services.dictionary_lookup(entity.key, self._collaborator_context(run))
            except Exception as e:
                return self._failed(run, 'lexical', e)

        run.dictionary_entry = get_preferred_entry(entity.key, list(entries or []))
        if run.dictionary_entry is None:
            logger.info(f"No dictionary entry for {entity.key}")
        return StageOutcome('lexical', StageStatus.SUCCEEDED)

    def _apply_dictionary(self, run: _Run) -> bool:
        """Fill pronunciation and gloss from the dictionary entry, if it has a usable one"""
        entry = run.dictionary_entry
        if entry is None or not entry.definitions or not entry.pinyin:
            return False
        run.entity.pronunciation = tone_numbers_to_marks(entry.pinyin)
        run.entity.gloss = entry.primary_definition
        return run.entity.has_pronunciation and run.entity.has_gloss

    async def _interpretation(self, run: _Run) -> StageOutcome:
        entity = run.entity
        if entity.has_pronunciation and entity.has_gloss and (entity.disambiguated or not run.force):
            return StageOutcome('interpretation', StageStatus.SKIPPED)

        if self.services.interpret is None:
            if self._apply_dictionary(run):
                return StageOutcome('interpretation', StageStatus.SUCCEEDED, changed=True)
            raise ConfigurationError(f"No interpretation service and no dictionary entry for {entity.key}")

        try:
            result = await self._call(run, 'interpretation', self.services.interpret, entity.key)
            if not isinstance(result, dict):
                raise ValidationError(f"Interpretation of {entity.key} is not an object")
            pronunciation = str(result.get('pronunciation') or '').strip()
            gloss = str(result.get('gloss') or '').strip()
            if not pronunciation:
                raise ValidationError(f"Interpretation of {entity.key} has no pronunciation")
            if gloss in MISSING_GLOSSES:
                raise ValidationError(f"Interpretation of {entity.key} has no gloss")
        except (LockLostError, ConfigurationError):
            raise
        except Exception as e:
            if self._apply_dictionary(run):
                logger.warning(f"Interpretation failed for {entity.key}, using dictionary entry: {e}")
                return StageOutcome('interpretation', StageStatus.FAILED, error=str(e), changed=True)
            raise

        entity.pronunciation = pronunciation
        entity.gloss = gloss
        return StageOutcome('interpretation', StageStatus.SUCCEEDED, changed=True)

    async def _complexity(self, run: _Run) -> StageOutcome:
        entity = run.entity
        if _valid_complexity(entity.complexity) and not run.force:
            return StageOutcome('complexity', StageStatus.SKIPPED)
        entity.complexity = analyze_complexity(entity.key, entity.pronunciation, entity.gloss)
        return StageOutcome('complexity', StageStatus.SUCCEEDED, changed=True)

    async def _confusions(self, run: _Run) -> StageOutcome:
        entity = run.entity
        if entity.confusions is not None and not run.force:
            return StageOutcome('confusions', StageStatus.SKIPPED)

        if self.services.find_confusions is None:
            entity.confusions = fallback_confusions(entity.key, self.confusion_limit)
            return StageOutcome('confusions', StageStatus.SUCCEEDED, changed=True)

        try:
            candidates = await self._call(run, 'confusions', self.services.find_confusions, entity.key)
        except Exception as e:
            fallback = fallback_confusions(entity.key, self.confusion_limit)
            if fallback:
                entity.confusions = fallback
            return self._failed(run, 'confusions', e, changed=bool(fallback))

        confusions = filter_confusions(entity.key, candidates, self.confusion_limit)
        entity.confusions = confusions or fallback_confusions(entity.key, self.confusion_limit)
        return StageOutcome('confusions', StageStatus.SUCCEEDED, changed=True)

    async def _media(self, run: _Run, stage: str, kind: str, collaborator, field_name: str) -> StageOutcome:
        entity = run.entity
        if getattr(entity, field_name) and not run.force:
            return StageOutcome(stage, StageStatus.SKIPPED)
        if collaborator is None or self.media_store is None:
            return StageOutcome(stage, StageStatus.SKIPPED)

        known = (run.prefetched.media or {}).get(kind)

        async def generate() -> bytes:
            return await self._call(run, stage, collaborator, entity.key)

        try:
            asset = await self.media_store.ensure(kind, entity.key, generate, force=run.force, known_exists=known)
        except Exception as e:
            return self._failed(run, stage, e)

        setattr(entity, field_name, asset.ref)
        return StageOutcome(stage, StageStatus.SUCCEEDED, changed=True)

    async def _image(self, run: _Run) -> StageOutcome:
        return await self._media(run, 'image', 'image', self.services.generate_image, 'image_ref')

    async def _audio(self, run: _Run) -> StageOutcome:
        if not run.entity.has_pronunciation:
            return StageOutcome('audio', StageStatus.SKIPPED)
        return await self._media(run, 'audio', 'audio', self.services.synthesize_audio, 'audio_ref')

    async def _insights(self, run: _Run) -> StageOutcome:
        entity = run.entity
        if entity.has_insights and not run.force:
            return StageOutcome('insights', StageStatus.SKIPPED)
        if self.services.generate_insights is None:
            return StageOutcome('insights', StageStatus.SKIPPED)

        try:
            raw = await self._call(run, 'insights', self.services.generate_insights, entity.key)
            insights = validate_insights(raw)
        except Exception as e:
            return self._failed(run, 'insights', e)

        entity.insights = insights
        entity.insights_generated_at = self._clock()
        return StageOutcome('insights', StageStatus.SUCCEEDED, changed=True)


def _valid_complexity(complexity: Optional[Dict[str, Any]]) -> bool:
    if not complexity:
        return False
    difficulty = complexity.get('difficulty')
    return isinstance(difficulty, (int, float)) and 0.0 <= difficulty <= 1.0
