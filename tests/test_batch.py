"""
Tests for batched enrichment with per-key prefetching.
"""

import shutil
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, Mock, patch

import pytest

from hanziflow.db.repository import CardRepository
from hanziflow.enrichment.batch import (
    BatchConfig,
    BatchProcessor,
    EnrichmentTask,
    dynamic_batch_size
)
from hanziflow.enrichment.collaborators import EnrichmentServices
from hanziflow.enrichment.pipeline import EnrichmentPipeline
from hanziflow.errors import EntityNotFoundError, TransientExternalError
from hanziflow.models import DictionaryRecord
from hanziflow.storage import FileSystemStorage, MediaStore
from helpers import DictConfig, FakeClock, make_database, valid_insights

DICTIONARY = {
    '水': [DictionaryRecord('水', '水', 'shui3', ['water'])],
    '火': [DictionaryRecord('火', '火', 'huo3', ['fire'])],
    '山': [DictionaryRecord('山', '山', 'shan1', ['mountain'])],
}


async def lookup(key, context):
    return DICTIONARY.get(key, [])


async def interpret(key, context):
    entry = context['dictionary_entry']
    return {'pronunciation': entry['pinyin'], 'gloss': entry['definitions'][0]}


class TestBatchProcessor:

    def setup_method(self):
        self.db = make_database()
        self.repo = CardRepository(self.db)
        self.temp_dir = tempfile.mkdtemp()
        self.media_store = MediaStore(FileSystemStorage({'path': str(Path(self.temp_dir) / 'media')}))
        self.lookup = AsyncMock(side_effect=lookup)
        self.services = EnrichmentServices(
            dictionary_lookup=self.lookup,
            interpret=AsyncMock(side_effect=interpret),
            find_confusions=AsyncMock(return_value=[]),
            generate_image=AsyncMock(return_value=b'image'),
            synthesize_audio=AsyncMock(return_value=b'audio'),
            generate_insights=AsyncMock(return_value=valid_insights()),
        )
        self.pipeline = EnrichmentPipeline(self.repo, self.services, media_store=self.media_store)
        self.clock = FakeClock()
        self.processor = BatchProcessor(
            self.pipeline,
            BatchConfig(size=10, delay=2.0, parallel=3),
            clock=self.clock,
            sleep=self.clock.sleep
        )

    def teardown_method(self):
        self.db.dispose()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _cards(self, keys):
        return [self.repo.create({'key': key}).id for key in keys]

    @pytest.mark.asyncio
    async def test_prefetches_once_per_distinct_key(self):
        ids = self._cards(['水', '火', '山', '水', '火', '山', '水', '火', '山', '水'])
        tasks = [EnrichmentTask(entity_id) for entity_id in ids]

        with patch.object(self.media_store, 'existing_media', wraps=self.media_store.existing_media) as existing, \
                patch.object(self.repo, 'find_many', wraps=self.repo.find_many) as find_many:
            results = await self.processor.process_batch(tasks)

        assert len(results) == 10
        assert all(r.ok for r in results)
        assert [r.task.entity_id for r in results] == ids
        assert find_many.call_count == 1
        assert self.lookup.call_count == 3
        assert existing.call_count == 3
        assert sorted(call.args[0] for call in existing.call_args_list) == sorted(['水', '火', '山'])

    @pytest.mark.asyncio
    async def test_all_tasks_settle_when_some_fail(self):
        ids = self._cards(['水', '火'])
        self.services.generate_insights = AsyncMock(return_value=valid_insights())

        async def flaky_interpret(key, context):
            if key == '火':
                raise TransientExternalError('timeout')
            return await interpret(key, context)

        self.services.interpret = AsyncMock(side_effect=flaky_interpret)
        tasks = [EnrichmentTask(ids[0]), EnrichmentTask('card_missing'), EnrichmentTask(ids[1])]

        results = await self.processor.process_batch(tasks)

        assert results[0].ok and results[0].result.cached
        assert isinstance(results[1].error, EntityNotFoundError)
        # Dictionary fallback keeps the card usable but not cached
        assert results[2].ok and not results[2].result.cached
        assert results[1].to_dict() == {
            'entity_id': 'card_missing',
            'ok': False,
            'error': 'Card not found: card_missing',
        }

    @pytest.mark.asyncio
    async def test_failed_prefetch_falls_back_to_run_lookup(self):
        ids = self._cards(['水'])
        self.lookup.side_effect = [RuntimeError('db busy'), DICTIONARY['水']]

        results = await self.processor.process_batch([EnrichmentTask(ids[0])])

        assert results[0].ok
        assert self.lookup.call_count == 2
        assert '水' not in self.processor.dictionary_cache

    @pytest.mark.asyncio
    async def test_duplicate_tasks_run_once_with_force_if_any(self):
        ids = self._cards(['水'])
        tasks = [EnrichmentTask(ids[0]), EnrichmentTask(ids[0], force=True)]

        with patch.object(self.pipeline, 'run', wraps=self.pipeline.run) as run:
            results = await self.processor.process_batch(tasks)

        assert run.call_count == 1
        assert run.call_args.kwargs['force'] is True
        assert results[0].result is results[1].result

    @pytest.mark.asyncio
    async def test_caches_are_reused_across_batches(self):
        first = self._cards(['水'])
        await self.processor.process_batch([EnrichmentTask(first[0])])

        second = self._cards(['水'])
        with patch.object(self.media_store, 'existing_media') as existing:
            await self.processor.process_batch([EnrichmentTask(second[0])])

        assert self.lookup.call_count == 1
        existing.assert_not_called()
        assert self.services.generate_image.call_count == 1

    @pytest.mark.asyncio
    async def test_caches_expire(self):
        first = self._cards(['水'])
        await self.processor.process_batch([EnrichmentTask(first[0])])
        self.clock.advance(301)

        second = self._cards(['水'])
        await self.processor.process_batch([EnrichmentTask(second[0])])

        assert self.lookup.call_count == 2

    @pytest.mark.asyncio
    async def test_process_all_splits_batches_with_delay(self):
        self.processor.config.size = 2
        ids = self._cards(['水', '火', '山', '水', '火'])
        on_batch = Mock()

        results = await self.processor.process_all([EnrichmentTask(i) for i in ids], on_batch=on_batch)

        assert len(results) == 5
        assert on_batch.call_count == 3
        assert self.clock.sleeps == [2.0, 2.0]

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        assert await self.processor.process_batch([]) == []

    def test_stats(self):
        stats = self.processor.get_stats()
        assert stats['dictionary_cache']['size'] == 0
        assert stats['media_cache']['ttl'] == 300.0


class TestBatchSizing:

    @pytest.mark.parametrize('backlog, expected', [(0, 10), (500, 10), (501, 15), (1000, 15), (1001, 20)])
    def test_dynamic_batch_size(self, backlog, expected):
        assert dynamic_batch_size(10, backlog) == expected

    def test_config_from_settings(self):
        config = BatchConfig.from_config(DictConfig({'batch': {'size': 25, 'parallel': 8}}))
        assert config.size == 25
        assert config.parallel == 8
        assert config.delay == 1.0


class TestEnrichmentTask:

    def test_from_job(self):
        job = Mock(job_id='7', payload={'entity_id': 'card_1', 'force': True, 'user_id': 'u1', 'provider': None})
        task = EnrichmentTask.from_job(job)
        assert task.entity_id == 'card_1'
        assert task.force is True
        assert task.task_id == '7'
        assert task.context == {'user_id': 'u1'}
