"""
Tests for configuration loading and logging setup.
"""

import logging
import os
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from hanziflow.config import HanziflowConfig, setup_logging


class TestHanziflowConfig:

    def setup_method(self):
        HanziflowConfig.reset()
        self.temp_dir = tempfile.TemporaryDirectory()
        # Keep a developer's ~/.hanziflow/config.yaml out of the tests
        self.home = patch.object(Path, 'home', return_value=Path(self.temp_dir.name))
        self.home.start()

    def teardown_method(self):
        self.home.stop()
        HanziflowConfig.reset()
        self.temp_dir.cleanup()

    def _write(self, data):
        path = Path(self.temp_dir.name) / 'config.yaml'
        path.write_text(yaml.safe_dump(data), encoding='utf-8')
        return str(path)

    def test_singleton(self):
        assert HanziflowConfig() is HanziflowConfig()

    def test_defaults(self):
        config = HanziflowConfig()
        assert config.get('database.type') == 'sqlite'
        assert config.get('rate_limits.openai') == {'rate': 2, 'burst': 5}
        assert config.get('jobs.queues.card-enrichment.concurrency') == 5
        assert config.get('batch.size') == 10
        assert config.get('does.not.exist', 'fallback') == 'fallback'

    def test_user_config_file_is_merged(self):
        user_dir = Path(self.temp_dir.name) / '.hanziflow'
        user_dir.mkdir()
        (user_dir / 'config.yaml').write_text('batch:\n  size: 40\n', encoding='utf-8')

        config = HanziflowConfig()
        assert config.get('batch.size') == 40
        assert config.get('batch.delay') == 1.0

    def test_from_file_merges_over_defaults(self):
        path = self._write({'jobs': {'queues': {'card-enrichment': {'concurrency': 9}}}})

        config = HanziflowConfig.from_file(path)

        assert config.get('jobs.queues.card-enrichment.concurrency') == 9
        assert config.get('jobs.queues.card-enrichment.lock_duration') == 300.0
        assert config.get('jobs.queues.deck-import.concurrency') == 2

    def test_from_file_missing(self):
        with pytest.raises(FileNotFoundError):
            HanziflowConfig.from_file(str(Path(self.temp_dir.name) / 'missing.yaml'))

    def test_set_and_setup(self):
        config = HanziflowConfig()
        config.set('monitoring.health_port', 9090)
        config.set('new.section.value', 'x')
        assert config.get('monitoring.health_port') == 9090
        assert config.get('new.section.value') == 'x'

        HanziflowConfig.setup(batch={'parallel': 2})
        assert HanziflowConfig().get('batch.parallel') == 2
        assert HanziflowConfig().get('batch.size') == 10

    def test_queue_config_fills_defaults(self):
        settings = HanziflowConfig().get_queue_config('deck-enrichment')
        assert settings['concurrency'] == 3
        assert settings['lock_duration'] == 600.0
        assert settings['max_attempts'] == 3
        assert settings['backoff']['delay'] == 5.0

    def test_unknown_queue_gets_defaults(self):
        settings = HanziflowConfig().get_queue_config('emails')
        assert settings['max_attempts'] == 3
        assert 'concurrency' not in settings

    def test_openai_key_from_environment(self):
        with patch.dict(os.environ, {'OPENAI_API_KEY': 'sk-env'}):
            assert HanziflowConfig().get_openai_config()['api_key'] == 'sk-env'

        HanziflowConfig.setup(openai={'api_key': 'sk-file'})
        with patch.dict(os.environ, {'OPENAI_API_KEY': 'sk-env'}):
            assert HanziflowConfig().get_openai_config()['api_key'] == 'sk-file'

    def test_invalid_database_type(self):
        with pytest.raises(RuntimeError, match='Unsupported database type'):
            HanziflowConfig.setup(database={'type': 'oracle'})

    def test_rate_limits_need_positive_rate(self):
        with pytest.raises(RuntimeError, match='positive rate'):
            HanziflowConfig.setup(rate_limits={'openai': {'rate': 0}})


class TestSetupLogging:

    def setup_method(self):
        HanziflowConfig.reset()

    def teardown_method(self):
        HanziflowConfig.reset()

    def test_level_and_format_from_config(self):
        config = HanziflowConfig()
        config.set('logging.level', 'warning')
        with patch('logging.basicConfig') as basic_config:
            setup_logging(config)

        kwargs = basic_config.call_args.kwargs
        assert kwargs['level'] == logging.WARNING
        assert kwargs['format'] == config.get('logging.format')
        assert logging.getLogger('httpx').level == logging.WARNING

    def test_explicit_level_wins(self):
        with patch('logging.basicConfig') as basic_config:
            setup_logging(HanziflowConfig(), level='debug')
        assert basic_config.call_args.kwargs['level'] == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self):
        with patch('logging.basicConfig') as basic_config:
            setup_logging(HanziflowConfig(), level='chatty')
        assert basic_config.call_args.kwargs['level'] == logging.INFO
