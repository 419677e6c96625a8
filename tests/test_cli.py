"""
Tests for the hanziflow command-line interface.
"""

import json
import tempfile
from pathlib import Path
from unittest.mock import patch

import yaml
from click.testing import CliRunner

from hanziflow.cli import QUEUES, Runtime, build_workers, cli
from hanziflow.config import HanziflowConfig
from hanziflow.db.connection import Database
from hanziflow.db.repository import CardRepository
from hanziflow.jobs import JobStore


class TestCli:

    def setup_method(self):
        HanziflowConfig.reset()
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.home = patch.object(Path, 'home', return_value=root)
        self.home.start()

        self.config_path = root / 'config.yaml'
        self.config_path.write_text(yaml.safe_dump({
            'database': {'type': 'sqlite', 'sqlite': {'path': str(root / 'hanziflow.db')}},
            'storage': {'media': {'path': str(root / 'media')}},
            'openai': {'api_key': None},
        }), encoding='utf-8')
        self.runner = CliRunner()
        self.invoke('init')

    def teardown_method(self):
        self.home.stop()
        HanziflowConfig.reset()
        self.temp_dir.cleanup()

    def invoke(self, *args):
        return self.runner.invoke(cli, ['--config', str(self.config_path), *args])

    def test_init(self):
        result = self.invoke('init')
        assert result.exit_code == 0
        assert 'Database tables created' in result.output
        assert 'sqlite' in result.output

    def test_enqueue_is_idempotent(self):
        first = self.invoke('enqueue', '水')
        second = self.invoke('enqueue', '水', '--force')

        assert first.exit_code == 0
        assert first.output.strip() == second.output.strip()

        status = self.invoke('status', first.output.strip())
        data = json.loads(status.output)
        assert data['state'] == 'waiting'
        assert data['queue'] == 'card-enrichment'

    def test_import(self):
        result = self.invoke('import', '水', '火')
        assert result.exit_code == 0

        data = json.loads(self.invoke('status', result.output.strip()).output)
        assert data['queue'] == 'deck-import'

    def test_unknown_job(self):
        result = self.invoke('status', '999')
        assert result.exit_code == 1
        assert 'Job not found: 999' in result.output

    def test_stats(self):
        self.invoke('enqueue', '水')
        self.invoke('enqueue', '火')

        data = json.loads(self.invoke('stats').output)
        assert data['card-enrichment']['waiting'] == 2

    def test_retry_only_failed_jobs(self):
        job_id = self.invoke('enqueue', '水').output.strip()
        result = self.invoke('retry', job_id)
        assert result.exit_code == 1
        assert 'not a failed job' in result.output

    def test_load_dictionary(self):
        path = Path(self.temp_dir.name) / 'cedict.u8'
        path.write_text('水 水 [shui3] /water/\n火 火 [huo3] /fire/\n', encoding='utf-8')

        result = self.invoke('load-dictionary', str(path))

        assert result.exit_code == 0
        assert 'Loaded 2 dictionary entries' in result.output

    def test_health_without_workers(self):
        result = self.invoke('health')
        assert result.exit_code == 0
        assert json.loads(result.output)['status'] == 'ok'

    def test_build_workers_without_api_key(self):
        config = HanziflowConfig.from_file(str(self.config_path))
        db = Database(config)
        runtime = Runtime(config, db, JobStore.from_config(db, config), CardRepository(db))

        workers = build_workers(runtime, QUEUES)

        assert [w.queue for w in workers] == list(QUEUES)
        assert workers[0].config.concurrency == 5
        pipeline = workers[0].handler.__self__.pipeline
        assert pipeline.services.interpret is None
        assert 'openai' in pipeline.limiters
        db.dispose()
