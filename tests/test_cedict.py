"""
Tests for the CC-CEDICT loader and the SQL dictionary.
"""

import shutil
import tempfile
from pathlib import Path

import pytest

from hanziflow.db.repository import DictionaryRepository
from hanziflow.enrichment.cedict import iter_cedict, load_cedict, parse_cedict_line
from hanziflow.enrichment.collaborators import SqlDictionary
from helpers import make_database

SAMPLE = """\
# CC-CEDICT
# Community maintained free Chinese-English dictionary.
水 水 [shui3] /water/river/CL:杯[bei1],桶[tong3]/
長 长 [chang2] /length/long/
長 长 [zhang3] /chief; head/to grow/
房間 房间 [fang2 jian1] /room/CL:間|间[jian1],個|个[ge4]/
this line is not an entry
"""


class TestParsing:

    def test_parse_line(self):
        record = parse_cedict_line('長 长 [zhang3] /chief; head/to grow/')
        assert record.traditional == '長'
        assert record.simplified == '长'
        assert record.pinyin == 'zhang3'
        assert record.definitions == ['chief; head', 'to grow']

    @pytest.mark.parametrize('line', ['', '   ', '# comment', '水 水 shui3 /water/', 'garbage'])
    def test_non_entries(self, line):
        assert parse_cedict_line(line) is None

    def test_iter_skips_comments_and_garbage(self):
        records = list(iter_cedict(SAMPLE.splitlines()))
        assert [r.traditional for r in records] == ['水', '長', '長', '房間']
        assert records[3].pinyin == 'fang2 jian1'


class TestLoadCedict:

    def setup_method(self):
        self.db = make_database()
        self.repo = DictionaryRepository(self.db, batch_size=2)
        self.temp_dir = tempfile.mkdtemp()
        self.path = Path(self.temp_dir) / 'cedict_ts.u8'
        self.path.write_text(SAMPLE, encoding='utf-8')

    def teardown_method(self):
        self.db.dispose()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_load_in_batches(self):
        assert load_cedict(self.path, self.repo, batch_size=3) == 4
        assert self.repo.count() == 4

    def test_lookup_by_either_form(self):
        load_cedict(self.path, self.repo)

        assert [r.pinyin for r in self.repo.lookup('長')] == ['chang2', 'zhang3']
        assert [r.pinyin for r in self.repo.lookup('长')] == ['chang2', 'zhang3']
        assert self.repo.lookup('火') == []

    def test_lookup_many_chunks_queries(self):
        load_cedict(self.path, self.repo)

        found = self.repo.lookup_many(['水', '房間', '火', '水'])

        assert list(found) == ['水', '房間', '火']
        assert found['房間'][0].definitions[0] == 'room'
        assert found['火'] == []

    def test_replace(self):
        load_cedict(self.path, self.repo)
        load_cedict(self.path, self.repo)
        assert self.repo.count() == 8

        assert load_cedict(self.path, self.repo, replace=True) == 4
        assert self.repo.count() == 4

    @pytest.mark.asyncio
    async def test_sql_dictionary_collaborator(self):
        load_cedict(self.path, self.repo)
        dictionary = SqlDictionary(self.repo)

        entries = await dictionary('水', {})

        assert entries[0].definitions[:2] == ['water', 'river']
