"""
Shared test utilities: fake clocks and an in-memory database.
"""

from datetime import datetime, timedelta

from hanziflow.db.connection import Database


class FakeClock:
    """Monotonic clock advanced by hand; ``sleep`` advances it instead of waiting"""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeDateTimeClock:
    """Naive-UTC datetime clock for the job store"""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_database() -> Database:
    """Fresh in-memory database with every table created"""
    db = Database(url='sqlite://')
    db.create_tables()
    return db


class DictConfig:
    """Stand-in for HanziflowConfig backed by a nested dict"""

    def __init__(self, data):
        self.data = data

    def get(self, key, default=None):
        value = self.data
        try:
            for part in key.split('.'):
                value = value[part]
        except (KeyError, TypeError):
            return default
        return value

    def get_queue_config(self, queue_name):
        merged = dict(self.get('jobs.defaults', {}) or {})
        merged.update(self.get(f'jobs.queues.{queue_name}', {}) or {})
        return merged

    def get_openai_config(self):
        return dict(self.get('openai', {}) or {})


def valid_insights():
    return {
        'etymology': {'origin': 'Pictograph of flowing water', 'evolution': ['oracle bone', 'seal script']},
        'mnemonics': {'visual': 'A stream splitting around a rock'},
        'commonErrors': {'similarCharacters': ['氷', '永']},
        'usage': {'commonCollocations': ['喝水', '水果'], 'frequency': 5},
        'learningTips': {'forBeginners': ['Learn it with 氵, its radical form']},
    }
