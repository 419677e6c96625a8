from typing import Any, Dict, Generic, Iterable, List, Optional, Type, TypeVar

from sqlalchemy import delete, func, or_, select

from hanziflow.models.entity import DictionaryRecord, EnrichableEntity
from .connection import Base, Database
from .models import CardRecord, DictionaryEntry

T = TypeVar('T', bound=Base)

_CARD_FIELDS = (
    'key', 'pronunciation', 'gloss', 'complexity', 'confusions', 'image_ref',
    'audio_ref', 'insights', 'insights_generated_at', 'cached', 'disambiguated'
)


class BaseRepository(Generic[T]):
    """Base repository class for common database operations"""

    def __init__(self, model_class: Type[T], db: Database):
        self.model_class = model_class
        self.db = db

    def create(self, data: Dict[str, Any]) -> T:
        """Create a new record"""
        with self.db.transaction() as session:
            instance = self.model_class(**data)
            session.add(instance)
            session.flush()
            session.refresh(instance)
            return instance

    def get(self, id: Any) -> Optional[T]:
        """Get a record by ID"""
        with self.db.session() as session:
            return session.get(self.model_class, id)

    def delete(self, id: Any) -> bool:
        """Delete a record"""
        with self.db.transaction() as session:
            instance = session.get(self.model_class, id)
            if instance:
                session.delete(instance)
                return True
            return False

    def list(self, **filters) -> List[T]:
        """List records with optional filters"""
        with self.db.session() as session:
            query = select(self.model_class)
            for key, value in filters.items():
                query = query.where(getattr(self.model_class, key) == value)
            return list(session.execute(query).scalars())

    def count(self) -> int:
        with self.db.session() as session:
            return session.execute(select(func.count()).select_from(self.model_class)).scalar_one()


class CardRepository(BaseRepository[CardRecord]):
    """Document-style store for enrichable cards, keyed by id"""

    def __init__(self, db: Database):
        super().__init__(CardRecord, db)

    @staticmethod
    def _to_entity(record: CardRecord) -> EnrichableEntity:
        return EnrichableEntity(
            id=record.id,
            **{name: getattr(record, name) for name in _CARD_FIELDS}
        )

    def find_by_id(self, entity_id: str) -> Optional[EnrichableEntity]:
        record = self.get(entity_id)
        return self._to_entity(record) if record else None

    def find_by_key(self, key: str) -> Optional[EnrichableEntity]:
        """Oldest card with this key"""
        with self.db.session() as session:
            query = select(CardRecord).where(CardRecord.key == key).order_by(CardRecord.created_at).limit(1)
            record = session.execute(query).scalar_one_or_none()
            return self._to_entity(record) if record else None

    def find_many(self, entity_ids: Iterable[str]) -> Dict[str, EnrichableEntity]:
        """Fetch many cards in a single query"""
        ids = list(dict.fromkeys(entity_ids))
        if not ids:
            return {}
        with self.db.session() as session:
            records = session.execute(select(CardRecord).where(CardRecord.id.in_(ids))).scalars()
            return {record.id: self._to_entity(record) for record in records}

    def save(self, entity: EnrichableEntity) -> EnrichableEntity:
        """Upsert the card"""
        with self.db.transaction() as session:
            record = session.get(CardRecord, entity.id)
            if record is None:
                record = CardRecord(id=entity.id)
                session.add(record)
            for name in _CARD_FIELDS:
                value = getattr(entity, name)
                # Fresh containers so the JSON columns register as changed
                if isinstance(value, dict):
                    value = dict(value)
                elif isinstance(value, list):
                    value = list(value)
                setattr(record, name, value)
        return entity

    def get_or_create(self, key: str) -> EnrichableEntity:
        existing = self.find_by_key(key)
        if existing:
            return existing
        record = self.create({'key': key})
        return self._to_entity(record)


class DictionaryRepository(BaseRepository[DictionaryEntry]):
    """Reference dictionary lookups"""

    def __init__(self, db: Database, batch_size: int = 50):
        super().__init__(DictionaryEntry, db)
        self.batch_size = batch_size

    @staticmethod
    def _to_record(entry: DictionaryEntry) -> DictionaryRecord:
        return DictionaryRecord(
            traditional=entry.traditional,
            simplified=entry.simplified,
            pinyin=entry.pinyin,
            definitions=list(entry.definitions or [])
        )

    def lookup(self, key: str) -> List[DictionaryRecord]:
        """Entries whose traditional or simplified form equals the key"""
        return self.lookup_many([key]).get(key, [])

    def lookup_many(self, keys: Iterable[str]) -> Dict[str, List[DictionaryRecord]]:
        """Entries for many keys, queried in chunks of ``batch_size``"""
        distinct = list(dict.fromkeys(keys))
        found: Dict[str, List[DictionaryRecord]] = {key: [] for key in distinct}

        with self.db.session() as session:
            for start in range(0, len(distinct), self.batch_size):
                chunk = distinct[start:start + self.batch_size]
                query = select(DictionaryEntry).where(
                    or_(
                        DictionaryEntry.traditional.in_(chunk),
                        DictionaryEntry.simplified.in_(chunk)
                    )
                ).order_by(DictionaryEntry.id)
                for entry in session.execute(query).scalars():
                    record = self._to_record(entry)
                    for form in {entry.traditional, entry.simplified}:
                        if form in found:
                            found[form].append(record)
        return found

    def add_entries(self, records: Iterable[DictionaryRecord]) -> int:
        count = 0
        with self.db.transaction() as session:
            for record in records:
                session.add(DictionaryEntry(
                    traditional=record.traditional,
                    simplified=record.simplified,
                    pinyin=record.pinyin,
                    definitions=list(record.definitions)
                ))
                count += 1
        return count

    def clear(self) -> int:
        """Delete every entry; returns the number removed"""
        with self.db.transaction() as session:
            return session.execute(delete(DictionaryEntry)).rowcount
