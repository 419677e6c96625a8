"""
Domain objects handled by the enrichment pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .insights import is_valid_insights

# Placeholder glosses written by older imports; treated as missing
MISSING_GLOSSES = ('', 'Unknown character', 'No definition')


@dataclass
class EnrichableEntity:
    """A flashcard progressively filled in by pipeline runs.

    ``force`` is not stored here; it is a property of the request.
    """
    id: str
    key: str
    pronunciation: Optional[str] = None
    gloss: Optional[str] = None
    complexity: Optional[Dict[str, Any]] = None
    confusions: Optional[List[str]] = None
    image_ref: Optional[str] = None
    audio_ref: Optional[str] = None
    insights: Optional[Dict[str, Any]] = None
    insights_generated_at: Optional[datetime] = None
    cached: bool = False
    disambiguated: bool = False

    @property
    def has_pronunciation(self) -> bool:
        return bool(self.pronunciation and self.pronunciation.strip())

    @property
    def has_gloss(self) -> bool:
        return bool(self.gloss and self.gloss.strip() not in MISSING_GLOSSES)

    @property
    def has_insights(self) -> bool:
        return is_valid_insights(self.insights)


@dataclass
class DictionaryRecord:
    """One CC-CEDICT style entry; pinyin carries tone numbers (e.g. ``shui3``)"""
    traditional: str
    simplified: str
    pinyin: str
    definitions: List[str] = field(default_factory=list)

    @property
    def primary_definition(self) -> str:
        return self.definitions[0] if self.definitions else 'No definition'
