"""
External collaborators of the enrichment pipeline.

Each collaborator is a single async function ``(key, context) -> result``.
The pipeline depends on nothing beyond that shape, so providers can be
swapped or faked freely.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from hanziflow.db.repository import DictionaryRepository
from hanziflow.models.entity import DictionaryRecord

Collaborator = Callable[[str, Dict[str, Any]], Awaitable[Any]]


@dataclass
class EnrichmentServices:
    """
    The collaborators a pipeline run may call.

    Expected results:
        dictionary_lookup: list of DictionaryRecord
        interpret: {'pronunciation': str, 'gloss': str}
        find_confusions: list of keys
        generate_image / synthesize_audio: asset bytes
        generate_insights: raw insight dict, validated by the pipeline

    A collaborator left as None makes its stage a no-op.
    """
    dictionary_lookup: Optional[Collaborator] = None
    interpret: Optional[Collaborator] = None
    find_confusions: Optional[Collaborator] = None
    generate_image: Optional[Collaborator] = None
    synthesize_audio: Optional[Collaborator] = None
    generate_insights: Optional[Collaborator] = None


class SqlDictionary:
    """Dictionary-lookup collaborator backed by the dictionary_entries table"""

    def __init__(self, repo: DictionaryRepository):
        self.repo = repo

    async def __call__(self, key: str, context: Optional[Dict[str, Any]] = None) -> List[DictionaryRecord]:
        return self.repo.lookup(key)
