"""
CC-CEDICT loader.

Lines look like ``水 水 [shui3] /water/river/``; comment lines start with ``#``.
"""

import logging
import re
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Union

from hanziflow.db.repository import DictionaryRepository
from hanziflow.models.entity import DictionaryRecord

logger = logging.getLogger(__name__)

_LINE = re.compile(r'^(\S+) (\S+) \[([^\]]+)\] /(.+)/\s*$')


def parse_cedict_line(line: str) -> Optional[DictionaryRecord]:
    """Parse one line; comments, blanks and malformed lines give None"""
    line = line.strip()
    if not line or line.startswith('#'):
        return None
    match = _LINE.match(line)
    if not match:
        return None
    traditional, simplified, pinyin, definitions = match.groups()
    return DictionaryRecord(
        traditional=traditional,
        simplified=simplified,
        pinyin=pinyin.strip(),
        definitions=[d.strip() for d in definitions.split('/') if d.strip()]
    )


def iter_cedict(lines: Iterable[str]) -> Iterator[DictionaryRecord]:
    for line in lines:
        record = parse_cedict_line(line)
        if record is not None:
            yield record


def load_cedict(
    path: Union[str, Path],
    repo: DictionaryRepository,
    batch_size: int = 1000,
    replace: bool = False
) -> int:
    """
    Load a CC-CEDICT file into the dictionary table.

    Args:
        path: File in CC-CEDICT format (UTF-8)
        repo: Target repository
        batch_size: Entries written per transaction
        replace: Remove existing entries first

    Returns:
        Number of entries loaded
    """
    if replace:
        removed = repo.clear()
        logger.info(f"Removed {removed} existing dictionary entries")

    total = 0
    batch: List[DictionaryRecord] = []
    with open(path, encoding='utf-8') as f:
        for record in iter_cedict(f):
            batch.append(record)
            if len(batch) >= batch_size:
                total += repo.add_entries(batch)
                batch = []
                logger.debug(f"Loaded {total} dictionary entries")
    if batch:
        total += repo.add_entries(batch)

    logger.info(f"Loaded {total} dictionary entries from {path}")
    return total
