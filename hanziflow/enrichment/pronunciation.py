"""
Pronunciation helpers: preferred readings for polyphonic characters and
tone-number to tone-mark conversion of dictionary pinyin.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from hanziflow.models.entity import DictionaryRecord

TONE_MARKS = {
    'a': 'āáǎà',
    'e': 'ēéěè',
    'i': 'īíǐì',
    'o': 'ōóǒò',
    'u': 'ūúǔù',
    'ü': 'ǖǘǚǜ',
}

_MARKED_VOWELS = ''.join(TONE_MARKS.values())
_SYLLABLE = re.compile(r'^([A-Za-zÜü:]+)([1-5])$')


@dataclass(frozen=True)
class PronunciationPreference:
    character: str
    preferred_pinyin: Sequence[str]
    meaning_keywords: Sequence[str]
    reason: str


# Reading taught first to learners, for characters with several
PREFERENCES = {
    p.character: p for p in (
        PronunciationPreference('累', ('lei4', 'lèi'), ('tired', 'weary', 'exhausted'),
                                'tired (lèi) is more common in conversation than accumulate (lěi)'),
        PronunciationPreference('長', ('zhang3', 'zhǎng'), ('grow', 'chief', 'elder'),
                                'grow/chief (zhǎng) is taught before long (cháng)'),
        PronunciationPreference('行', ('xing2', 'xíng'), ('walk', 'go', 'travel', 'ok'),
                                'walk/go (xíng) is more common than profession (háng)'),
        PronunciationPreference('重', ('zhong4', 'zhòng'), ('heavy', 'weight', 'important'),
                                'heavy/important (zhòng) is more common than repeat (chóng)'),
        PronunciationPreference('得', ('de2', 'dé'), ('obtain', 'get', 'gain'),
                                'obtain (dé) is taught before the particle (de)'),
        PronunciationPreference('好', ('hao3', 'hǎo'), ('good', 'well', 'fine'),
                                'good (hǎo) is more fundamental than to like (hào)'),
        PronunciationPreference('為', ('wei4', 'wèi'), ('for', 'because of', 'sake'),
                                'for/because (wèi) is more common than to do (wéi)'),
        PronunciationPreference('樂', ('le4', 'lè'), ('happy', 'joy', 'pleasure'),
                                'happy (lè) is taught before music (yuè)'),
        PronunciationPreference('少', ('shao3', 'shǎo'), ('few', 'little', 'less'),
                                'few (shǎo) is more common than young (shào)'),
        PronunciationPreference('還', ('hai2', 'hái'), ('still', 'yet', 'also'),
                                'still/yet (hái) is more common than return (huán)'),
    )
}


def get_preferred_entry(key: str, entries: List[DictionaryRecord]) -> Optional[DictionaryRecord]:
    """
    Pick one dictionary entry deterministically.

    For known polyphonic characters the preferred reading wins, then an entry
    whose definitions mention a preferred meaning; otherwise the first entry.
    """
    if not entries:
        return None
    if len(entries) == 1:
        return entries[0]

    preference = PREFERENCES.get(key)
    if preference is None:
        return entries[0]

    for entry in entries:
        pinyin = entry.pinyin.lower()
        if any(p in pinyin for p in preference.preferred_pinyin):
            return entry

    for entry in entries:
        for definition in entry.definitions:
            lowered = definition.lower()
            if any(keyword in lowered for keyword in preference.meaning_keywords):
                return entry

    return entries[0]


def has_tone_marks(pinyin: str) -> bool:
    return any(ch in _MARKED_VOWELS for ch in pinyin)


def _mark_syllable(letters: str, tone: int) -> str:
    letters = letters.replace('u:', 'ü').replace('U:', 'Ü').replace('v', 'ü').replace('V', 'Ü')
    if tone == 5:
        return letters

    lower = letters.lower()
    if 'a' in lower:
        index = lower.index('a')
    elif 'e' in lower:
        index = lower.index('e')
    elif 'ou' in lower:
        index = lower.index('o')
    else:
        vowels = [i for i, ch in enumerate(lower) if ch in TONE_MARKS]
        if not vowels:
            return letters
        index = vowels[-1]

    marked = TONE_MARKS[lower[index]][tone - 1]
    if letters[index].isupper():
        marked = marked.upper()
    return letters[:index] + marked + letters[index + 1:]


def tone_numbers_to_marks(pinyin: str) -> str:
    """
    Convert numbered pinyin to tone marks: ``"shui3"`` -> ``"shuǐ"``,
    ``"cong1 ming5"`` -> ``"cōng ming"``. Tokens without a tone number are
    kept as they are.
    """
    if not pinyin:
        return ''

    syllables = []
    for token in pinyin.split():
        match = _SYLLABLE.match(token)
        if match:
            syllables.append(_mark_syllable(match.group(1), int(match.group(2))))
        else:
            syllables.append(token)
    return ' '.join(syllables)
