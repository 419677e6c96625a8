"""
Local complexity analysis of a card key.

No external calls: everything is derived from the key, its pronunciation and
its gloss.
"""

import re
from typing import Any, Dict, List, Optional

DEFAULT_STROKES = 8

# Stroke counts for common characters; unknown characters count DEFAULT_STROKES
STROKE_COUNTS = {
    '一': 1, '二': 2, '三': 3, '人': 2, '大': 3, '小': 3, '中': 4, '上': 3,
    '下': 3, '不': 4, '了': 2, '的': 8, '是': 9, '在': 6, '有': 6, '我': 7,
    '你': 7, '他': 5, '她': 6, '它': 5, '們': 10, '這': 10, '那': 6, '個': 10,
    '和': 8, '與': 13, '及': 3, '或': 8, '但': 7, '因': 6, '為': 9, '所': 8,
    '以': 5, '就': 12, '要': 9, '水': 4, '火': 4, '山': 3, '雨': 8, '風': 9,
    '雷': 13, '電': 13, '雪': 11, '雲': 12, '霧': 19, '房': 8, '間': 12, '門': 8,
    '窗': 12, '床': 7, '桌': 10, '椅': 12, '書': 10, '筆': 12, '紙': 10, '測': 12,
    '試': 13, '累': 11, '朋': 8, '友': 4, '愛': 13, '情': 11, '心': 4, '思': 9,
    '想': 13,
}

RADICALS = {
    '水': {'radical': '氵', 'meaning': 'water', 'position': 'left'},
    '火': {'radical': '火', 'meaning': 'fire', 'position': 'whole'},
    '木': {'radical': '木', 'meaning': 'wood', 'position': 'whole'},
    '金': {'radical': '金', 'meaning': 'metal', 'position': 'whole'},
    '土': {'radical': '土', 'meaning': 'earth', 'position': 'whole'},
    '心': {'radical': '心', 'meaning': 'heart', 'position': 'whole'},
    '手': {'radical': '扌', 'meaning': 'hand', 'position': 'left'},
    '口': {'radical': '口', 'meaning': 'mouth', 'position': 'whole'},
    '人': {'radical': '亻', 'meaning': 'person', 'position': 'left'},
    '言': {'radical': '讠', 'meaning': 'speech', 'position': 'left'},
}

# Checked in order; the first category with a matching keyword wins
SEMANTIC_CATEGORIES = (
    ('person', ('person', 'people', 'man', 'woman')),
    ('place', ('place', 'location', 'room', 'building')),
    ('time', ('time', 'day', 'year', 'month')),
    ('number', ('number', 'quantity')),
    ('action', ('action', 'verb', 'do', 'make')),
    ('object', ('object', 'thing')),
    ('nature', ('nature', 'water', 'fire', 'mountain')),
    ('emotion', ('emotion', 'feel')),
)

SEMANTIC_FIELDS = (
    ('daily life', ('daily', 'everyday')),
    ('food', ('food', 'eat')),
    ('family', ('family', 'relative')),
    ('work', ('work', 'job')),
    ('education', ('education', 'school')),
    ('technology', ('technology', 'computer')),
)

CONCRETE_WORDS = (
    'object', 'thing', 'person', 'place', 'animal', 'plant', 'building',
    'room', 'water', 'fire', 'mountain', 'book',
)
ABSTRACT_WORDS = (
    'emotion', 'feeling', 'thought', 'idea', 'concept', 'love', 'hate',
    'time', 'meaning', 'purpose',
)

_TONE_BY_MARK = {}
for _vowels in ('āáǎà', 'ēéěè', 'īíǐì', 'ōóǒò', 'ūúǔù', 'ǖǘǚǜ'):
    for _tone, _mark in enumerate(_vowels, start=1):
        _TONE_BY_MARK[_mark] = _tone

_WORD = re.compile(r'[a-z]+')


def estimate_strokes(key: str) -> int:
    return sum(STROKE_COUNTS.get(ch, DEFAULT_STROKES) for ch in key)


def tone_pattern(pronunciation: Optional[str]) -> str:
    """``"fáng jiān"`` -> ``"2-1"``; a syllable without a mark is neutral (5)"""
    if not pronunciation:
        return ''
    tones = []
    for syllable in pronunciation.split():
        tone = 5
        for ch in syllable:
            if ch in _TONE_BY_MARK:
                tone = _TONE_BY_MARK[ch]
                break
            if ch.isdigit() and ch in '12345':
                tone = int(ch)
                break
        tones.append(str(tone))
    return '-'.join(tones)


def _words(gloss: Optional[str]) -> List[str]:
    return _WORD.findall((gloss or '').lower())


def semantic_category(gloss: Optional[str]) -> str:
    words = set(_words(gloss))
    for category, keywords in SEMANTIC_CATEGORIES:
        if words.intersection(keywords):
            return category
    return 'general'


def semantic_fields(gloss: Optional[str]) -> List[str]:
    words = set(_words(gloss))
    fields = [name for name, keywords in SEMANTIC_FIELDS if words.intersection(keywords)]
    return fields or ['general']


def concept_type(gloss: Optional[str]) -> str:
    words = _words(gloss)
    concrete = sum(1 for word in words if word in CONCRETE_WORDS)
    abstract = sum(1 for word in words if word in ABSTRACT_WORDS)
    if abstract > concrete:
        return 'abstract'
    if concrete and concrete == abstract:
        return 'mixed'
    return 'concrete'


def radicals(key: str) -> List[Dict[str, str]]:
    """Known radicals, for single-character keys only"""
    if len(key) != 1 or key not in RADICALS:
        return []
    return [dict(RADICALS[key])]


def analyze_complexity(key: str, pronunciation: Optional[str] = None, gloss: Optional[str] = None) -> Dict[str, Any]:
    """
    Derive learning-complexity metrics for a key.

    ``visualComplexity`` and ``difficulty`` are always within [0, 1].
    """
    strokes = estimate_strokes(key)
    length = len(key)

    visual = min(strokes / 30, 1.0) * 0.7 + min(length / 4, 1.0) * 0.3
    difficulty = visual * 0.4 + min(strokes / 20, 1.0) * 0.3 + min(length / 3, 1.0) * 0.3

    return {
        'componentCount': length,
        'strokeCount': strokes,
        'tonePattern': tone_pattern(pronunciation),
        'visualComplexity': round(min(max(visual, 0.0), 1.0), 4),
        'difficulty': round(min(max(difficulty, 0.0), 1.0), 4),
        'frequency': 3,
        'semanticCategory': semantic_category(gloss),
        'semanticFields': semantic_fields(gloss),
        'conceptType': concept_type(gloss),
        'radicals': radicals(key),
    }
