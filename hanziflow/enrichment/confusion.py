"""
Confusion candidates: the single filter every source of confusions passes
through, and the pattern tables used when the collaborator has nothing.
"""

from typing import Iterable, List, Optional

KNOWN_CONFUSIONS = {
    '包子': ['房子', '餃子', '饅頭'],
    '房子': ['包子', '箱子', '孩子'],
    '餃子': ['包子', '筷子', '粽子'],
    '饅頭': ['包子', '麵包', '饅'],
    '測試': ['測驗', '考試', '試驗'],
    '朋友': ['友好', '友誼', '友人'],
    '可以': ['可能', '可是', '可愛'],
    '但是': ['但', '可是', '不過'],
    '因為': ['因', '為了', '所以'],
    '所以': ['因為', '以為', '以後'],
}

SUFFIX_ZI = ['包子', '房子', '餃子']

SHARED_FIRST = {
    '可': ['可能', '可是', '可愛'],
    '因': ['因為', '因此', '原因'],
    '所': ['所以', '所有', '場所'],
}

SHARED_SECOND = {
    '是': ['但是', '可是', '就是'],
    '為': ['因為', '為了', '以為'],
}


def filter_confusions(key: str, candidates: Optional[Iterable[str]], limit: int = 3) -> List[str]:
    """
    Clean a confusion list for ``key``.

    Drops blanks, duplicates and the key itself; for multi-character keys
    also drops any single character of the key. Order is preserved and the
    result holds at most ``limit`` entries.
    """
    key = (key or '').strip()
    result: List[str] = []
    for candidate in candidates or []:
        if not isinstance(candidate, str):
            continue
        candidate = candidate.strip()
        if not candidate or candidate == key or candidate in result:
            continue
        if len(key) > 1 and len(candidate) == 1 and candidate in key:
            continue
        result.append(candidate)
        if len(result) >= limit:
            break
    return result


def fallback_confusions(key: str, limit: int = 3) -> List[str]:
    """Pattern-table confusions for when the collaborator yields nothing usable"""
    if key in KNOWN_CONFUSIONS:
        candidates = KNOWN_CONFUSIONS[key]
    elif len(key) > 1 and key.endswith('子'):
        candidates = SUFFIX_ZI
    elif len(key) == 2 and key[0] in SHARED_FIRST:
        candidates = SHARED_FIRST[key[0]]
    elif len(key) == 2 and key[1] in SHARED_SECOND:
        candidates = SHARED_SECOND[key[1]]
    else:
        candidates = []
    return filter_confusions(key, candidates, limit)
