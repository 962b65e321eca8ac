from __future__ import annotations

from typing import List, Sequence, Tuple

from .models import SearchResult

MIN_SCORE = 0.1
MAX_RESULTS = 100


def longest_common_substring(a: str, b: str) -> int:
    if not a or not b:
        return 0
    best = 0
    prev = [0] * (len(b) + 1)
    for i in range(1, len(a) + 1):
        cur = [0] * (len(b) + 1)
        ai = a[i - 1]
        for j in range(1, len(b) + 1):
            if ai == b[j - 1]:
                cur[j] = prev[j - 1] + 1
                if cur[j] > best:
                    best = cur[j]
        prev = cur
    return best


def similarity(a: str, b: str) -> float:
    """Score in [0, 1]: equality, containment ratio, or common-substring ratio."""
    if not a or not b:
        return 0.0
    a = a.lower()
    b = b.lower()
    if a == b:
        return 1.0
    longer = max(len(a), len(b))
    if a in b or b in a:
        return min(len(a), len(b)) / longer
    return longest_common_substring(a, b) / longer


def is_author_query(keyword: str, results: Sequence[SearchResult]) -> bool:
    name_total = sum(similarity(keyword, r.book_name) for r in results)
    author_total = sum(similarity(keyword, r.author) for r in results)
    return author_total > name_total


def rank_results(keyword: str, results: Sequence[SearchResult], limit: int = MAX_RESULTS) -> List[SearchResult]:
    """Order merged search results by relevance to `keyword`.

    Decides whether the keyword reads as a title or an author, sorts by
    that field's score (ties broken by the other field, ascending), drops
    weak matches and caps the list.
    """
    if not results:
        return []

    by_author = is_author_query(keyword, results)
    scored: List[Tuple[float, str, SearchResult]] = []
    for r in results:
        if by_author:
            scored.append((similarity(keyword, r.author), r.book_name, r))
        else:
            scored.append((similarity(keyword, r.book_name), r.author, r))

    # stable sort: score descending, then tie-break field ascending
    scored.sort(key=lambda item: (-item[0], item[1]))

    kept = [r for score, _, r in scored if score > MIN_SCORE]
    if not kept:
        kept = [r for score, _, r in scored if score > 0]
    return kept[:limit]
