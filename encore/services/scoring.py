"""
Relevance ranking and track matching
"""
import math
import re
from typing import Iterable

from encore.models import Provider, Track, normalize_text

NEGATIVE_HINTS = (
    "cover", "remix", "karaoke", "instrumental", "live", "nightcore",
    "sped up", "slowed", "8d", "reaction", "tribute",
)

PROVIDER_BONUS = {
    Provider.YOUTUBE: 10.0,
    Provider.SOUNDCLOUD: 6.0,
    Provider.DIRECT: 4.0,
    Provider.SPOTIFY: 0.0,
}

MIN_MATCH_SCORE = 0.45


def _has_hint(text: str, hint: str) -> bool:
    return re.search(rf"\b{re.escape(hint)}\b", text) is not None


def _tokens(text: str) -> set[str]:
    return set(normalize_text(text).split())


def relevance_score(query: str, track: Track) -> float:
    """Weighted relevance of a search result to the free-text query."""
    q = normalize_text(query)
    title = normalize_text(track.title)
    author = normalize_text(track.author)
    score = 0.0

    combined = {f"{author} {title}".strip(), f"{title} {author}".strip()}
    if title == q or q in combined:
        score += 100
    elif title.startswith(q):
        score += 60
    elif q and q in title:
        score += 40

    words = set(q.split())
    if words:
        haystack = set(title.split()) | set(author.split())
        score += 30 * len(words & haystack) / len(words)

    score += PROVIDER_BONUS.get(track.provider, 0.0)

    if track.view_count:
        score += 1.5 * math.log10(track.view_count + 1)

    for hint in NEGATIVE_HINTS:
        if _has_hint(title, hint) and not _has_hint(q, hint):
            score -= 45
    return score


def rank(query: str, tracks: Iterable[Track]) -> list[Track]:
    """Sort by relevance, best first; ties keep input order."""
    scored = [(relevance_score(query, t), i, t) for i, t in enumerate(tracks)]
    scored.sort(key=lambda item: (-item[0], item[1]))
    return [t for _, _, t in scored]


def dedupe(tracks: Iterable[Track]) -> list[Track]:
    """Drop later tracks whose normalized (title, author) was already seen."""
    seen: set[tuple[str, str]] = set()
    result = []
    for track in tracks:
        key = track.dedup_key
        if key in seen:
            continue
        seen.add(key)
        result.append(track)
    return result


def duration_tolerance_ms(target_ms: int) -> float:
    return max(6000.0, target_ms * 0.08)


def match_score(target: Track, candidate: Track) -> float:
    """How likely ``candidate`` is the same recording as ``target`` (roughly 0..1.1)."""
    target_title = _tokens(target.title)
    cand_title = _tokens(candidate.title)
    cand_all = cand_title | _tokens(candidate.author)

    score = 0.0
    if target_title:
        score += 0.5 * len(target_title & cand_all) / len(target_title)

    target_author = _tokens(target.author) - {"unknown"}
    if target_author:
        score += 0.3 * len(target_author & cand_all) / len(target_author)

    if target.duration_ms and candidate.duration_ms:
        delta = abs(target.duration_ms - candidate.duration_ms)
        if delta <= duration_tolerance_ms(target.duration_ms):
            score += 0.3
        elif delta > target.duration_ms * 0.5:
            score -= 0.15

    target_text = normalize_text(target.title)
    cand_text = normalize_text(candidate.title)
    for hint in NEGATIVE_HINTS:
        if _has_hint(cand_text, hint) and not _has_hint(target_text, hint):
            score -= 0.3
            break
    return score


def best_match(target: Track, candidates: list[Track], minimum: float = MIN_MATCH_SCORE) -> Track | None:
    """Highest scoring candidate, or the first one when none clears ``minimum``."""
    if not candidates:
        return None
    scored = max(((match_score(target, c), -i, c) for i, c in enumerate(candidates)),
                 key=lambda item: (item[0], item[1]))
    if scored[0] >= minimum:
        return scored[2]
    return candidates[0]
