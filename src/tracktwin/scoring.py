"""Fuzzy scoring of (title, artist) pairs for group merging."""

from typing import Tuple

from rapidfuzz.distance import JaroWinkler

from .normalize import (
    core_title_for_grouping,
    normalize_for_grouping,
    primary_artist_for_grouping,
)

PAIR_DURATION_MIN_MS = 20000
PAIR_DURATION_RATIO = 0.15


def jaro_winkler(a: str, b: str) -> float:
    """Jaro-Winkler similarity in [0, 1]."""
    return float(JaroWinkler.normalized_similarity(a, b))


def _words_found(words_a: list, words_b: list) -> int:
    return sum(1 for w in words_a if len(w) >= 2 and w in words_b)


def _title_score(title_a: str, title_b: str) -> int:
    if title_a == title_b:
        return 100

    score = 0
    words_a = title_a.split()
    words_b = title_b.split()
    if words_a:
        score += int(_words_found(words_a, words_b) / len(words_a) * 60)

    if title_a in title_b:
        score += 30
    elif title_b in title_a:
        score += 20

    if title_a and title_b:
        sim = jaro_winkler(title_a, title_b)
        if sim >= 0.90:
            score += 55
        elif sim >= 0.85:
            score += 45
        elif sim >= 0.75:
            score += 30
        elif sim >= 0.65:
            score += 15
    return score


def _artist_score(artist_a: str, artist_b: str) -> int:
    if artist_a == artist_b:
        return 50

    score = 0
    if artist_a in artist_b:
        score += 30
    elif artist_b in artist_a:
        score += 20
    else:
        score += 10 * _words_found(artist_a.split(), artist_b.split())

    if artist_a and artist_b:
        sim = jaro_winkler(artist_a, artist_b)
        if sim >= 0.90:
            score += 40
        elif sim >= 0.80:
            score += 25
        elif sim >= 0.70:
            score += 10
    return score


def score_pair(title_a: str, artist_a: str, title_b: str, artist_b: str) -> int:
    """
    Score how alike two normalized (title, artist) pairs are.

    Title: 100 for equality, otherwise word overlap (up to 60), containment
    (30 when A is inside B, 20 the other way) and Jaro-Winkler tiers
    (+55/+45/+30/+15). Artist mirrors it with lower weights.
    """
    return _title_score(title_a, title_b) + _artist_score(artist_a, artist_b)


def pair_duration_ok(duration1_ms: int, duration2_ms: int) -> bool:
    """
    Looser duration check used for merging groups.

    Passes when either duration is unknown, or the difference is within
    max(20 s, 15% of the longer duration).
    """
    if duration1_ms <= 0 or duration2_ms <= 0:
        return True
    max_allowed = max(
        PAIR_DURATION_MIN_MS,
        int(max(duration1_ms, duration2_ms) * PAIR_DURATION_RATIO),
    )
    return abs(duration1_ms - duration2_ms) <= max_allowed


def _scoring_form(s: str) -> str:
    return s.strip().lower().replace("'", "").replace("&", "and")


def _scoring_title(title: str) -> str:
    core = _scoring_form(normalize_for_grouping(core_title_for_grouping(title)))
    if not core:
        core = _scoring_form(normalize_for_grouping(title))
    return core


def score_duplicate_pair(
    title1: str,
    artist1: str,
    duration1: int,
    title2: str,
    artist2: str,
    duration2: int,
) -> Tuple[int, bool]:
    """
    Score two raw track identities, tolerating swapped title/artist fields.

    Returns:
        Tuple of (best score of normal and swapped arrangement, duration_ok)
    """
    t1 = _scoring_title(title1)
    a1 = _scoring_form(primary_artist_for_grouping(artist1))
    t2 = _scoring_title(title2)
    a2 = _scoring_form(primary_artist_for_grouping(artist2))

    normal = score_pair(t1, a1, t2, a2)
    swapped = score_pair(t1, a1, a2, t2)
    return max(normal, swapped), pair_duration_ok(duration1, duration2)


def combined_similarity(
    title_a: str, artist_a: str, title_b: str, artist_b: str
) -> float:
    """
    Jaro-Winkler over title and artist, weighted 60/40, or over the combined
    "title artist" string, whichever is higher.
    """
    combined_a = f"{title_a} {artist_a}".strip().lower()
    combined_b = f"{title_b} {artist_b}".strip().lower()
    whole = jaro_winkler(combined_a, combined_b)
    title_sim = jaro_winkler(title_a.strip().lower(), title_b.strip().lower())
    artist_sim = jaro_winkler(artist_a.strip().lower(), artist_b.strip().lower())
    return max(title_sim * 0.6 + artist_sim * 0.4, whole)
