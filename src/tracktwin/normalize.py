"""Title/artist normalization used to build grouping keys."""

import re
import unicodedata
from pathlib import Path
from typing import Tuple, Union

DEFAULT_DURATION_TOLERANCE_MS = 3000

_MULTI_CHAR_FOLDS = {
    "ß": "ss",
    "œ": "oe",
    "Œ": "oe",
    "æ": "ae",
    "Æ": "ae",
    "ø": "o",
    "Ø": "o",
    "đ": "d",
    "ł": "l",
}

_FEAT_RE = re.compile(r"\b(?:featuring|feat|ft)\b\.?")
_FEAT_SPLITTERS = (" feat. ", " feat ", " ft. ", " ft ", " featuring ")

_PARENS_RE = re.compile(r"\s*\([^)]*\)\s*")
_BRACKETS_RE = re.compile(r"\s*\[[^\]]*\]\s*")
_BRACES_RE = re.compile(r"\s*\{[^}]*\}\s*")
_POSSESSIVE_RE = re.compile(r"['’]s\b")
_TRACK_PREFIX_RE = re.compile(r"^\d+[\s.\-]+")

_VERSION_SUFFIXES = (
    " - first state extended remix",
    " - extended remix",
    " - remix",
    " - radio edit",
    " - original mix",
    " - club mix",
    " - edit",
    " - instrumental",
    " - acoustic",
    " - live",
)


def fold_diacritics(s: str) -> str:
    """Map accented Latin characters to ASCII so "Tiësto" matches "Tiesto"."""
    for char, replacement in _MULTI_CHAR_FOLDS.items():
        if char in s:
            s = s.replace(char, replacement)
    decomposed = unicodedata.normalize("NFKD", s)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def normalize_for_grouping(s: str) -> str:
    """Normalize a title or artist into a consistent key form."""
    s = fold_diacritics(s.lower()).strip()
    s = _FEAT_RE.sub(" ", s)
    s = s.replace("&", " and ").replace("_", " ")
    s = " ".join(s.split())
    for separator in (" - ", " . ", " , ", ".."):
        s = s.replace(separator, " ")
    return " ".join(s.split())


def core_title_for_grouping(title: str) -> str:
    """
    Reduce a title to its core so different versions group together.

    "Heading Up High (feat. Kensington)" and
    "Heading Up High - First State Extended Remix" both become
    "heading up high".
    """
    core = _strip_title_decoration(title)
    # Stripping one layer can expose another, e.g. "A (x) : B"
    for _ in range(5):
        again = _strip_title_decoration(core)
        if again == core:
            break
        core = again
    return core


def _strip_title_decoration(title: str) -> str:
    s = " ".join(title.split()).lower()
    if not s:
        return s

    s = _PARENS_RE.sub(" ", s)
    s = _BRACKETS_RE.sub(" ", s)
    s = _BRACES_RE.sub(" ", s)
    s = " ".join(s.split())

    # "Title : Alternate Title" keeps the first segment
    idx = s.find(" : ")
    if idx > 0:
        s = s[:idx].strip()

    for suffix in _VERSION_SUFFIXES:
        if s.endswith(suffix):
            s = s[: -len(suffix)].strip()

    idx = s.find(" - ")
    if idx > 0:
        after = s[idx + 3:]
        if "remix" in after or "edit" in after or "mix" in after:
            s = s[:idx].strip()

    s = _POSSESSIVE_RE.sub("", s)
    return normalize_for_grouping(s)


def primary_artist_for_grouping(artist: str) -> str:
    """
    Key on the first listed artist.

    "A feat. B" and "A, B, C" both become "a".
    """
    s = artist.strip()
    idx = s.find(",")
    if idx > 0:
        s = s[:idx].strip()
    lowered = s.lower()
    for marker in _FEAT_SPLITTERS:
        idx = lowered.find(marker)
        if idx > 0:
            s = s[:idx].strip()
            break
    return normalize_for_grouping(s)


def duration_bucket(duration_ms: int, tolerance_ms: int) -> int:
    """Round a duration to a tolerance window; 0 when unknown."""
    if duration_ms <= 0 or tolerance_ms <= 0:
        return 0
    return (duration_ms + tolerance_ms // 2) // tolerance_ms


def grouping_key(
    title: str,
    artist: str,
    duration_ms: int = 0,
    tolerance_ms: int = DEFAULT_DURATION_TOLERANCE_MS,
    ignore_duration: bool = False,
) -> str:
    """Build the metadata grouping key ``core|primary[|d<bucket>]``."""
    key = core_title_for_grouping(title) + "|" + primary_artist_for_grouping(artist)
    if ignore_duration:
        return key
    bucket = duration_bucket(duration_ms, tolerance_ms)
    if bucket > 0:
        key = f"{key}|d{bucket}"
    return key


def parse_from_filename(path: Union[str, Path]) -> Tuple[str, str]:
    """
    Guess (title, artist) from a file name.

    Handles "Artist - Title", "Artist-Title", "01. Artist - Title",
    "Artist feat. Other - Title" and
    "Title (feat. X) - Remix - Artist, Artist". Falls back to the whole
    name as title with an empty artist.
    """
    name = Path(path).stem
    name = name.replace("_", " ").replace(".", " ").strip()
    if not name:
        return "", ""
    name = _TRACK_PREFIX_RE.sub("", name).strip()

    if " - " in name:
        segments = name.split(" - ")
        if len(segments) >= 3:
            first = segments[0].strip()
            last = segments[-1].strip()
            first_lower = first.lower()
            looks_like_title = (
                "(feat." in first_lower
                or "(ft." in first_lower
                or "(featuring " in first_lower
                or ("(" in first and ")" in first)
            )
            looks_like_artist_list = "," in last and len(last) > 2
            if looks_like_title and looks_like_artist_list and first and last:
                return first, last

        artist_part, title_part = (p.strip() for p in name.split(" - ", 1))
        if artist_part and title_part:
            return title_part, artist_part

    if "-" in name:
        artist_part, title_part = (p.strip() for p in name.split("-", 1))
        if artist_part and title_part:
            return title_part, artist_part

    for marker in _FEAT_SPLITTERS:
        idx = name.find(marker)
        if idx > 0:
            artist_part = name[:idx].strip()
            rest = name[idx + len(marker):].strip()
            if " - " in rest:
                title_part = rest.split(" - ", 1)[1].strip()
                if artist_part and title_part:
                    return title_part, artist_part
            elif artist_part and rest:
                return rest, artist_part

    words = name.split()
    if 3 <= len(words) <= 6:
        potential_artist = words[0]
        potential_title = " ".join(words[1:])
        if len(potential_artist) <= 30 and len(potential_title) >= 3:
            return potential_title, potential_artist

    return name, ""
