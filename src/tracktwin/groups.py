"""Duplicate group building, quality ranking and merging."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .fingerprint import (
    DEFAULT_FINGERPRINT_THRESHOLD,
    fingerprint_duration_ok,
    fingerprints_match,
)
from .metadata import AudioMetadata
from .normalize import core_title_for_grouping, primary_artist_for_grouping
from .scoring import combined_similarity, pair_duration_ok, score_duplicate_pair

DEFAULT_MERGE_SCORE_THRESHOLD = 40
DEFAULT_MERGE_SIMILARITY_THRESHOLD = 0.78

_MIB = 1024 * 1024


class GroupSource(Enum):
    """Signal that produced a duplicate group."""

    METADATA = "metadata"
    HASH = "hash"
    FINGERPRINT = "fingerprint"


@dataclass(frozen=True)
class FileDetail:
    """Per-file audio properties shown alongside a duplicate group."""

    path: str
    size: int = 0
    format: str = ""
    duration: int = 0  # milliseconds
    bitrate: int = 0
    sample_rate: int = 0
    bit_depth: int = 0
    channels: int = 0
    codec: str = ""
    lossless: bool = False

    @classmethod
    def from_metadata(
        cls, path: str, size: int, metadata: Optional[AudioMetadata]
    ) -> "FileDetail":
        fmt = Path(path).suffix.lstrip(".").upper()
        if metadata is None:
            return cls(path=path, size=size, format=fmt)
        return cls(
            path=path,
            size=size,
            format=fmt,
            duration=metadata.duration_ms,
            bitrate=metadata.bitrate,
            sample_rate=metadata.sample_rate,
            bit_depth=metadata.bit_depth,
            channels=metadata.channels,
            codec=metadata.codec,
            lossless=metadata.lossless,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "size": self.size,
            "format": self.format,
            "duration": self.duration,
            "bitrate": self.bitrate,
            "sample_rate": self.sample_rate,
            "bit_depth": self.bit_depth,
            "channels": self.channels,
            "codec": self.codec,
            "lossless": self.lossless,
        }


@dataclass
class DuplicateGroup:
    """A set of files believed to be the same recording."""

    files: List[str]
    title: str
    artist: str
    total_size: int
    formats: List[str]
    best_quality_file: str
    best_quality_reason: str
    lossless_count: int
    lossy_count: int
    avg_bitrate: int
    representative_duration: int
    file_details: List[FileDetail] = field(default_factory=list)
    source: GroupSource = GroupSource.METADATA

    def to_dict(self) -> Dict[str, Any]:
        return {
            "files": list(self.files),
            "title": self.title,
            "artist": self.artist,
            "total_size": self.total_size,
            "formats": list(self.formats),
            "best_quality_file": self.best_quality_file,
            "best_quality_reason": self.best_quality_reason,
            "lossless_count": self.lossless_count,
            "lossy_count": self.lossy_count,
            "avg_bitrate": self.avg_bitrate,
            "representative_duration": self.representative_duration,
            "source": self.source.value,
            "file_details": [d.to_dict() for d in self.file_details],
        }


@dataclass
class GroupBuilder:
    """Provisional group collected while scan results stream in."""

    title: str
    artist: str
    files: List[FileDetail] = field(default_factory=list)
    source: GroupSource = GroupSource.METADATA


def quality_score(detail: FileDetail) -> int:
    """
    Rank a file by fidelity.

    Lossless always wins, then bit depth, sample rate, bitrate and finally
    size in MiB.
    """
    score = 1_000_000 if detail.lossless else 0
    score += detail.bit_depth * 10_000
    score += detail.sample_rate // 10
    score += detail.bitrate // 1000
    score += detail.size // _MIB
    return score


def quality_reason(detail: FileDetail) -> str:
    """Describe why a file was chosen, e.g. "lossless • 44100Hz • 16bit • FLAC"."""
    parts = []
    if detail.lossless:
        parts.append("lossless")
    elif detail.bitrate > 0:
        parts.append(f"{detail.bitrate // 1000}kbps")
    if detail.sample_rate > 0:
        parts.append(f"{detail.sample_rate}Hz")
    if detail.bit_depth > 0:
        parts.append(f"{detail.bit_depth}bit")
    if detail.codec:
        parts.append(detail.codec.upper())
    return " • ".join(parts)


def select_best_quality(details: Sequence[FileDetail]) -> Tuple[str, str]:
    """
    Pick the highest quality file; the first one wins ties.

    Returns:
        Tuple of (best_path, reason)
    """
    best: Optional[FileDetail] = None
    best_score = -1
    for detail in details:
        score = quality_score(detail)
        if score > best_score:
            best_score = score
            best = detail
    if best is None:
        return "", ""
    return best.path, quality_reason(best)


def _unique_details(details: Iterable[FileDetail]) -> List[FileDetail]:
    seen: Set[str] = set()
    unique = []
    for detail in details:
        if detail.path in seen:
            continue
        seen.add(detail.path)
        unique.append(detail)
    return unique


def _group_from_details(
    title: str,
    artist: str,
    details: List[FileDetail],
    source: GroupSource,
    representative_duration: int = 0,
) -> DuplicateGroup:
    best_file, best_reason = select_best_quality(details)
    bitrates = [d.bitrate for d in details if d.bitrate > 0]
    if representative_duration <= 0:
        representative_duration = next((d.duration for d in details if d.duration > 0), 0)
    return DuplicateGroup(
        files=[d.path for d in details],
        title=title,
        artist=artist,
        total_size=sum(d.size for d in details),
        formats=sorted({d.format for d in details}),
        best_quality_file=best_file,
        best_quality_reason=best_reason,
        lossless_count=sum(1 for d in details if d.lossless),
        lossy_count=sum(1 for d in details if not d.lossless),
        avg_bitrate=sum(bitrates) // len(bitrates) if bitrates else 0,
        representative_duration=representative_duration,
        file_details=details,
        source=source,
    )


def build_duplicate_groups(builders: Iterable[GroupBuilder]) -> List[DuplicateGroup]:
    """Finalize provisional builders that hold at least two distinct files."""
    duplicates = []
    for builder in builders:
        details = _unique_details(builder.files)
        if len(details) < 2:
            continue
        duplicates.append(
            _group_from_details(builder.title, builder.artist, details, builder.source)
        )
    return duplicates


def core_key(title: str, artist: str) -> str:
    return core_title_for_grouping(title) + "|" + primary_artist_for_grouping(artist)


def should_merge(
    anchor: DuplicateGroup,
    other: DuplicateGroup,
    ignore_duration: bool = False,
    similarity_threshold: float = DEFAULT_MERGE_SIMILARITY_THRESHOLD,
    score_threshold: int = DEFAULT_MERGE_SCORE_THRESHOLD,
) -> bool:
    """
    Decide whether two groups describe the same track.

    Tried in order: identical core title + primary artist key, the fuzzy
    pair score, then combined Jaro-Winkler similarity. Every tier requires
    compatible durations unless ignore_duration is set.
    """
    duration_ok = ignore_duration or pair_duration_ok(
        anchor.representative_duration, other.representative_duration
    )
    if not duration_ok:
        return False

    anchor_key = core_key(anchor.title, anchor.artist)
    if anchor_key != "|" and anchor_key == core_key(other.title, other.artist):
        return True

    score, _ = score_duplicate_pair(
        anchor.title,
        anchor.artist,
        anchor.representative_duration,
        other.title,
        other.artist,
        other.representative_duration,
    )
    if score >= score_threshold:
        return True

    similarity = combined_similarity(anchor.title, anchor.artist, other.title, other.artist)
    return similarity >= similarity_threshold


def merge_into(target: DuplicateGroup, other: DuplicateGroup) -> DuplicateGroup:
    """Absorb another group, recomputing quality and aggregate fields."""
    details = _unique_details(list(target.file_details) + list(other.file_details))
    title = target.title
    if other.title and len(other.title) > len(title):
        title = other.title
    artist = target.artist
    if other.artist and len(other.artist) > len(artist):
        artist = other.artist
    duration = max(target.representative_duration, other.representative_duration)
    return _group_from_details(title, artist, details, target.source, duration)


def merge_similar_groups(
    groups: List[DuplicateGroup],
    similarity_threshold: float = DEFAULT_MERGE_SIMILARITY_THRESHOLD,
    ignore_duration: bool = False,
    score_threshold: int = DEFAULT_MERGE_SCORE_THRESHOLD,
) -> List[DuplicateGroup]:
    """
    Merge groups that are similar but not keyed identically.

    Single pass: each unmerged group becomes an anchor and absorbs every later
    unmerged group that matches it. Absorbed groups are never compared again.
    """
    if len(groups) <= 1:
        return list(groups)

    merged: List[DuplicateGroup] = []
    absorbed: Set[int] = set()
    for i, anchor in enumerate(groups):
        if i in absorbed:
            continue
        current = anchor
        for j in range(i + 1, len(groups)):
            if j in absorbed:
                continue
            if should_merge(
                anchor,
                groups[j],
                ignore_duration=ignore_duration,
                similarity_threshold=similarity_threshold,
                score_threshold=score_threshold,
            ):
                current = merge_into(current, groups[j])
                absorbed.add(j)
        merged.append(current)
    return merged


def place_split_singles(
    groups: List[DuplicateGroup],
    builders: Iterable[GroupBuilder],
    grouped: Set[str],
    ignore_duration: bool = False,
) -> List[DuplicateGroup]:
    """
    Place single-file builders that a duration bucket boundary split off.

    Two takes of one track 2 s apart can round into neighbouring buckets and
    end up alone under different keys. Each single not already in ``grouped``
    joins the first metadata group with the same core key and a compatible
    duration, or pairs up with other such singles. Placed files are added to
    ``grouped``.

    Returns:
        The updated groups followed by any newly formed ones
    """
    result = list(groups)
    index: Dict[str, List[int]] = {}
    for i, group in enumerate(result):
        if group.source is GroupSource.METADATA:
            index.setdefault(core_key(group.title, group.artist), []).append(i)

    pending: Dict[str, List[Tuple[GroupBuilder, FileDetail]]] = {}
    for builder in builders:
        details = _unique_details(builder.files)
        if len(details) != 1 or details[0].path in grouped:
            continue
        detail = details[0]
        key = core_key(builder.title, builder.artist)
        if key == "|":
            continue

        for i in index.get(key, []):
            if ignore_duration or pair_duration_ok(
                result[i].representative_duration, detail.duration
            ):
                single = _group_from_details(
                    builder.title, builder.artist, [detail], GroupSource.METADATA
                )
                result[i] = merge_into(result[i], single)
                grouped.add(detail.path)
                break
        else:
            pending.setdefault(key, []).append((builder, detail))

    for singles in pending.values():
        used: Set[int] = set()
        for i, (anchor, anchor_detail) in enumerate(singles):
            if i in used:
                continue
            members = [anchor_detail]
            for j in range(i + 1, len(singles)):
                if j in used:
                    continue
                other = singles[j][1]
                if ignore_duration or pair_duration_ok(anchor_detail.duration, other.duration):
                    members.append(other)
                    used.add(j)
            if len(members) >= 2:
                result.append(
                    _group_from_details(
                        anchor.title, anchor.artist, members, GroupSource.METADATA
                    )
                )
                grouped.update(m.path for m in members)
    return result


def hash_clusters(hash_paths: Dict[str, List[str]]) -> List[List[str]]:
    """Sets of two or more files sharing an identical content hash."""
    clusters = []
    for paths in hash_paths.values():
        unique = list(dict.fromkeys(paths))
        if len(unique) >= 2:
            clusters.append(unique)
    return clusters


@dataclass
class FingerprintCandidate:
    """A scanned file that has an acoustic fingerprint."""

    path: str
    fingerprint: Sequence[int]
    duration_ms: int = 0


@dataclass
class _FingerprintCluster:
    paths: List[str]
    fingerprint: Sequence[int]
    duration_ms: int


def cluster_fingerprints(
    candidates: Iterable[FingerprintCandidate],
    threshold: float = DEFAULT_FINGERPRINT_THRESHOLD,
) -> List[List[str]]:
    """
    Cluster files by acoustic fingerprint.

    Each candidate joins the first cluster whose representative (its first
    member) has a compatible duration and a matching fingerprint; otherwise
    it starts a new cluster.

    Returns:
        All clusters, including single-file ones
    """
    clusters: List[_FingerprintCluster] = []
    for candidate in candidates:
        for cluster in clusters:
            if not fingerprint_duration_ok(candidate.duration_ms, cluster.duration_ms):
                continue
            if fingerprints_match(candidate.fingerprint, cluster.fingerprint, threshold):
                cluster.paths.append(candidate.path)
                break
        else:
            clusters.append(
                _FingerprintCluster(
                    paths=[candidate.path],
                    fingerprint=candidate.fingerprint,
                    duration_ms=candidate.duration_ms,
                )
            )
    return [c.paths for c in clusters]


def claim_unclaimed(clusters: Iterable[List[str]], claimed: Set[str]) -> List[List[str]]:
    """
    Drop already-claimed files from each cluster.

    Clusters keeping two or more files are returned; every file of a
    multi-file cluster is added to ``claimed`` so later clusters cannot
    reuse it.
    """
    kept = []
    for paths in clusters:
        if len(paths) < 2:
            continue
        remaining = [p for p in dict.fromkeys(paths) if p not in claimed]
        claimed.update(paths)
        if len(remaining) >= 2:
            kept.append(remaining)
    return kept
