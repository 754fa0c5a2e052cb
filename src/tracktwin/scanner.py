"""Concurrent duplicate track scanning."""

import hashlib
import os
import sys
import threading
import time
from collections import defaultdict
from concurrent.futures import CancelledError, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

from colorama import Fore, Style

from .cache import CacheEntry, CacheStore, normalize_path
from .errors import CacheError, ScanCancelled
from .fingerprint import (
    DEFAULT_FINGERPRINT_LENGTH,
    DEFAULT_FINGERPRINT_THRESHOLD,
    DEFAULT_FINGERPRINT_TIMEOUT,
    FingerprintService,
    FpcalcFingerprintService,
    UnavailableFingerprintService,
)
from .groups import (
    DEFAULT_MERGE_SCORE_THRESHOLD,
    DEFAULT_MERGE_SIMILARITY_THRESHOLD,
    DuplicateGroup,
    FileDetail,
    FingerprintCandidate,
    GroupBuilder,
    GroupSource,
    _group_from_details,
    build_duplicate_groups,
    claim_unclaimed,
    cluster_fingerprints,
    hash_clusters,
    merge_similar_groups,
    place_split_singles,
)
from .metadata import AudioMetadata, MetadataReader, MutagenMetadataReader
from .normalize import DEFAULT_DURATION_TOLERANCE_MS, grouping_key, parse_from_filename

AUDIO_EXTENSIONS = {
    ".mp3",
    ".flac",
    ".m4a",
    ".aac",
    ".ogg",
    ".oga",
    ".opus",
    ".wav",
    ".aiff",
    ".aif",
    ".wma",
    ".alac",
    ".ape",
    ".wv",
}

MAX_RECORDED_ERRORS = 10
HASH_CHUNK_SIZE = 32 * 1024

PathLike = Union[str, Path]


def default_worker_count() -> int:
    """Twice the CPU count (I/O bound work), at least 2."""
    return max(2, 2 * (os.cpu_count() or 1))


@dataclass(frozen=True)
class ScanOptions:
    """Options for one duplicate scan."""

    use_hash: bool = False
    use_fingerprint: bool = False
    use_filename_fallback: bool = False
    duration_tolerance_ms: int = DEFAULT_DURATION_TOLERANCE_MS
    ignore_duration: bool = False
    worker_count: int = 0
    min_size: int = 0
    fingerprint_timeout: float = DEFAULT_FINGERPRINT_TIMEOUT
    fingerprint_length: int = DEFAULT_FINGERPRINT_LENGTH
    fingerprint_threshold: float = DEFAULT_FINGERPRINT_THRESHOLD
    merge_score_threshold: int = DEFAULT_MERGE_SCORE_THRESHOLD
    merge_similarity_threshold: float = DEFAULT_MERGE_SIMILARITY_THRESHOLD

    @property
    def workers(self) -> int:
        return self.worker_count if self.worker_count > 0 else default_worker_count()

    @property
    def tolerance_ms(self) -> int:
        if self.duration_tolerance_ms > 0:
            return self.duration_tolerance_ms
        return DEFAULT_DURATION_TOLERANCE_MS


class Outcome(Enum):
    """How scanning a single file ended."""

    OK = "ok"
    SKIP = "skip"
    FATAL = "fatal"


@dataclass
class FileScanResult:
    """Result of scanning one file, consumed by the aggregating thread."""

    outcome: Outcome
    path: str
    size: int = 0
    metadata: Optional[AudioMetadata] = None
    file_hash: str = ""
    fingerprint: Tuple[int, ...] = ()
    fingerprint_duration: int = 0
    reason: str = ""
    from_cache: bool = False
    # Non-fatal per-file failures (unreadable tags, hash errors)
    errors: List[str] = field(default_factory=list)


@dataclass
class ScanResult:
    """Duplicate groups plus scan statistics."""

    groups: List[DuplicateGroup] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    files_scanned: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    cancelled: bool = False


def compute_file_hash(file_path: PathLike) -> str:
    """Compute SHA-1 of file content, streamed in 32 KiB chunks."""
    sha1_hash = hashlib.sha1()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            sha1_hash.update(chunk)
    return sha1_hash.hexdigest()


def is_audio_file(file_path: PathLike) -> bool:
    """Check if file has supported audio extension."""
    return Path(file_path).suffix.lower() in AUDIO_EXTENSIONS


def library_root(root: PathLike) -> str:
    """Absolute form of a library path, used as the cache key for that library."""
    return os.path.abspath(str(root))


def find_audio_files(root: PathLike, min_size: int = 0) -> List[str]:
    """
    Recursively find audio files below a directory.

    Unreadable subdirectories are skipped; an unreadable root is an error.

    Raises:
        OSError: If root does not exist, is not a directory or cannot be read
    """
    root_str = library_root(root)
    if not os.path.exists(root_str):
        raise FileNotFoundError(f"Path does not exist: {root_str}")
    if not os.path.isdir(root_str):
        raise NotADirectoryError(f"Not a directory: {root_str}")
    with os.scandir(root_str):
        pass

    audio_files = []
    for dirpath, dirnames, filenames in os.walk(root_str):
        dirnames.sort()
        for name in sorted(filenames):
            if not is_audio_file(name):
                continue
            file_path = os.path.join(dirpath, name)
            if min_size > 0:
                try:
                    if os.path.getsize(file_path) < min_size:
                        continue
                except OSError:
                    continue
            audio_files.append(file_path)
    return audio_files


class _ScanState:
    """State shared between worker threads during one scan."""

    def __init__(self, entries: Dict[str, CacheEntry]):
        self.entries = entries
        self.cache_lock = threading.Lock()
        self.errors: List[str] = []
        self.errors_lock = threading.Lock()
        self.cache_hits = 0
        self.cache_misses = 0

    def record_error(self, message: str) -> None:
        with self.errors_lock:
            if len(self.errors) < MAX_RECORDED_ERRORS:
                self.errors.append(message)

    def lookup(self, path: str) -> Optional[CacheEntry]:
        with self.cache_lock:
            return self.entries.get(normalize_path(path))


@dataclass
class _Aggregation:
    """Group state built by the single aggregating thread."""

    builders: Dict[str, GroupBuilder] = field(default_factory=dict)
    hash_paths: Dict[str, List[str]] = field(default_factory=lambda: defaultdict(list))
    fingerprint_candidates: List[FingerprintCandidate] = field(default_factory=list)
    files_scanned: int = 0


@dataclass
class _ScanRun:
    result: ScanResult
    aggregation: _Aggregation
    state: _ScanState


class DuplicateScanner:
    """Finds duplicate tracks by metadata, content hash and fingerprint."""

    def __init__(
        self,
        options: Optional[ScanOptions] = None,
        cache_store: Optional[CacheStore] = None,
        metadata_reader: Optional[MetadataReader] = None,
        fingerprint_service: Optional[FingerprintService] = None,
        use_cache: bool = True,
        verbose: bool = False,
    ):
        """
        Initialize duplicate scanner.

        Args:
            options: Scan options (default: metadata grouping only)
            cache_store: Cache store (default: per-user cache directory)
            metadata_reader: Metadata reader (default: mutagen)
            fingerprint_service: Fingerprint service (default: fpcalc when
                fingerprinting is enabled)
            use_cache: Whether to load and save the cache (default: True)
            verbose: Print progress and errors
        """
        self.options = options or ScanOptions()
        self.use_cache = use_cache
        self.cache_store = cache_store if cache_store is not None else CacheStore()
        self.metadata_reader = metadata_reader or MutagenMetadataReader()
        if fingerprint_service is not None:
            self.fingerprint_service = fingerprint_service
        elif self.options.use_fingerprint:
            self.fingerprint_service = FpcalcFingerprintService(
                length=self.options.fingerprint_length
            )
        else:
            self.fingerprint_service = UnavailableFingerprintService()
        self.verbose = verbose
        self.error_count = 0

    def scan(
        self, root: PathLike, cancel_event: Optional[threading.Event] = None
    ) -> ScanResult:
        """
        Scan a library root for duplicate tracks.

        Args:
            root: Library directory
            cancel_event: Set to stop the scan early

        Returns:
            ScanResult with the final duplicate groups

        Raises:
            ValueError: If root is empty or cannot be listed
            ScanCancelled: If cancel_event was set; carries the partial result
        """
        if not str(root):
            raise ValueError("folder path is required")
        root_str = library_root(root)

        if self.verbose:
            print(f"Searching for audio files in {root_str}...")
        try:
            audio_files = find_audio_files(root_str, self.options.min_size)
        except OSError as e:
            raise ValueError(f"Failed to list audio files in {root_str}: {e}") from e
        if self.verbose:
            print(f"{Fore.CYAN}Found {len(audio_files)} files{Style.RESET_ALL}")

        run = self._run(audio_files, root_str, cancel_event, prune_only=None)
        return run.result

    def check_group(
        self,
        paths: Iterable[PathLike],
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[DuplicateGroup]:
        """
        Re-check whether a set of files still forms a duplicate group.

        Runs the scan pipeline over exactly the given files, using the cache
        of the first file's directory. Useful after deleting a file.

        Returns:
            The group containing every given path, or None

        Raises:
            ValueError: If no paths are given
            ScanCancelled: If cancel_event was set
        """
        file_paths = [os.path.abspath(str(p)) for p in paths]
        if not file_paths:
            raise ValueError("no file paths provided")
        root = os.path.dirname(file_paths[0])

        run = self._run(file_paths, root, cancel_event, prune_only=file_paths)
        wanted = set(file_paths)
        for group in run.result.groups:
            if wanted.issubset(group.files) and len(group.files) >= 2:
                return group

        if self.options.use_hash:
            for cluster in hash_clusters(run.aggregation.hash_paths):
                if wanted.issubset(cluster):
                    return self._cluster_group(cluster, GroupSource.HASH, run.state)
        return None

    def _load_entries(
        self, cache_root: str, prune_only: Optional[List[str]]
    ) -> Tuple[Dict[str, CacheEntry], Optional[str]]:
        if not self.use_cache:
            return {}, None
        try:
            entries = self.cache_store.load(cache_root)
        except CacheError as e:
            return {}, str(e)

        # Drop entries for files that no longer exist
        candidates = entries.keys() if prune_only is None else [
            normalize_path(p) for p in prune_only
        ]
        for key in [k for k in candidates if k in entries]:
            if not os.path.exists(key):
                del entries[key]
        return entries, None

    def _run(
        self,
        files: List[str],
        cache_root: str,
        cancel_event: Optional[threading.Event],
        prune_only: Optional[List[str]],
    ) -> _ScanRun:
        cancel = cancel_event if cancel_event is not None else threading.Event()
        entries, load_error = self._load_entries(cache_root, prune_only)
        state = _ScanState(entries)
        if load_error:
            state.record_error(load_error)
            self._log_error(load_error)

        aggregation = _Aggregation()
        finished = self._scan_parallel(files, state, aggregation, cancel)

        if self.use_cache:
            try:
                self.cache_store.save(cache_root, state.entries)
            except CacheError as e:
                self._log_error(str(e))

        groups = self._finalize_groups(aggregation, state)
        result = ScanResult(
            groups=groups,
            errors=list(state.errors),
            files_scanned=aggregation.files_scanned,
            cache_hits=state.cache_hits,
            cache_misses=state.cache_misses,
            cancelled=not finished,
        )

        if self.verbose:
            redundant = sum(len(g.files) - 1 for g in groups)
            print(
                f"\nFound {len(groups)} group(s) of duplicates "
                f"({redundant} redundant file(s))"
            )
            if self.use_cache:
                print(f"Cache: {state.cache_hits} hits, {state.cache_misses} misses")
            if self.error_count > 0:
                print(f"Encountered {self.error_count} error(s) during processing")

        if result.cancelled:
            raise ScanCancelled("scan cancelled", result=result)
        return _ScanRun(result=result, aggregation=aggregation, state=state)

    def _scan_parallel(
        self,
        files: List[str],
        state: _ScanState,
        aggregation: _Aggregation,
        cancel: threading.Event,
    ) -> bool:
        """
        Fan files out to the worker pool and aggregate results in order of arrival.

        Returns:
            True if every file was processed, False if the scan was cut short
        """
        total_files = len(files)
        if total_files == 0:
            return True
        workers = self.options.workers
        if self.verbose:
            print(f"Scanning {total_files} files (using {workers} worker threads)...")

        completed = 0
        processed = 0
        start_time = time.time()
        last_update_time = start_time

        executor = ThreadPoolExecutor(max_workers=workers)
        try:
            futures = [
                executor.submit(self._scan_file, file_path, state, cancel)
                for file_path in files
            ]
            for future in as_completed(futures):
                if cancel.is_set():
                    break
                try:
                    result = future.result()
                except CancelledError:
                    continue
                self._consume(result, aggregation, state)
                if result.outcome is not Outcome.SKIP:
                    processed += 1
                completed += 1

                current_time = time.time()
                if self.verbose and (
                    completed % 10 == 0
                    or completed == total_files
                    or current_time - last_update_time >= 1.0
                ):
                    self._print_progress(completed, total_files, current_time - start_time)
                    last_update_time = current_time
        except KeyboardInterrupt:
            cancel.set()
        finally:
            executor.shutdown(wait=True, cancel_futures=cancel.is_set())

        if self.verbose and completed == total_files:
            print(
                f"\r{Fore.CYAN}Scanned {total_files}/{total_files} files "
                f"(100.0%)...{Fore.GREEN}done{Style.RESET_ALL}",
                flush=True,
            )
        return processed == total_files

    def _scan_file(
        self, file_path: str, state: _ScanState, cancel: threading.Event
    ) -> FileScanResult:
        """Scan a single file (runs in a worker thread)."""
        if cancel.is_set():
            return FileScanResult(Outcome.SKIP, file_path, reason="cancelled")

        try:
            stat = os.stat(file_path)
        except OSError as e:
            return FileScanResult(Outcome.FATAL, file_path, reason=str(e))
        size = stat.st_size
        mod_time = int(stat.st_mtime)
        key = normalize_path(file_path)

        with state.cache_lock:
            entry = state.entries.get(key)
            if entry is not None and not entry.matches(size, mod_time):
                entry = None
            if entry is not None:
                state.cache_hits += 1
            else:
                state.cache_misses += 1

        errors: List[str] = []
        if entry is None:
            try:
                metadata = self.metadata_reader.read(Path(file_path))
            except Exception as e:
                # Unreadable tags only remove the file from metadata grouping
                metadata = None
                errors.append(f"file {file_path}: metadata read failed: {e}")
            entry = CacheEntry(
                path=key, size=size, mod_time_unix=mod_time, metadata=metadata
            )
            from_cache = False
        else:
            # Copy so workers never mutate an entry another thread may read
            entry = CacheEntry.from_dict(entry.to_dict())
            from_cache = True

        changed = not from_cache
        if self.options.use_hash and not entry.file_hash:
            try:
                entry.file_hash = compute_file_hash(file_path)
                changed = True
            except OSError as e:
                errors.append(f"file {file_path}: hash failed: {e}")

        if self.options.use_fingerprint and not entry.fingerprint:
            try:
                fp = self.fingerprint_service.fingerprint(
                    Path(file_path), self.options.fingerprint_timeout, cancel
                )
            except ScanCancelled:
                return FileScanResult(Outcome.SKIP, file_path, reason="cancelled")
            if fp is not None:
                entry.fingerprint = list(fp.values)
                entry.fingerprint_duration = fp.duration_sec
                changed = True

        if changed:
            with state.cache_lock:
                state.entries[key] = entry

        return FileScanResult(
            Outcome.OK,
            file_path,
            size=size,
            metadata=entry.metadata,
            file_hash=entry.file_hash,
            fingerprint=tuple(entry.fingerprint),
            fingerprint_duration=entry.fingerprint_duration,
            from_cache=from_cache,
            errors=errors,
        )

    def _consume(
        self, result: FileScanResult, aggregation: _Aggregation, state: _ScanState
    ) -> None:
        """Fold one file result into group state (aggregating thread only)."""
        if result.outcome is Outcome.FATAL:
            message = f"file {result.path}: {result.reason}"
            state.record_error(message)
            self._log_error(message)
            return
        if result.outcome is Outcome.SKIP:
            return

        for message in result.errors:
            state.record_error(message)
            self._log_error(message)

        aggregation.files_scanned += 1
        opts = self.options
        metadata = result.metadata
        title = metadata.title if metadata else ""
        artist = metadata.artist if metadata else ""
        duration = metadata.duration_ms if metadata else 0

        if (not title or not artist) and opts.use_filename_fallback:
            parsed_title, parsed_artist = parse_from_filename(result.path)
            title = title or parsed_title
            artist = artist or parsed_artist

        if opts.use_hash and result.file_hash:
            aggregation.hash_paths[result.file_hash].append(result.path)

        if opts.use_fingerprint and result.fingerprint:
            aggregation.fingerprint_candidates.append(
                FingerprintCandidate(
                    path=result.path,
                    fingerprint=result.fingerprint,
                    duration_ms=duration or result.fingerprint_duration * 1000,
                )
            )

        if not title or not artist:
            return

        key = grouping_key(
            title, artist, duration, opts.tolerance_ms, opts.ignore_duration
        )
        builder = aggregation.builders.get(key)
        if builder is None:
            builder = GroupBuilder(title=title, artist=artist)
            aggregation.builders[key] = builder
        builder.files.append(FileDetail.from_metadata(result.path, result.size, metadata))

    def _finalize_groups(
        self, aggregation: _Aggregation, state: _ScanState
    ) -> List[DuplicateGroup]:
        opts = self.options
        groups = build_duplicate_groups(aggregation.builders.values())
        groups = merge_similar_groups(
            groups,
            similarity_threshold=opts.merge_similarity_threshold,
            ignore_duration=opts.ignore_duration,
            score_threshold=opts.merge_score_threshold,
        )

        claimed = {path for group in groups for path in group.files}
        if opts.use_hash:
            for paths in claim_unclaimed(hash_clusters(aggregation.hash_paths), claimed):
                groups.append(self._cluster_group(paths, GroupSource.HASH, state))

        if opts.use_fingerprint and len(aggregation.fingerprint_candidates) >= 2:
            clusters = cluster_fingerprints(
                aggregation.fingerprint_candidates, opts.fingerprint_threshold
            )
            for paths in claim_unclaimed(clusters, claimed):
                groups.append(self._cluster_group(paths, GroupSource.FINGERPRINT, state))

        # Cluster claims may cover files that ended up in no group
        grouped = {path for group in groups for path in group.files}
        return place_split_singles(
            groups, aggregation.builders.values(), grouped, opts.ignore_duration
        )

    def _cluster_group(
        self, paths: List[str], source: GroupSource, state: _ScanState
    ) -> DuplicateGroup:
        """Build a hash or fingerprint group, labelled from cached metadata."""
        title = ""
        artist = ""
        details = []
        for path in paths:
            entry = state.lookup(path)
            metadata = entry.metadata if entry is not None else None
            if entry is not None:
                size = entry.size
            else:
                try:
                    size = os.path.getsize(path)
                except OSError:
                    size = 0
            if metadata is not None:
                title = title or metadata.title
                artist = artist or metadata.artist
            details.append(FileDetail.from_metadata(path, size, metadata))
        return _group_from_details(title, artist, details, source)

    def _print_progress(self, completed: int, total_files: int, elapsed: float) -> None:
        percent = (completed / total_files) * 100
        if 0 < completed < total_files:
            eta_seconds = elapsed / completed * (total_files - completed)
            print(
                f"\r{Fore.CYAN}Scanned {completed}/{total_files} files "
                f"({percent:.1f}%) - Elapsed: {format_time(elapsed)} "
                f"- ETA: {format_time(eta_seconds)}{Style.RESET_ALL}",
                end="",
                flush=True,
            )
        else:
            print(
                f"\r{Fore.CYAN}Scanned {completed}/{total_files} files "
                f"({percent:.1f}%)...{Style.RESET_ALL}",
                end="",
                flush=True,
            )

    def _log_error(self, message: str) -> None:
        """Log error message to stderr."""
        self.error_count += 1
        if self.verbose:
            print(f"ERROR: {message}", file=sys.stderr)


def format_time(seconds: float) -> str:
    """
    Format time duration as human-readable string.

    Returns:
        Formatted string (e.g., "2m 30s", "45s", "1h 5m")
    """
    if seconds < 60:
        return f"{int(seconds)}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"


def find_duplicates(
    root: PathLike,
    options: Optional[ScanOptions] = None,
    cancel_event: Optional[threading.Event] = None,
    **kwargs,
) -> ScanResult:
    """Scan a library root; kwargs are passed to DuplicateScanner."""
    return DuplicateScanner(options, **kwargs).scan(root, cancel_event)


def check_duplicate_group(
    paths: Iterable[PathLike],
    options: Optional[ScanOptions] = None,
    cancel_event: Optional[threading.Event] = None,
    **kwargs,
) -> Optional[DuplicateGroup]:
    """Re-check a set of files; kwargs are passed to DuplicateScanner."""
    return DuplicateScanner(options, **kwargs).check_group(paths, cancel_event)
