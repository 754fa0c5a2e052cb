"""Tests for the concurrent duplicate scanner."""

import os
import threading
from pathlib import Path
from typing import Dict, Optional
from unittest.mock import patch

import pytest

from tracktwin.cache import CacheStore
from tracktwin.errors import ScanCancelled
from tracktwin.fingerprint import Fingerprint, UnavailableFingerprintService
from tracktwin.groups import GroupSource
from tracktwin.metadata import AudioMetadata
from tracktwin.normalize import DEFAULT_DURATION_TOLERANCE_MS
from tracktwin.scanner import (
    MAX_RECORDED_ERRORS,
    DuplicateScanner,
    ScanOptions,
    check_duplicate_group,
    compute_file_hash,
    find_audio_files,
    find_duplicates,
    is_audio_file,
)


class FakeMetadataReader:
    """Metadata keyed by file name; unknown names fail like unreadable tags."""

    def __init__(self, metadata: Dict[str, AudioMetadata], on_read=None):
        self.metadata = metadata
        self.on_read = on_read
        self.reads = 0
        self._lock = threading.Lock()

    def read(self, path: Path) -> AudioMetadata:
        with self._lock:
            self.reads += 1
        if self.on_read is not None:
            self.on_read(path)
        try:
            return self.metadata[Path(path).name]
        except KeyError:
            raise ValueError(f"no tags in {path}") from None


class FakeFingerprintService:
    """Fingerprints keyed by file name."""

    available = True

    def __init__(self, prints: Dict[str, Fingerprint]):
        self.prints = prints
        self.calls = 0
        self._lock = threading.Lock()

    def fingerprint(
        self,
        path: Path,
        timeout: float = 30.0,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[Fingerprint]:
        with self._lock:
            self.calls += 1
        return self.prints.get(Path(path).name)


def _meta(title: str, artist: str, duration_ms: int = 200000, **kwargs) -> AudioMetadata:
    return AudioMetadata(title=title, artist=artist, duration_ms=duration_ms, **kwargs)


def _write(directory: Path, name: str, content: Optional[bytes] = None) -> str:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_bytes(content if content is not None else name.encode() * 10)
    return str(path)


def _scanner(
    tmp_path: Path,
    reader: FakeMetadataReader,
    options: Optional[ScanOptions] = None,
    **kwargs,
) -> DuplicateScanner:
    return DuplicateScanner(
        options or ScanOptions(worker_count=4),
        cache_store=CacheStore(tmp_path / "cache"),
        metadata_reader=reader,
        **kwargs,
    )


class TestFileDiscovery:
    """Tests for finding audio files."""

    def test_is_audio_file(self) -> None:
        """Test supported extensions, case-insensitively."""
        assert is_audio_file("a.mp3")
        assert is_audio_file("a.FLAC")
        assert is_audio_file("a.opus")
        assert not is_audio_file("a.txt")
        assert not is_audio_file("cover.jpg")

    def test_find_audio_files_recursive(self, tmp_path: Path) -> None:
        """Test nested audio files are found and other files ignored."""
        lib = tmp_path / "lib"
        a = _write(lib, "a.mp3")
        b = _write(lib / "sub" / "deeper", "b.flac")
        _write(lib, "notes.txt")

        assert set(find_audio_files(lib)) == {a, b}

    def test_find_audio_files_min_size(self, tmp_path: Path) -> None:
        """Test files below min_size are skipped."""
        lib = tmp_path / "lib"
        big = _write(lib, "big.mp3", b"x" * 100)
        _write(lib, "small.mp3", b"x")

        assert find_audio_files(lib, min_size=50) == [big]

    def test_find_audio_files_missing_root(self, tmp_path: Path) -> None:
        """Test a missing root raises OSError."""
        with pytest.raises(OSError):
            find_audio_files(tmp_path / "missing")

    def test_compute_file_hash(self, tmp_path: Path) -> None:
        """Test SHA-1 of file content."""
        path = _write(tmp_path, "a.mp3", b"abc")
        assert compute_file_hash(path) == "a9993e364706816aba3e25717850c26c9cd0d89d"


class TestScanOptions:
    """Tests for scan option defaults."""

    def test_defaults(self) -> None:
        """Test default options use metadata grouping only."""
        options = ScanOptions()
        assert not options.use_hash
        assert not options.use_fingerprint
        assert options.tolerance_ms == DEFAULT_DURATION_TOLERANCE_MS
        assert options.workers >= 2

    def test_invalid_tolerance_falls_back(self) -> None:
        """Test a non-positive tolerance uses the default."""
        assert ScanOptions(duration_tolerance_ms=0).tolerance_ms == 3000
        assert ScanOptions(duration_tolerance_ms=-10).tolerance_ms == 3000
        assert ScanOptions(duration_tolerance_ms=5000).tolerance_ms == 5000

    def test_explicit_workers(self) -> None:
        """Test an explicit worker count is used as is."""
        assert ScanOptions(worker_count=3).workers == 3


class TestScan:
    """Tests for DuplicateScanner.scan."""

    def test_metadata_duplicates(self, tmp_path: Path) -> None:
        """Test two tagged copies of a track form one group."""
        lib = tmp_path / "lib"
        flac = _write(lib, "a.flac")
        mp3 = _write(lib / "other", "b.mp3")
        _write(lib, "c.mp3")
        reader = FakeMetadataReader(
            {
                "a.flac": _meta("Song", "Artist", codec="FLAC", lossless=True, bit_depth=16),
                "b.mp3": _meta("Song", "Artist", 201000, bitrate=320000, codec="MP3"),
                "c.mp3": _meta("Something Else", "Nobody", 150000),
            }
        )

        result = _scanner(tmp_path, reader).scan(lib)

        assert result.files_scanned == 3
        assert result.errors == []
        assert not result.cancelled
        assert len(result.groups) == 1
        group = result.groups[0]
        assert set(group.files) == {flac, mp3}
        assert group.best_quality_file == flac
        assert group.source is GroupSource.METADATA
        assert group.formats == ["FLAC", "MP3"]

    def test_versions_merged(self, tmp_path: Path) -> None:
        """Test groups for different versions of a track are merged."""
        lib = tmp_path / "lib"
        paths = [_write(lib, f"{i}.mp3") for i in range(4)]
        reader = FakeMetadataReader(
            {
                "0.mp3": _meta("Heading Up High (feat. Kensington)", "Armin van Buuren"),
                "1.mp3": _meta("Heading Up High (feat. Kensington)", "Armin van Buuren"),
                "2.mp3": _meta("Heading Up High - Remix", "Armin van Buuren", 212000),
                "3.mp3": _meta("Heading Up High - Remix", "Armin van Buuren", 212000),
            }
        )

        result = _scanner(tmp_path, reader).scan(lib)

        assert len(result.groups) == 1
        assert set(result.groups[0].files) == set(paths)

    def test_duration_mismatch(self, tmp_path: Path) -> None:
        """Test same text with durations 30% apart is not grouped."""
        lib = tmp_path / "lib"
        _write(lib, "a.mp3")
        _write(lib, "b.mp3")
        reader = FakeMetadataReader(
            {"a.mp3": _meta("Song", "Artist", 200000), "b.mp3": _meta("Song", "Artist", 260000)}
        )

        assert _scanner(tmp_path, reader).scan(lib).groups == []

        options = ScanOptions(worker_count=2, ignore_duration=True)
        result = _scanner(tmp_path, reader, options).scan(lib)
        assert len(result.groups) == 1

    def test_second_scan_uses_cache(self, tmp_path: Path) -> None:
        """Test unchanged files are not read again on the next scan."""
        lib = tmp_path / "lib"
        _write(lib, "a.mp3")
        _write(lib, "b.mp3")
        reader = FakeMetadataReader(
            {"a.mp3": _meta("Song", "Artist"), "b.mp3": _meta("Song", "Artist")}
        )

        first = _scanner(tmp_path, reader).scan(lib)
        assert reader.reads == 2
        assert first.cache_misses == 2

        second = _scanner(tmp_path, reader).scan(lib)
        assert reader.reads == 2
        assert second.cache_hits == 2
        assert second.cache_misses == 0
        assert [set(g.files) for g in second.groups] == [set(g.files) for g in first.groups]

    def test_changed_file_is_reread(self, tmp_path: Path) -> None:
        """Test a file whose size changed is read again."""
        lib = tmp_path / "lib"
        _write(lib, "a.mp3")
        b = _write(lib, "b.mp3")
        reader = FakeMetadataReader(
            {"a.mp3": _meta("Song", "Artist"), "b.mp3": _meta("Song", "Artist")}
        )
        _scanner(tmp_path, reader).scan(lib)

        Path(b).write_bytes(b"different length content")
        result = _scanner(tmp_path, reader).scan(lib)

        assert reader.reads == 3
        assert result.cache_hits == 1
        assert result.cache_misses == 1

    def test_no_cache(self, tmp_path: Path) -> None:
        """Test use_cache=False neither reads nor writes a cache file."""
        lib = tmp_path / "lib"
        _write(lib, "a.mp3")
        reader = FakeMetadataReader({"a.mp3": _meta("Song", "Artist")})
        scanner = _scanner(tmp_path, reader, use_cache=False)

        scanner.scan(lib)
        scanner.scan(lib)

        assert reader.reads == 2
        assert not (tmp_path / "cache").exists()

    def test_corrupt_cache_is_ignored(self, tmp_path: Path) -> None:
        """Test an unreadable cache is treated as empty and reported."""
        lib = tmp_path / "lib"
        _write(lib, "a.mp3")
        _write(lib, "b.mp3")
        store = CacheStore(tmp_path / "cache")
        cache_path = store.path_for_root(os.path.abspath(lib))
        cache_path.parent.mkdir(parents=True)
        cache_path.write_text("{broken")
        reader = FakeMetadataReader(
            {"a.mp3": _meta("Song", "Artist"), "b.mp3": _meta("Song", "Artist")}
        )

        result = DuplicateScanner(
            ScanOptions(worker_count=2), cache_store=store, metadata_reader=reader
        ).scan(lib)

        assert len(result.groups) == 1
        assert len(result.errors) == 1
        assert "failed to read" in result.errors[0]

    def test_filename_fallback(self, tmp_path: Path) -> None:
        """Test untagged files group by parsed file names when enabled."""
        lib = tmp_path / "lib"
        a = _write(lib / "one", "Artist - Song.mp3")
        b = _write(lib / "two", "Artist - Song.flac")
        reader = FakeMetadataReader({})

        assert _scanner(tmp_path, reader).scan(lib).groups == []

        options = ScanOptions(worker_count=2, use_filename_fallback=True)
        result = _scanner(tmp_path, reader, options).scan(lib)
        assert len(result.groups) == 1
        assert set(result.groups[0].files) == {a, b}
        assert result.groups[0].title == "Song"
        assert result.groups[0].artist == "Artist"

    def test_hash_duplicates(self, tmp_path: Path) -> None:
        """Test byte-identical untagged files group by hash when enabled."""
        lib = tmp_path / "lib"
        a = _write(lib, "x.mp3", b"same bytes")
        b = _write(lib / "copy", "y.mp3", b"same bytes")
        _write(lib, "z.mp3", b"other bytes")
        reader = FakeMetadataReader({})

        assert _scanner(tmp_path, reader).scan(lib).groups == []

        options = ScanOptions(worker_count=2, use_hash=True)
        result = _scanner(tmp_path, reader, options).scan(lib)
        assert len(result.groups) == 1
        assert set(result.groups[0].files) == {a, b}
        assert result.groups[0].source is GroupSource.HASH

    def test_hash_group_not_repeated(self, tmp_path: Path) -> None:
        """Test files already grouped by metadata are not grouped again by hash."""
        lib = tmp_path / "lib"
        _write(lib, "x.mp3", b"same bytes")
        _write(lib, "y.mp3", b"same bytes")
        reader = FakeMetadataReader(
            {"x.mp3": _meta("Song", "Artist"), "y.mp3": _meta("Song", "Artist")}
        )

        options = ScanOptions(worker_count=2, use_hash=True)
        result = _scanner(tmp_path, reader, options).scan(lib)

        assert len(result.groups) == 1
        assert result.groups[0].source is GroupSource.METADATA

    def test_fingerprint_duplicates(self, tmp_path: Path) -> None:
        """Test differently tagged files with matching fingerprints are grouped."""
        lib = tmp_path / "lib"
        a = _write(lib, "a.mp3")
        b = _write(lib, "b.flac")
        _write(lib, "c.mp3")
        reader = FakeMetadataReader(
            {
                "a.mp3": _meta("Alpha", "Zed"),
                "b.flac": _meta("Quux Quuux", "Bbbbb"),
                "c.mp3": _meta("Other", "Person"),
            }
        )
        service = FakeFingerprintService(
            {
                "a.mp3": Fingerprint(200, (1, 2, 3, 4)),
                "b.flac": Fingerprint(200, (1, 2, 3, 5)),
                "c.mp3": Fingerprint(200, (0xFFFFFFFF,) * 4),
            }
        )
        options = ScanOptions(worker_count=2, use_fingerprint=True)

        result = _scanner(tmp_path, reader, options, fingerprint_service=service).scan(lib)

        assert service.calls == 3
        assert len(result.groups) == 1
        group = result.groups[0]
        assert set(group.files) == {a, b}
        assert group.source is GroupSource.FINGERPRINT
        assert group.title in ("Alpha", "Quux Quuux")

    def test_fingerprint_disabled(self, tmp_path: Path) -> None:
        """Test the fingerprint service is not used unless enabled."""
        lib = tmp_path / "lib"
        _write(lib, "a.mp3")
        service = FakeFingerprintService({})

        _scanner(tmp_path, FakeMetadataReader({}), fingerprint_service=service).scan(lib)

        assert service.calls == 0

    def test_fingerprint_unavailable(self, tmp_path: Path) -> None:
        """Test a missing fingerprint tool only removes fingerprint matches."""
        lib = tmp_path / "lib"
        _write(lib, "a.mp3")
        _write(lib, "b.mp3")
        reader = FakeMetadataReader(
            {"a.mp3": _meta("Song", "Artist"), "b.mp3": _meta("Song", "Artist")}
        )
        options = ScanOptions(worker_count=2, use_fingerprint=True)

        result = _scanner(
            tmp_path, reader, options, fingerprint_service=UnavailableFingerprintService()
        ).scan(lib)

        assert result.errors == []
        assert len(result.groups) == 1
        assert result.groups[0].source is GroupSource.METADATA

    def test_files_in_at_most_one_group(self, tmp_path: Path) -> None:
        """Test no path appears in two groups or twice in one group."""
        lib = tmp_path / "lib"
        for name in ("a.mp3", "b.mp3", "c.mp3", "d.mp3", "e.mp3"):
            _write(lib, name, b"same bytes")
        reader = FakeMetadataReader(
            {
                "a.mp3": _meta("Song", "Artist"),
                "b.mp3": _meta("Song", "Artist"),
                "c.mp3": _meta("Tune", "Band"),
                "d.mp3": _meta("Tune", "Band"),
            }
        )
        service = FakeFingerprintService(
            {name: Fingerprint(200, (7, 7)) for name in ("a.mp3", "c.mp3", "e.mp3")}
        )
        options = ScanOptions(worker_count=3, use_hash=True, use_fingerprint=True)

        result = _scanner(tmp_path, reader, options, fingerprint_service=service).scan(lib)

        seen = []
        for group in result.groups:
            assert len(group.files) >= 2
            assert len(set(group.files)) == len(group.files)
            seen.extend(group.files)
        assert len(seen) == len(set(seen))

    def test_empty_root(self, tmp_path: Path) -> None:
        """Test an empty root path is rejected."""
        with pytest.raises(ValueError):
            _scanner(tmp_path, FakeMetadataReader({})).scan("")

    def test_missing_root(self, tmp_path: Path) -> None:
        """Test an unlistable root raises ValueError chained from OSError."""
        with pytest.raises(ValueError, match="Failed to list audio files") as exc_info:
            _scanner(tmp_path, FakeMetadataReader({})).scan(tmp_path / "missing")
        assert isinstance(exc_info.value.__cause__, OSError)

    def test_empty_library(self, tmp_path: Path) -> None:
        """Test a library without audio files has no groups."""
        lib = tmp_path / "lib"
        lib.mkdir()
        result = _scanner(tmp_path, FakeMetadataReader({})).scan(lib)
        assert result.groups == []
        assert result.files_scanned == 0

    def test_vanished_files_are_errors(self, tmp_path: Path) -> None:
        """Test files that cannot be stat'ed are reported, capped at 10."""
        lib = tmp_path / "lib"
        lib.mkdir()
        missing = [str(lib / f"gone{i}.mp3") for i in range(15)]

        with patch("tracktwin.scanner.find_audio_files", return_value=missing):
            result = _scanner(tmp_path, FakeMetadataReader({})).scan(lib)

        assert len(result.errors) == MAX_RECORDED_ERRORS
        assert all(e.startswith("file ") for e in result.errors)
        assert result.files_scanned == 0

    def test_unreadable_tags_are_errors(self, tmp_path: Path) -> None:
        """Test a metadata read failure is recorded and the scan carries on."""
        lib = tmp_path / "lib"
        a = _write(lib, "a.mp3")
        b = _write(lib, "b.mp3")
        broken = _write(lib, "broken.mp3")
        reader = FakeMetadataReader(
            {"a.mp3": _meta("Song", "Artist"), "b.mp3": _meta("Song", "Artist")}
        )
        scanner = _scanner(tmp_path, reader)

        result = scanner.scan(lib)

        assert result.files_scanned == 3
        assert result.errors == [f"file {broken}: metadata read failed: no tags in {broken}"]
        assert scanner.error_count == 1
        assert len(result.groups) == 1
        assert set(result.groups[0].files) == {a, b}

    def test_hash_failure_is_error(self, tmp_path: Path) -> None:
        """Test a hash failure is recorded and the file still groups by metadata."""
        lib = tmp_path / "lib"
        _write(lib, "a.mp3")
        _write(lib, "b.mp3")
        reader = FakeMetadataReader(
            {"a.mp3": _meta("Song", "Artist"), "b.mp3": _meta("Song", "Artist")}
        )
        options = ScanOptions(worker_count=2, use_hash=True)
        scanner = _scanner(tmp_path, reader, options)

        with patch(
            "tracktwin.scanner.compute_file_hash", side_effect=PermissionError("denied")
        ):
            result = scanner.scan(lib)

        assert len(result.errors) == 2
        assert all("hash failed: denied" in e for e in result.errors)
        assert scanner.error_count == 2
        assert len(result.groups) == 1

    def test_split_single_kept_with_fingerprints(self, tmp_path: Path) -> None:
        """Test a copy in the next duration bucket stays grouped with fingerprinting on."""
        lib = tmp_path / "lib"
        paths = {_write(lib, "a.flac"), _write(lib, "b.flac"), _write(lib, "c.mp3")}
        reader = FakeMetadataReader(
            {
                "a.flac": _meta("Song", "Artist", 210000),
                "b.flac": _meta("Song", "Artist", 210400),
                "c.mp3": _meta("Song", "Artist", 212000),
            }
        )
        service = FakeFingerprintService(
            {name: Fingerprint(210, (1, 2, 3, 4)) for name in ("a.flac", "b.flac", "c.mp3")}
        )

        plain = _scanner(tmp_path, reader).scan(lib)
        assert len(plain.groups) == 1
        assert set(plain.groups[0].files) == paths

        options = ScanOptions(worker_count=2, use_fingerprint=True)
        result = _scanner(
            tmp_path, reader, options, fingerprint_service=service, use_cache=False
        ).scan(lib)
        assert len(result.groups) == 1
        assert set(result.groups[0].files) == paths

    def test_module_function(self, tmp_path: Path) -> None:
        """Test find_duplicates wraps DuplicateScanner."""
        lib = tmp_path / "lib"
        _write(lib, "a.mp3")
        _write(lib, "b.mp3")
        reader = FakeMetadataReader(
            {"a.mp3": _meta("Song", "Artist"), "b.mp3": _meta("Song", "Artist")}
        )

        result = find_duplicates(
            lib,
            ScanOptions(worker_count=2),
            cache_store=CacheStore(tmp_path / "cache"),
            metadata_reader=reader,
        )
        assert len(result.groups) == 1


class TestCancellation:
    """Tests for cancelling a scan."""

    def test_cancel_before_start(self, tmp_path: Path) -> None:
        """Test a pre-set event cancels the scan with a partial result."""
        lib = tmp_path / "lib"
        _write(lib, "a.mp3")
        _write(lib, "b.mp3")
        reader = FakeMetadataReader(
            {"a.mp3": _meta("Song", "Artist"), "b.mp3": _meta("Song", "Artist")}
        )
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(ScanCancelled) as exc_info:
            _scanner(tmp_path, reader).scan(lib, cancel_event=cancel)

        result = exc_info.value.result
        assert result is not None
        assert result.cancelled
        assert result.groups == []
        assert reader.reads == 0

    def test_cancel_during_scan(self, tmp_path: Path) -> None:
        """Test files not yet started are skipped after cancellation."""
        lib = tmp_path / "lib"
        for i in range(20):
            _write(lib, f"{i:02d}.mp3")
        cancel = threading.Event()
        reader = FakeMetadataReader({}, on_read=lambda path: cancel.set())

        with pytest.raises(ScanCancelled) as exc_info:
            _scanner(tmp_path, reader, ScanOptions(worker_count=1)).scan(
                lib, cancel_event=cancel
            )

        assert exc_info.value.result.cancelled
        assert exc_info.value.result.files_scanned < 20
        assert reader.reads < 20

    def test_cancel_after_last_file(self, tmp_path: Path) -> None:
        """Test an event set once every file was processed does not cancel the scan."""
        lib = tmp_path / "lib"
        _write(lib, "a.mp3")
        _write(lib, "b.mp3")
        reader = FakeMetadataReader(
            {"a.mp3": _meta("Song", "Artist"), "b.mp3": _meta("Song", "Artist")}
        )
        cancel = threading.Event()
        finalize = DuplicateScanner._finalize_groups

        def cancel_then_finalize(scanner, *args):
            cancel.set()
            return finalize(scanner, *args)

        with patch.object(DuplicateScanner, "_finalize_groups", cancel_then_finalize):
            result = _scanner(tmp_path, reader).scan(lib, cancel_event=cancel)

        assert not result.cancelled
        assert result.files_scanned == 2
        assert len(result.groups) == 1


class TestCheckGroup:
    """Tests for re-checking a group of files."""

    def test_still_duplicates(self, tmp_path: Path) -> None:
        """Test files that still match are returned as a group."""
        lib = tmp_path / "lib"
        a = _write(lib, "a.mp3")
        b = _write(lib, "b.mp3")
        reader = FakeMetadataReader(
            {"a.mp3": _meta("Song", "Artist"), "b.mp3": _meta("Song", "Artist")}
        )

        group = _scanner(tmp_path, reader).check_group([a, b])

        assert group is not None
        assert set(group.files) == {a, b}

    def test_after_deletion(self, tmp_path: Path) -> None:
        """Test a group with a deleted file no longer exists."""
        lib = tmp_path / "lib"
        a = _write(lib, "a.mp3")
        b = _write(lib, "b.mp3")
        reader = FakeMetadataReader(
            {"a.mp3": _meta("Song", "Artist"), "b.mp3": _meta("Song", "Artist")}
        )
        scanner = _scanner(tmp_path, reader)
        assert scanner.check_group([a, b]) is not None

        os.remove(b)
        assert scanner.check_group([a, b]) is None

    def test_hash_fallback(self, tmp_path: Path) -> None:
        """Test identical untagged files are confirmed by hash."""
        lib = tmp_path / "lib"
        a = _write(lib, "a.mp3", b"same")
        b = _write(lib, "b.mp3", b"same")

        group = check_duplicate_group(
            [a, b],
            ScanOptions(worker_count=2, use_hash=True),
            cache_store=CacheStore(tmp_path / "cache"),
            metadata_reader=FakeMetadataReader({}),
        )

        assert group is not None
        assert group.source is GroupSource.HASH

    def test_not_duplicates(self, tmp_path: Path) -> None:
        """Test unrelated files give None."""
        lib = tmp_path / "lib"
        a = _write(lib, "a.mp3")
        b = _write(lib, "b.mp3")
        reader = FakeMetadataReader(
            {"a.mp3": _meta("Song", "Artist"), "b.mp3": _meta("Other", "Band")}
        )
        assert _scanner(tmp_path, reader).check_group([a, b]) is None

    def test_empty_paths(self, tmp_path: Path) -> None:
        """Test an empty path list is rejected."""
        with pytest.raises(ValueError):
            _scanner(tmp_path, FakeMetadataReader({})).check_group([])


class TestScenarios:
    """End to end library scenarios."""

    def test_flac_and_video_rip(self, tmp_path: Path) -> None:
        """Test a FLAC and an MP3 rip of the same song form one group."""
        lib = tmp_path / "lib"
        flac = _write(lib, "Artist - Song.flac")
        mp3 = _write(lib, "Artist - Song (Official Video).mp3")
        reader = FakeMetadataReader(
            {
                "Artist - Song.flac": _meta(
                    "Song",
                    "Artist",
                    210000,
                    bitrate=320000,
                    sample_rate=44100,
                    bit_depth=16,
                    codec="FLAC",
                    lossless=True,
                ),
                "Artist - Song (Official Video).mp3": _meta(
                    "Song (Official Video)", "Artist", 212000, bitrate=192000, codec="MP3"
                ),
            }
        )

        result = _scanner(tmp_path, reader).scan(lib)

        assert len(result.groups) == 1
        group = result.groups[0]
        assert set(group.files) == {flac, mp3}
        assert group.best_quality_file == flac
        assert "lossless" in group.best_quality_reason

    def test_acoustic_match_across_sources(self, tmp_path: Path) -> None:
        """Test differently titled versions with close fingerprints are grouped."""
        lib = tmp_path / "lib"
        mp3 = _write(lib / "shop", "track.mp3")
        flac = _write(lib / "rip", "track.flac")
        reader = FakeMetadataReader(
            {
                "track.mp3": _meta("Song (feat. X)", "Artist", 200000),
                "track.flac": _meta("Song - Radio Edit", "Artist", 205000),
            }
        )
        # 10 of 128 bits differ (~8%)
        service = FakeFingerprintService(
            {
                "track.mp3": Fingerprint(200, (0, 0, 0, 0)),
                "track.flac": Fingerprint(205, (0b111, 0b111, 0b11, 0b11)),
            }
        )
        options = ScanOptions(worker_count=2, use_fingerprint=True)

        result = _scanner(tmp_path, reader, options, fingerprint_service=service).scan(lib)

        assert len(result.groups) == 1
        assert set(result.groups[0].files) == {mp3, flac}
        assert result.groups[0].source is GroupSource.FINGERPRINT
