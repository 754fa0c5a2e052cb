"""Tests for the per-library duplicate cache."""

import json
import tempfile
from pathlib import Path

import pytest

from tracktwin.cache import CacheEntry, CacheStore, normalize_path
from tracktwin.errors import CacheError
from tracktwin.metadata import AudioMetadata


def _entry(path: str, **kwargs) -> CacheEntry:
    return CacheEntry(path=normalize_path(path), size=10, mod_time_unix=1000, **kwargs)


class TestCacheEntry:
    """Tests for cache entry validity and serialization."""

    def test_matches(self) -> None:
        """Test entries are only valid for identical size and mtime."""
        entry = _entry("/music/a.mp3")
        assert entry.matches(10, 1000)
        assert not entry.matches(11, 1000)
        assert not entry.matches(10, 1001)

    def test_to_dict_omits_empty_fields(self) -> None:
        """Test optional fields are left out when empty."""
        data = _entry("/music/a.mp3").to_dict()
        assert set(data) == {"path", "size", "mod_time_unix"}

    def test_from_dict_with_metadata(self) -> None:
        """Test all fields survive a dict round trip."""
        entry = _entry(
            "/music/a.flac",
            metadata=AudioMetadata(title="Song", artist="Artist", duration_ms=1000),
            file_hash="abc",
            fingerprint=[1, 2, 3],
            fingerprint_duration=1,
        )
        assert CacheEntry.from_dict(entry.to_dict()) == entry


class TestCacheStore:
    """Tests for loading and saving cache files."""

    def test_path_for_root(self) -> None:
        """Test each root gets its own stable file name."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = CacheStore(Path(tmpdir))
            path_a = store.path_for_root("/music")
            assert path_a == store.path_for_root("/music")
            assert path_a != store.path_for_root("/other")
            assert path_a.parent == Path(tmpdir)
            assert path_a.name.startswith("duplicates_")
            assert path_a.suffix == ".json"

    def test_path_for_empty_root(self) -> None:
        """Test an empty root is rejected."""
        with tempfile.TemporaryDirectory() as tmpdir:
            with pytest.raises(ValueError):
                CacheStore(Path(tmpdir)).path_for_root("")

    def test_load_missing(self) -> None:
        """Test a missing cache file loads as empty."""
        with tempfile.TemporaryDirectory() as tmpdir:
            assert CacheStore(Path(tmpdir)).load("/music") == {}

    def test_save_and_load(self) -> None:
        """Test saved entries load back with a saved_at stamp."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = CacheStore(Path(tmpdir) / "cache")
            entry = _entry("/music/a.mp3", metadata=AudioMetadata(title="Song"))
            store.save("/music", {entry.path: entry})

            cache_path = store.path_for_root("/music")
            assert cache_path.exists()
            assert not cache_path.with_name(cache_path.name + ".tmp").exists()

            loaded = store.load("/music")
            assert list(loaded) == [entry.path]
            assert loaded[entry.path].metadata == AudioMetadata(title="Song")
            assert loaded[entry.path].saved_at.endswith("Z")

    def test_load_renormalizes_keys(self) -> None:
        """Test keys are normalized on load."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = CacheStore(Path(tmpdir))
            raw = {"x": {"path": "/music//sub/../a.mp3", "size": 1, "mod_time_unix": 2}}
            store.path_for_root("/music").write_text(json.dumps(raw))

            assert list(store.load("/music")) == ["/music/a.mp3"]

    def test_load_corrupt(self) -> None:
        """Test a corrupt cache file raises CacheError."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = CacheStore(Path(tmpdir))
            store.path_for_root("/music").write_text("{not json")
            with pytest.raises(CacheError):
                store.load("/music")

    def test_load_malformed_entry(self) -> None:
        """Test entries missing required fields raise CacheError."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = CacheStore(Path(tmpdir))
            store.path_for_root("/music").write_text(json.dumps({"a": {"size": 1}}))
            with pytest.raises(CacheError):
                store.load("/music")

    def test_save_failure(self) -> None:
        """Test write failures raise CacheError and leave no temp file."""
        with tempfile.TemporaryDirectory() as tmpdir:
            blocker = Path(tmpdir) / "blocker"
            blocker.write_text("not a directory")
            store = CacheStore(blocker)
            with pytest.raises(CacheError):
                store.save("/music", {})

    def test_prune(self) -> None:
        """Test entries for deleted files are removed."""
        with tempfile.TemporaryDirectory() as tmpdir:
            existing = Path(tmpdir) / "a.mp3"
            existing.write_bytes(b"data")
            store = CacheStore(Path(tmpdir) / "cache")
            kept = _entry(str(existing))
            gone = _entry(str(Path(tmpdir) / "gone.mp3"))
            store.save(tmpdir, {kept.path: kept, gone.path: gone})

            assert store.prune(tmpdir) == 1
            assert list(store.load(tmpdir)) == [kept.path]
            assert store.prune(tmpdir) == 0

    def test_invalidate(self) -> None:
        """Test named paths are removed from the cache."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = CacheStore(Path(tmpdir))
            a = _entry("/music/a.mp3")
            b = _entry("/music/b.mp3")
            store.save("/music", {a.path: a, b.path: b})

            assert store.invalidate("/music", ["/music/./a.mp3", "/music/c.mp3"]) == 1
            assert list(store.load("/music")) == [b.path]
            assert store.invalidate("/music", []) == 0

    def test_clear(self) -> None:
        """Test clearing removes the file once."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = CacheStore(Path(tmpdir))
            store.save("/music", {})
            assert store.clear("/music")
            assert not store.path_for_root("/music").exists()
            assert not store.clear("/music")


class TestNormalizePath:
    """Tests for path normalization."""

    def test_normalize_path(self) -> None:
        """Test redundant separators and up-references are collapsed."""
        assert normalize_path("/music//a/../b.mp3") == "/music/b.mp3"
        assert normalize_path(Path("/music/./b.mp3")) == "/music/b.mp3"
