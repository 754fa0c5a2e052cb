"""Per-library JSON cache of file metadata, hashes and fingerprints."""

import hashlib
import json
import os
import platform
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from .errors import CacheError
from .metadata import AudioMetadata, metadata_or_none

PathLike = Union[str, Path]


def normalize_path(path: PathLike) -> str:
    """Normalize a file path to a canonical, forward-slash form."""
    return os.path.normpath(str(path)).replace(os.sep, "/")


def get_cache_dir() -> Path:
    """Get platform-specific cache directory."""
    if platform.system() == "Windows":
        local_appdata = os.getenv("LOCALAPPDATA")
        if local_appdata:
            return Path(local_appdata) / "tracktwin"
    xdg_cache = os.getenv("XDG_CACHE_HOME")
    if xdg_cache:
        return Path(xdg_cache) / "tracktwin"
    return Path.home() / ".cache" / "tracktwin"


@dataclass
class CacheEntry:
    """Cached scan data for one file, valid while size and mtime match."""

    path: str
    size: int
    mod_time_unix: int
    metadata: Optional[AudioMetadata] = None
    file_hash: str = ""
    fingerprint: List[int] = field(default_factory=list)
    fingerprint_duration: int = 0
    saved_at: str = ""

    def matches(self, size: int, mod_time_unix: int) -> bool:
        """Check whether the entry is still valid for the file's stat data."""
        return self.size == size and self.mod_time_unix == mod_time_unix

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "path": self.path,
            "size": self.size,
            "mod_time_unix": self.mod_time_unix,
        }
        if self.metadata is not None:
            data["metadata"] = self.metadata.to_dict()
        if self.file_hash:
            data["file_hash"] = self.file_hash
        if self.fingerprint:
            data["fingerprint"] = list(self.fingerprint)
            data["fingerprint_duration"] = self.fingerprint_duration
        if self.saved_at:
            data["saved_at"] = self.saved_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            path=str(data["path"]),
            size=int(data["size"]),
            mod_time_unix=int(data["mod_time_unix"]),
            metadata=metadata_or_none(data.get("metadata")),
            file_hash=data.get("file_hash", "") or "",
            fingerprint=[int(v) for v in data.get("fingerprint") or []],
            fingerprint_duration=int(data.get("fingerprint_duration", 0) or 0),
            saved_at=data.get("saved_at", "") or "",
        )


class CacheStore:
    """
    Stores one JSON cache file per library root.

    The store holds no entries itself: callers load a mapping, mutate it and
    save it back, so every scan owns the lifetime of its cache data.
    """

    def __init__(self, cache_dir: Optional[Path] = None):
        """
        Initialize cache store.

        Args:
            cache_dir: Directory holding cache files
                (default: $XDG_CACHE_HOME/tracktwin)
        """
        self.cache_dir = Path(cache_dir) if cache_dir is not None else get_cache_dir()

    def path_for_root(self, root: PathLike) -> Path:
        """
        Compute the cache file path for a library root.

        The file name is derived from a SHA-1 of the root string so that
        different libraries never share a cache file.
        """
        root_str = str(root)
        if not root_str:
            raise ValueError("root path is required")
        digest = hashlib.sha1(root_str.encode("utf-8")).hexdigest()
        return self.cache_dir / f"duplicates_{digest}.json"

    def load(self, root: PathLike) -> Dict[str, CacheEntry]:
        """
        Load cache entries for a root.

        Returns:
            Mapping of normalized path to CacheEntry (empty if no cache yet)

        Raises:
            CacheError: If the cache file exists but cannot be read or parsed
        """
        cache_path = self.path_for_root(root)
        try:
            with open(cache_path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            raise CacheError(f"failed to read duplicate cache {cache_path}: {e}") from e

        if not isinstance(data, dict):
            raise CacheError(f"malformed duplicate cache {cache_path}")

        entries: Dict[str, CacheEntry] = {}
        try:
            for raw in data.values():
                entry = CacheEntry.from_dict(raw)
                entry.path = normalize_path(entry.path)
                entries[entry.path] = entry
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise CacheError(f"malformed duplicate cache {cache_path}: {e}") from e
        return entries

    def save(self, root: PathLike, entries: Dict[str, CacheEntry]) -> None:
        """
        Save cache entries atomically (temp file, then rename).

        Raises:
            CacheError: If the cache could not be written
        """
        cache_path = self.path_for_root(root)
        saved_at = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        payload = {}
        for key, entry in entries.items():
            data = entry.to_dict()
            data["saved_at"] = saved_at
            payload[key] = data

        tmp_path = cache_path.with_name(cache_path.name + ".tmp")
        try:
            cache_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, cache_path)
        except (OSError, TypeError, ValueError) as e:
            try:
                tmp_path.unlink()
            except OSError:
                pass
            raise CacheError(f"failed to save duplicate cache {cache_path}: {e}") from e

    def prune(self, root: PathLike) -> int:
        """
        Remove entries for files that no longer exist.

        Returns:
            Number of entries removed
        """
        entries = self.load(root)
        missing = [key for key in entries if not os.path.exists(key)]
        for key in missing:
            del entries[key]
        if missing:
            self.save(root, entries)
        return len(missing)

    def invalidate(self, root: PathLike, paths: Iterable[PathLike]) -> int:
        """
        Remove specific file paths from the cache.

        Returns:
            Number of entries removed
        """
        keys = [normalize_path(p) for p in paths]
        if not keys:
            return 0
        entries = self.load(root)
        removed = 0
        for key in keys:
            if entries.pop(key, None) is not None:
                removed += 1
        if removed:
            self.save(root, entries)
        return removed

    def clear(self, root: PathLike) -> bool:
        """
        Delete the cache file for a root.

        Returns:
            True if a cache file was removed
        """
        cache_path = self.path_for_root(root)
        try:
            cache_path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise CacheError(f"failed to remove duplicate cache {cache_path}: {e}") from e
