"""Audio metadata reading for duplicate detection."""

from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

LOSSLESS_CODECS = {"FLAC", "WAV", "ALAC", "APE", "WV", "TTA", "AIFF"}


@dataclass
class AudioMetadata:
    """Tags and stream properties of a single audio file."""

    title: str = ""
    artist: str = ""
    album: str = ""
    duration_ms: int = 0
    bitrate: int = 0  # bits per second
    sample_rate: int = 0
    bit_depth: int = 0
    channels: int = 0
    codec: str = ""
    lossless: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dict (cache file form)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AudioMetadata":
        """Build from a dict, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class MetadataReader(Protocol):
    """Capability that reads metadata from an audio file."""

    def read(self, path: Path) -> AudioMetadata:
        """Read metadata, raising on any failure."""
        ...


def _first_tag(tags: Any, key: str) -> str:
    if not tags:
        return ""
    value = tags.get(key)
    if not value:
        return ""
    if isinstance(value, list):
        return str(value[0]).strip()
    return str(value).strip()


def _codec_from_mime(audio: Any) -> str:
    if not getattr(audio, "mime", None):
        return ""
    # mime is like ['audio/flac'] or ['audio/mpeg']
    codec = str(audio.mime[0]).split("/")[-1].upper()
    if codec == "MPEG":
        codec = "MP3"
    elif codec == "X-FLAC":
        codec = "FLAC"
    elif codec in ("X-WAV", "WAVE"):
        codec = "WAV"
    elif codec == "X-AIFF":
        codec = "AIFF"
    return codec


class MutagenMetadataReader:
    """Reads tags and stream info with mutagen (no subprocess)."""

    def read(self, path: Path) -> AudioMetadata:
        """
        Read metadata from an audio file.

        Args:
            path: Path to audio file

        Returns:
            AudioMetadata with whatever mutagen could extract

        Raises:
            ValueError: If the file is not a recognised audio file
        """
        from mutagen import File as MutagenFile

        audio = MutagenFile(str(path), easy=True)
        if audio is None or audio.info is None:
            raise ValueError(f"unrecognised audio file: {path}")

        info = audio.info
        codec = _codec_from_mime(audio)
        length = getattr(info, "length", None) or 0
        sample_rate = getattr(info, "sample_rate", None) or 0
        bit_depth = getattr(info, "bits_per_sample", None) or 0
        bitrate = getattr(info, "bitrate", None) or 0
        channels = getattr(info, "channels", None) or 0

        # ALAC lives inside MP4 containers; mutagen reports it in info.codec
        info_codec = str(getattr(info, "codec", "") or "").lower()
        if info_codec == "alac":
            codec = "ALAC"

        return AudioMetadata(
            title=_first_tag(audio.tags, "title"),
            artist=_first_tag(audio.tags, "artist"),
            album=_first_tag(audio.tags, "album"),
            duration_ms=int(length * 1000),
            bitrate=int(bitrate),
            sample_rate=int(sample_rate),
            bit_depth=int(bit_depth),
            channels=int(channels),
            codec=codec,
            lossless=codec in LOSSLESS_CODECS,
        )


def metadata_or_none(data: Optional[Dict[str, Any]]) -> Optional[AudioMetadata]:
    """Decode an optional cached metadata dict."""
    if not data:
        return None
    return AudioMetadata.from_dict(data)
