"""Chromaprint (fpcalc) fingerprinting and fingerprint comparison."""

import shutil
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Sequence, Tuple

from .errors import ScanCancelled

DEFAULT_FINGERPRINT_TIMEOUT = 30.0
DEFAULT_FINGERPRINT_LENGTH = 120
DEFAULT_FINGERPRINT_THRESHOLD = 0.15

# How often a running fpcalc is checked for cancellation
_POLL_INTERVAL = 0.2
_UINT32_MAX = 0xFFFFFFFF


@dataclass(frozen=True)
class Fingerprint:
    """Raw Chromaprint subfingerprints plus the audio duration fpcalc saw."""

    duration_sec: int
    values: Tuple[int, ...]


class FingerprintService(Protocol):
    """Capability that produces acoustic fingerprints."""

    @property
    def available(self) -> bool:
        ...

    def fingerprint(
        self,
        path: Path,
        timeout: float = DEFAULT_FINGERPRINT_TIMEOUT,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[Fingerprint]:
        """Fingerprint a file; None when no fingerprint is available."""
        ...


class UnavailableFingerprintService:
    """Fingerprint service used when acoustic matching is not possible."""

    available = False

    def fingerprint(
        self,
        path: Path,
        timeout: float = DEFAULT_FINGERPRINT_TIMEOUT,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[Fingerprint]:
        return None


def parse_fpcalc_output(output: str) -> Optional[Fingerprint]:
    """
    Parse ``fpcalc -raw`` output.

    Expects a ``DURATION=<sec>`` line (fraction allowed, truncated) and a
    ``FINGERPRINT=<values>`` line with space- or comma-separated unsigned
    32-bit decimals. Tokens that do not parse are skipped.

    Returns:
        Fingerprint, or None if no fingerprint values were found
    """
    duration = 0
    values = []
    for line in output.strip().splitlines():
        line = line.strip()
        if line.startswith("DURATION="):
            raw = line[len("DURATION="):].split(".", 1)[0]
            try:
                duration = int(raw)
            except ValueError:
                duration = 0
        elif line.startswith("FINGERPRINT="):
            raw = line[len("FINGERPRINT="):].replace(",", " ")
            for token in raw.split():
                try:
                    value = int(token)
                except ValueError:
                    continue
                if 0 <= value <= _UINT32_MAX:
                    values.append(value)
            break

    if not values:
        return None
    return Fingerprint(duration_sec=duration, values=tuple(values))


class FpcalcFingerprintService:
    """Runs the fpcalc binary from chromaprint-tools."""

    def __init__(
        self, executable: str = "fpcalc", length: int = DEFAULT_FINGERPRINT_LENGTH
    ):
        """
        Initialize fpcalc service.

        Args:
            executable: fpcalc command name or path
            length: Seconds of audio fpcalc should analyse
        """
        self.executable = executable
        self.length = length
        self._available: Optional[bool] = None

    @property
    def available(self) -> bool:
        """Whether the fpcalc executable can be found."""
        if self._available is None:
            self._available = shutil.which(self.executable) is not None
        return self._available

    def command(self, path: Path) -> list:
        return [self.executable, "-raw", "-length", str(self.length), str(path)]

    def fingerprint(
        self,
        path: Path,
        timeout: float = DEFAULT_FINGERPRINT_TIMEOUT,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[Fingerprint]:
        """
        Compute a raw fingerprint for a file.

        A missing executable, non-zero exit, timeout or unparsable output all
        yield None.

        Raises:
            ScanCancelled: If cancel_event is set while fpcalc is running
        """
        if not self.available:
            return None

        try:
            proc = subprocess.Popen(
                self.command(path),
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
            )
        except OSError:
            return None

        waited = 0.0
        while True:
            if cancel_event is not None and cancel_event.is_set():
                _kill(proc)
                raise ScanCancelled(f"fingerprinting cancelled for {path}")
            slice_timeout = min(_POLL_INTERVAL, max(timeout - waited, 0.0))
            try:
                stdout, _ = proc.communicate(timeout=slice_timeout)
                break
            except subprocess.TimeoutExpired:
                waited += slice_timeout
                if waited >= timeout:
                    _kill(proc)
                    return None

        if proc.returncode != 0:
            return None
        return parse_fpcalc_output(stdout or "")


def _kill(proc: subprocess.Popen) -> None:
    proc.kill()
    try:
        proc.communicate(timeout=5)
    except subprocess.TimeoutExpired:
        pass


def hamming_distance(fp1: Sequence[int], fp2: Sequence[int]) -> Tuple[int, int]:
    """
    Count differing bits over the common prefix of two fingerprints.

    Only the first min(len) subfingerprints are compared so that trimmed
    copies of the same recording are not penalised.

    Returns:
        Tuple of (different_bits, compared_bits)
    """
    n = min(len(fp1), len(fp2))
    different_bits = 0
    for a, b in zip(fp1[:n], fp2[:n]):
        different_bits += ((a ^ b) & _UINT32_MAX).bit_count()
    return different_bits, n * 32


def fingerprints_match(
    fp1: Sequence[int],
    fp2: Sequence[int],
    threshold: float = DEFAULT_FINGERPRINT_THRESHOLD,
) -> bool:
    """
    Check whether two raw fingerprints are likely the same audio.

    Args:
        threshold: Maximum average bit error rate (0.15 = 15% of bits differ)
    """
    if not fp1 or not fp2:
        return False
    different_bits, total_bits = hamming_distance(fp1, fp2)
    return different_bits / total_bits < threshold


def fingerprint_duration_ok(duration1_ms: int, duration2_ms: int) -> bool:
    """
    Check whether two durations may belong to the same recording.

    Passes when either duration is unknown, or when they differ by at most
    5 seconds or 2% of the longer one, whichever is larger.
    """
    if duration1_ms <= 0 or duration2_ms <= 0:
        return True
    diff = abs(duration1_ms - duration2_ms)
    max_ms = max(5000, int(max(duration1_ms, duration2_ms) * 0.02))
    return diff <= max_ms
