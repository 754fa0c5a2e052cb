"""Exceptions raised by the duplicate detection engine."""

from typing import Any, Optional


class CacheError(Exception):
    """Raised when a duplicate cache file cannot be read or written."""


class ScanCancelled(Exception):
    """
    Raised when a scan is stopped through its cancellation event.

    The partial scan result (groups built from the files processed so far)
    is available as ``result``. It is None when the cancellation was raised
    below the scanner, e.g. from an in-flight fingerprint call.
    """

    def __init__(self, message: str = "scan cancelled", result: Optional[Any] = None):
        super().__init__(message)
        self.result = result
