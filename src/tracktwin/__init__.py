"""tracktwin - find duplicate audio tracks in a music library."""

__version__ = "0.1.0"
