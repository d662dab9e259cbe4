"""spindex - Spotify popularity index with a cached catalog and daily snapshots."""

__version__ = "0.1.0"
