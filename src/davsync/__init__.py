"""davsync: keep a local directory tree in sync with a WebDAV store."""

__version__ = "0.1.0"
