"""Core WebDAV protocol client and threading helpers."""

from .async_utils import run_sync
from .client import WebDavClient
from .paths import normalize_remote_path

__all__ = ["WebDavClient", "normalize_remote_path", "run_sync"]
