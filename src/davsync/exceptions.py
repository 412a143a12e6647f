"""Exception hierarchy for davsync.

Network-layer failures are not wrapped: they surface as the
``requests.RequestException`` subclasses raised by ``requests`` itself.
"""

from __future__ import annotations


class DavSyncError(Exception):
    """Base class for all davsync errors."""


class WebDavError(DavSyncError):
    """A WebDAV request returned an unexpected HTTP status.

    Attributes:
        status_code: HTTP status returned by the server.
        method: HTTP / WebDAV verb that was issued.
        url: Target URL of the request.
    """

    def __init__(self, status_code: int, method: str, url: str) -> None:
        self.status_code = status_code
        self.method = method
        self.url = url
        super().__init__(f"{method} {url} failed with HTTP {status_code}")


class SyncPreconditionError(DavSyncError):
    """A pass cannot start: remote not configured or local root missing."""


class SyncCancelledError(DavSyncError):
    """A pass was cancelled cooperatively between file operations."""
