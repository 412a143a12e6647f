"""Pydantic models for the WebDAV sync engine.

Defines the core data contracts used across all sync modules:

- ``RemoteResource``: One entry of a PROPFIND listing.
- ``FileSyncState``: Last-agreed fingerprints for one tracked path.
- ``SyncAction``: Enum of per-file decisions.
- ``SyncStatus``: Enum of engine-wide pass states.
- ``SyncPassResult``: Summary of one complete pass.
- ``SyncStatusEvent`` / ``FileDownloadedEvent``: Payloads delivered to
  observers.

All models are frozen (immutable) for safety.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

# Used when a server omits or garbles getlastmodified.
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class SyncAction(str, Enum):
    """Decision taken for a single path during a pass."""

    SKIP = "skip"
    UPLOAD = "upload"
    DOWNLOAD = "download"
    CONFLICT = "conflict"


class SyncStatus(str, Enum):
    """Engine-wide status published to observers."""

    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"


class RemoteResource(BaseModel):
    """A file or collection on the WebDAV server.

    Attributes:
        path: Path relative to the configured base URL, normalised
            (forward slashes, no leading/trailing slash).
        is_directory: True for WebDAV collections.
        size: ``getcontentlength`` in bytes (0 when absent).
        last_modified: ``getlastmodified`` as an aware datetime.
        etag: ``getetag`` with quoting and weak prefix stripped.
    """

    path: str
    is_directory: bool = False
    size: int = 0
    last_modified: datetime = EPOCH
    etag: str = ""

    model_config = {"frozen": True}


class FileSyncState(BaseModel):
    """Last-agreed state of one path after a successful transfer.

    Presence of an entry means local and remote agreed on this
    fingerprint pair at the end of the last pass that touched it.

    Attributes:
        path: Relative path, normalised.
        last_local_fingerprint: MD5 hex of the local bytes.
        last_remote_fingerprint: Remote ETag, quote-stripped.
        last_local_mod_time: Local mtime at last sync.
        last_remote_mod_time: Remote ``getlastmodified`` at last sync.
        last_sync_time: When the entry was written.
        size: File size in bytes at last sync.
    """

    path: str
    last_local_fingerprint: str
    last_remote_fingerprint: str
    last_local_mod_time: datetime
    last_remote_mod_time: datetime
    last_sync_time: datetime
    size: int = 0

    model_config = {"frozen": True}


class SyncPassResult(BaseModel):
    """Summary of one synchronization pass.

    Attributes:
        remote_root: Remote folder that was synced.
        uploaded: Files uploaded (new, changed, or conflict winners).
        downloaded: Files downloaded (new or changed remotely).
        unchanged: Files present on both sides with no change.
        conflicts: Paths that changed on both sides.
        started_at: When the pass started (UTC).
        completed_at: When the pass completed (UTC).
    """

    remote_root: str = ""
    uploaded: int = 0
    downloaded: int = 0
    unchanged: int = 0
    conflicts: list[str] = Field(default_factory=list)
    started_at: datetime
    completed_at: datetime | None = None

    model_config = {"frozen": True}

    @property
    def conflict_count(self) -> int:
        """Number of paths resolved with the save-both policy."""
        return len(self.conflicts)

    @property
    def transferred(self) -> int:
        """Total number of files moved over the wire."""
        return self.uploaded + self.downloaded


class SyncStatusEvent(BaseModel):
    """Status transition delivered to status observers."""

    status: SyncStatus
    message: str | None = None
    last_sync_time: datetime | None = None

    model_config = {"frozen": True}


class FileDownloadedEvent(BaseModel):
    """A local file was (re)written from the remote copy.

    Attributes:
        local_path: Absolute local path that changed on disk.
        relative_path: Path relative to the sync root.
    """

    local_path: str
    relative_path: str

    model_config = {"frozen": True}
