"""Sync engine that runs one synchronization pass.

The ``SyncEngine`` ties together the WebDAV client, the state store, and
the local tree into a complete pass.  It:

1. Ensures the remote root collection exists.
2. Lists the remote tree and walks the local tree.
3. Runs a three-way decision for every path present on both sides,
   comparing each side against its own archived fingerprint.
4. Uploads local-only files.
5. Downloads remote-only files.
6. Prunes stale state entries, persists state, and returns a
   ``SyncPassResult``.

Error handling is pass-level: a failed transfer aborts the pass.  State
is saved after every transferred file, so a retried pass only redoes
the work that had not completed.
"""

from __future__ import annotations

import logging
import posixpath
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from davsync.core.paths import (
    join_remote_path,
    normalize_remote_path,
    relative_to_root,
)
from davsync.exceptions import SyncCancelledError, SyncPreconditionError
from davsync.file_handler import (
    bytes_fingerprint,
    conflict_file_path,
    file_fingerprint,
    is_hidden,
    local_mtime,
    looks_like_md5,
    walk_local_files,
)
from davsync.sync.events import SyncEvents
from davsync.sync.models import (
    FileDownloadedEvent,
    FileSyncState,
    RemoteResource,
    SyncAction,
    SyncPassResult,
    SyncStatus,
    SyncStatusEvent,
)
from davsync.sync.reporter import format_pass_summary
from davsync.sync.state import SyncStateStore

if TYPE_CHECKING:
    from davsync.core.client import WebDavClient

logger = logging.getLogger(__name__)


def fingerprints_equal(a: str | None, b: str | None) -> bool:
    """Case-insensitive fingerprint comparison."""
    return (a or "").lower() == (b or "").lower()


def remote_fingerprint(resource: RemoteResource) -> str:
    """The comparable fingerprint of a remote file.

    Servers that omit ``getetag`` fall back to size and modification
    time, which still changes when the content is replaced.
    """
    if resource.etag:
        return resource.etag
    return f"{resource.size}:{resource.last_modified.isoformat()}"


def decide_action(
    local_fp: str,
    remote_fp: str,
    prior: FileSyncState | None,
    local_modified: datetime,
    remote_modified: datetime,
) -> SyncAction:
    """Three-way decision for a path present on both sides.

    With a prior entry each side is compared against its own archived
    fingerprint.  Without one (first sync) identical fingerprints are a
    no-op and otherwise the newer modification time wins.
    """
    if prior is None:
        if fingerprints_equal(local_fp, remote_fp):
            return SyncAction.SKIP
        if local_modified > remote_modified:
            return SyncAction.UPLOAD
        return SyncAction.DOWNLOAD

    local_changed = not fingerprints_equal(
        local_fp, prior.last_local_fingerprint
    )
    remote_changed = not fingerprints_equal(
        remote_fp, prior.last_remote_fingerprint
    )

    if not local_changed and not remote_changed:
        return SyncAction.SKIP
    if local_changed and not remote_changed:
        return SyncAction.UPLOAD
    if remote_changed and not local_changed:
        return SyncAction.DOWNLOAD
    return SyncAction.CONFLICT


@dataclass
class _PassTally:
    uploaded: int = 0
    downloaded: int = 0
    unchanged: int = 0
    conflicts: list[str] = field(default_factory=list)


class SyncEngine:
    """Run synchronization passes between a local root and a remote folder.

    Args:
        client: WebDAV client for the configured server, or ``None`` when
            the remote is not configured (every pass then fails fast).
        state_store: Persisted last-agreed fingerprints.
        local_root: Local directory kept in sync.
        remote_folder: Folder below the client's base URL.
        events: Observer hub; a private one is created if omitted.
        directory_settle_seconds: Pause after creating a remote
            collection, for servers that materialise them lazily.
    """

    def __init__(
        self,
        client: WebDavClient | None,
        state_store: SyncStateStore,
        local_root: Path,
        remote_folder: str = "",
        events: SyncEvents | None = None,
        directory_settle_seconds: float = 0.5,
    ) -> None:
        self.client = client
        self.state_store = state_store
        self.local_root = Path(local_root)
        self.remote_root = normalize_remote_path(remote_folder)
        self.events = events or SyncEvents()
        self.directory_settle_seconds = directory_settle_seconds

        self.status = SyncStatus.IDLE
        self.last_sync_time: datetime | None = state_store.last_successful_sync

        self._known_dirs: set[str] = set()
        self._warned_etag = False

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    def run_pass(
        self, cancel_event: threading.Event | None = None
    ) -> SyncPassResult:
        """Execute one complete synchronization pass.

        Args:
            cancel_event: Checked before every file operation and passed
                to the client so in-flight transfers stop early.

        Returns:
            Summary of what was transferred.

        Raises:
            SyncPreconditionError: Remote not configured or local root
                missing.  Nothing is touched.
            SyncCancelledError: *cancel_event* was set.
            Exception: Any transfer or disk failure, after publishing
                ``SyncStatus.ERROR``.
        """
        self._check_preconditions()

        self._set_status(SyncStatus.SYNCING, "Synchronizing...")
        try:
            result = self._run(cancel_event)
        except SyncCancelledError:
            logger.info("Sync pass cancelled")
            self.state_store.save_state()
            self._set_status(SyncStatus.IDLE, "Sync cancelled")
            raise
        except Exception as exc:
            logger.error("Sync pass failed: %s", exc)
            self._set_status(SyncStatus.ERROR, f"Sync failed: {exc}")
            raise

        self.last_sync_time = result.completed_at
        self._set_status(SyncStatus.SUCCESS, format_pass_summary(result))
        return result

    def _check_preconditions(self) -> None:
        if self.client is None:
            message = "WebDAV not configured"
        elif not self.local_root.is_dir():
            message = "Local root not configured or does not exist"
        else:
            return
        self._set_status(SyncStatus.ERROR, message)
        raise SyncPreconditionError(message)

    def _run(self, cancel_event: threading.Event | None) -> SyncPassResult:
        started_at = datetime.now(timezone.utc)
        tally = _PassTally()
        self._known_dirs = set()
        self._warned_etag = False

        if self.remote_root:
            self._ensure_remote_directory(self.remote_root, cancel_event)

        remote_files = self._list_remote(cancel_event)
        local_files = walk_local_files(self.local_root)
        seen_paths = set(remote_files) | set(local_files)
        logger.info(
            "Found %d remote files and %d local files",
            len(remote_files),
            len(local_files),
        )

        for rel_path in local_files:
            self._check_cancelled(cancel_event)
            remote = remote_files.pop(rel_path, None)
            if remote is None:
                self._upload_new(rel_path, cancel_event)
                tally.uploaded += 1
            else:
                self._sync_existing(rel_path, remote, tally, cancel_event)

        for rel_path, remote in sorted(remote_files.items()):
            self._check_cancelled(cancel_event)
            self._download(rel_path, remote, cancel_event)
            tally.downloaded += 1

        self.state_store.prune(seen_paths)
        self.state_store.mark_successful_sync(self.remote_root)
        self.state_store.save_state()
        logger.info(
            "State saved. Now tracking %d files",
            self.state_store.tracked_file_count,
        )

        if tally.conflicts:
            logger.warning(
                "Conflicts detected in: %s", ", ".join(tally.conflicts)
            )

        return SyncPassResult(
            remote_root=self.remote_root,
            uploaded=tally.uploaded,
            downloaded=tally.downloaded,
            unchanged=tally.unchanged,
            conflicts=tally.conflicts,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
        )

    # ------------------------------------------------------------------
    # Per-path handling
    # ------------------------------------------------------------------

    def _sync_existing(
        self,
        rel_path: str,
        remote: RemoteResource,
        tally: _PassTally,
        cancel_event: threading.Event | None,
    ) -> None:
        """Run the three-way decision for a path present on both sides."""
        local_file = self._local_path(rel_path)
        local_fp = file_fingerprint(local_file)
        remote_fp = remote_fingerprint(remote)
        prior = self.state_store.get_file_state(rel_path)
        self._warn_on_opaque_etag(remote)

        action = decide_action(
            local_fp,
            remote_fp,
            prior,
            local_mtime(local_file),
            remote.last_modified,
        )
        logger.debug(
            "%s: local=%s remote=%s base=%s -> %s",
            rel_path,
            local_fp,
            remote_fp,
            prior.last_remote_fingerprint if prior else "(first sync)",
            action.value,
        )

        if action == SyncAction.SKIP:
            if prior is None:
                # Identical on first sight: record the agreement so the
                # next pass can use a real three-way comparison.
                self._record(
                    rel_path,
                    local_fp,
                    remote_fp,
                    local_mtime(local_file),
                    remote.last_modified,
                    remote.size,
                )
            tally.unchanged += 1
        elif action == SyncAction.UPLOAD:
            self._upload(rel_path, local_fp, cancel_event)
            tally.uploaded += 1
        elif action == SyncAction.DOWNLOAD:
            self._download(rel_path, remote, cancel_event)
            tally.downloaded += 1
        else:
            self._resolve_conflict(rel_path, local_fp, cancel_event)
            tally.uploaded += 1
            if rel_path not in tally.conflicts:
                tally.conflicts.append(rel_path)

    def _upload_new(
        self, rel_path: str, cancel_event: threading.Event | None
    ) -> None:
        local_fp = file_fingerprint(self._local_path(rel_path))
        logger.info("Uploading new local file: %s", rel_path)
        self._upload(rel_path, local_fp, cancel_event)

    def _upload(
        self,
        rel_path: str,
        local_fp: str,
        cancel_event: threading.Event | None,
    ) -> None:
        """Upload the local copy and record both sides as agreeing."""
        local_file = self._local_path(rel_path)
        remote_path = join_remote_path(self.remote_root, rel_path)

        parent = posixpath.dirname(remote_path)
        if parent and parent != self.remote_root:
            self._ensure_remote_directory(parent, cancel_event)

        logger.info(
            "Uploading %s (%d bytes)", rel_path, local_file.stat().st_size
        )
        self.client.upload_file(local_file, remote_path, cancel_event)

        modified = local_mtime(local_file)
        remote_fp = local_fp
        remote_modified = modified
        info = self.client.get_resource_info(remote_path, cancel_event)
        if info is not None:
            remote_fp = remote_fingerprint(info)
            remote_modified = info.last_modified

        self._record(
            rel_path,
            local_fp,
            remote_fp,
            modified,
            remote_modified,
            local_file.stat().st_size,
        )

    def _download(
        self,
        rel_path: str,
        remote: RemoteResource,
        cancel_event: threading.Event | None,
    ) -> None:
        """Download the remote copy over the local path and notify."""
        local_file = self._local_path(rel_path)
        remote_path = join_remote_path(self.remote_root, rel_path)

        logger.info("Downloading %s", rel_path)
        data = self.client.download_file(
            remote_path, local_file, cancel_event
        )

        self._record(
            rel_path,
            bytes_fingerprint(data),
            remote_fingerprint(remote),
            local_mtime(local_file),
            remote.last_modified,
            len(data),
        )
        self.events.emit_file_downloaded(
            FileDownloadedEvent(
                local_path=str(local_file), relative_path=rel_path
            )
        )

    def _resolve_conflict(
        self,
        rel_path: str,
        local_fp: str,
        cancel_event: threading.Event | None,
    ) -> None:
        """Save both versions: remote beside local, then push local."""
        local_file = self._local_path(rel_path)
        remote_path = join_remote_path(self.remote_root, rel_path)
        conflict_path = conflict_file_path(local_file)

        logger.warning(
            "Conflict on %s: both sides changed; saving remote copy to %s",
            rel_path,
            conflict_path.name,
        )
        self.client.download_file(remote_path, conflict_path, cancel_event)
        self._upload(rel_path, local_fp, cancel_event)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _list_remote(
        self, cancel_event: threading.Event | None
    ) -> dict[str, RemoteResource]:
        """Remote files keyed by path relative to the remote root."""
        listing = self.client.list_directory_recursive(
            self.remote_root, cancel_event
        )
        files: dict[str, RemoteResource] = {}
        for resource in listing:
            if resource.is_directory:
                continue
            rel_path = relative_to_root(resource.path, self.remote_root)
            if not rel_path or is_hidden(rel_path):
                continue
            files[rel_path] = resource
        return files

    def _ensure_remote_directory(
        self, remote_path: str, cancel_event: threading.Event | None
    ) -> None:
        """Create every missing segment of *remote_path*, outermost first."""
        created_any = False
        current = ""
        for segment in normalize_remote_path(remote_path).split("/"):
            current = f"{current}/{segment}" if current else segment
            if current in self._known_dirs:
                continue
            self._check_cancelled(cancel_event)
            if self.client.create_directory(current, cancel_event):
                logger.debug("Created remote directory %s", current)
                created_any = True
            self._known_dirs.add(current)

        if created_any and self.directory_settle_seconds > 0:
            time.sleep(self.directory_settle_seconds)

    def _record(
        self,
        rel_path: str,
        local_fp: str,
        remote_fp: str,
        local_modified: datetime,
        remote_modified: datetime,
        size: int,
    ) -> None:
        self.state_store.update_file_state(
            rel_path,
            local_fp,
            remote_fp,
            local_modified,
            remote_modified,
            size,
        )
        self.state_store.save_state()

    def _local_path(self, rel_path: str) -> Path:
        return self.local_root.joinpath(*rel_path.split("/"))

    def _warn_on_opaque_etag(self, remote: RemoteResource) -> None:
        if self._warned_etag or not remote.etag:
            return
        if not looks_like_md5(remote.etag):
            logger.warning(
                "Server ETag %r is not an MD5 digest; first-sync matching "
                "falls back to modification times",
                remote.etag,
            )
            self._warned_etag = True

    @staticmethod
    def _check_cancelled(cancel_event: threading.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelledError("Sync pass cancelled")

    def _set_status(self, status: SyncStatus, message: str | None) -> None:
        self.status = status
        self.events.emit_status(
            SyncStatusEvent(
                status=status,
                message=message,
                last_sync_time=self.last_sync_time,
            )
        )
