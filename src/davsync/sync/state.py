"""Sync state persistence layer.

Keeps the last-agreed fingerprints for every tracked path in a single
JSON file in application-data storage.  These entries are the "base"
revision of the three-way comparison: without them a pass cannot tell
"remote changed" from "local changed".

Key design choices:

* **Load on construct** -- the store reads its file once when created;
  a missing or corrupt file yields an empty store, never an exception.
* **Atomic writes** -- ``save_state()`` writes to a temp file then calls
  ``os.replace()`` so readers never see partial data.
* **Single writer** -- only the sync engine mutates the store, and the
  scheduler guarantees one pass at a time, so no locking is done here.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from davsync.core.paths import normalize_remote_path
from davsync.sync.models import FileSyncState

logger = logging.getLogger(__name__)

STATE_VERSION = 1


def normalize_state_key(path: str) -> str:
    """Forward slashes, no leading/trailing slash, no doubled slashes."""
    return normalize_remote_path(path.replace("\\", "/"))


class SyncStateStore:
    """Persisted path -> ``FileSyncState`` map.

    Args:
        state_file: Location of the JSON state file.  Its parent
            directory is created on first save.
    """

    def __init__(self, state_file: Path) -> None:
        self._state_file = Path(state_file)
        self._files: dict[str, FileSyncState] = {}
        self._last_successful_sync: datetime | None = None
        self._remote_folder: str | None = None
        self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @property
    def state_file(self) -> Path:
        return self._state_file

    def _load(self) -> None:
        """Populate the in-memory map from disk.

        Any read or parse failure is logged and treated as "no prior
        state": the next pass falls back to first-sync heuristics.
        """
        if not self._state_file.exists():
            logger.debug("No sync state at %s", self._state_file)
            return

        try:
            raw = json.loads(self._state_file.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError(
                    f"state root is {type(raw).__name__}, expected object"
                )
            files = {
                normalize_state_key(key): FileSyncState.model_validate(
                    {**value, "path": normalize_state_key(key)}
                )
                for key, value in (raw.get("files") or {}).items()
            }
            last_sync_raw = raw.get("last_successful_sync")
            last_sync = (
                datetime.fromisoformat(last_sync_raw)
                if last_sync_raw
                else None
            )
        except (OSError, ValueError, TypeError, ValidationError) as exc:
            logger.warning(
                "Ignoring unreadable sync state %s (%s); starting empty",
                self._state_file,
                exc,
            )
            return

        self._files = files
        self._last_successful_sync = last_sync
        self._remote_folder = raw.get("remote_folder")
        logger.debug(
            "Loaded sync state with %d tracked files", len(self._files)
        )

    def save_state(self) -> None:
        """Persist the full map to disk atomically.

        Creates the state directory if it does not exist.
        """
        state_dir = self._state_file.parent
        state_dir.mkdir(parents=True, exist_ok=True)

        document = {
            "version": STATE_VERSION,
            "remote_folder": self._remote_folder,
            "last_successful_sync": (
                self._last_successful_sync.isoformat()
                if self._last_successful_sync
                else None
            ),
            "files": {
                path: entry.model_dump(mode="json", exclude={"path"})
                for path, entry in sorted(self._files.items())
            },
        }

        fd, tmp_path = tempfile.mkstemp(dir=str(state_dir), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(document, fh, indent=2)
            os.replace(tmp_path, self._state_file)
        except BaseException:
            # Clean up temp file on any failure.
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        logger.debug(
            "Saved sync state with %d tracked files", len(self._files)
        )

    # ------------------------------------------------------------------
    # Entry helpers
    # ------------------------------------------------------------------

    def get_file_state(self, path: str) -> FileSyncState | None:
        """Return the entry for *path*, or ``None`` for a first sync."""
        return self._files.get(normalize_state_key(path))

    def update_file_state(
        self,
        path: str,
        local_fingerprint: str,
        remote_fingerprint: str,
        local_mod_time: datetime,
        remote_mod_time: datetime,
        size: int,
    ) -> FileSyncState:
        """Upsert the entry for *path* after it was brought into agreement."""
        key = normalize_state_key(path)
        entry = FileSyncState(
            path=key,
            last_local_fingerprint=local_fingerprint,
            last_remote_fingerprint=remote_fingerprint,
            last_local_mod_time=local_mod_time,
            last_remote_mod_time=remote_mod_time,
            last_sync_time=datetime.now(timezone.utc),
            size=size,
        )
        self._files[key] = entry
        return entry

    def remove_file_state(self, path: str) -> None:
        """Stop tracking *path*.  No-op if not present."""
        self._files.pop(normalize_state_key(path), None)

    def prune(self, keep_paths: set[str]) -> int:
        """Drop entries whose path is not in *keep_paths*.

        Returns:
            Number of entries removed.
        """
        keep = {normalize_state_key(p) for p in keep_paths}
        stale = [path for path in self._files if path not in keep]
        for path in stale:
            del self._files[path]
        if stale:
            logger.debug("Pruned %d stale state entries", len(stale))
        return len(stale)

    def mark_successful_sync(self, remote_folder: str) -> None:
        """Record pass-level metadata for the folder just synced."""
        self._last_successful_sync = datetime.now(timezone.utc)
        self._remote_folder = remote_folder

    def clear_state(self) -> None:
        """Forget every entry and persist the empty state."""
        logger.info("Clearing all sync state")
        self._files = {}
        self._last_successful_sync = None
        self._remote_folder = None
        self.save_state()

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    @property
    def tracked_file_count(self) -> int:
        return len(self._files)

    @property
    def last_successful_sync(self) -> datetime | None:
        return self._last_successful_sync

    @property
    def remote_folder(self) -> str | None:
        return self._remote_folder

    def snapshot(self) -> dict[str, FileSyncState]:
        """Shallow copy of the current map (entries are immutable)."""
        return dict(self._files)
