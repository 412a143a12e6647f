"""Bidirectional WebDAV folder sync.

Public API for keeping a local directory tree and a remote WebDAV folder
in agreement.

Architecture
------------
Each pass is a **three-way reconciliation**: for every path present on
both sides, the current local MD5 and the current remote ETag are each
compared against the fingerprint recorded for that side at the end of
the last successful transfer.  Only one side changed means the change is
propagated; both changed means a conflict, resolved by keeping both
versions (the remote copy is saved beside the local file, and the local
file is uploaded).

Modules:

- ``engine``    -- ``SyncEngine``: runs one pass.
- ``scheduler`` -- ``SyncScheduler``: timer/manual triggers, one pass at
  a time.
- ``state``     -- ``SyncStateStore``: persisted per-path fingerprints.
- ``events``    -- ``SyncEvents``: status and file-downloaded observers.
- ``models``    -- ``SyncAction``, ``SyncStatus``, ``RemoteResource``,
  ``FileSyncState``, ``SyncPassResult`` and the event payloads.
- ``reporter``  -- Human-readable and JSON pass summaries.

Usage example
-------------
::

    from davsync.config import load_config
    from davsync.sync import SyncScheduler, format_pass_report

    config = load_config(url="https://dav.example.com/files/alice",
                         local_root="~/Notes")
    scheduler = SyncScheduler(config)
    scheduler.events.on_file_downloaded(lambda e: print("reload", e.local_path))

    result = scheduler.sync_now()
    if result is not None:
        print(format_pass_report(result))
"""

from .engine import SyncEngine, decide_action
from .events import SyncEvents
from .models import (
    FileDownloadedEvent,
    FileSyncState,
    RemoteResource,
    SyncAction,
    SyncPassResult,
    SyncStatus,
    SyncStatusEvent,
)
from .reporter import format_pass_report, format_pass_summary, result_to_json
from .scheduler import SyncScheduler
from .state import SyncStateStore

__all__ = [
    "FileDownloadedEvent",
    "FileSyncState",
    "RemoteResource",
    "SyncAction",
    "SyncEngine",
    "SyncEvents",
    "SyncPassResult",
    "SyncScheduler",
    "SyncStateStore",
    "SyncStatus",
    "SyncStatusEvent",
    "decide_action",
    "format_pass_report",
    "format_pass_summary",
    "result_to_json",
]
