"""Observer hub connecting the sync engine to its collaborators.

The engine publishes two kinds of events:

- ``SyncStatusEvent`` whenever the pass status changes.
- ``FileDownloadedEvent`` whenever a tracked file is rewritten from the
  remote copy, so an editor can reload the document it has open.

Listeners are plain callables.  They run synchronously on the thread
executing the pass; a listener that needs to touch UI state must hand
the event over to its own thread.
"""

from __future__ import annotations

import logging
from typing import Callable

from .models import FileDownloadedEvent, SyncStatusEvent

logger = logging.getLogger(__name__)

StatusListener = Callable[[SyncStatusEvent], None]
FileDownloadedListener = Callable[[FileDownloadedEvent], None]


class SyncEvents:
    """Registry of status and file-downloaded listeners."""

    def __init__(self) -> None:
        self._status_listeners: list[StatusListener] = []
        self._download_listeners: list[FileDownloadedListener] = []

    def on_status_changed(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def on_file_downloaded(self, listener: FileDownloadedListener) -> None:
        self._download_listeners.append(listener)

    def remove_listener(self, listener: Callable) -> None:
        """Unregister *listener* from every event it was attached to."""
        for listeners in (self._status_listeners, self._download_listeners):
            while listener in listeners:
                listeners.remove(listener)

    def emit_status(self, event: SyncStatusEvent) -> None:
        for listener in list(self._status_listeners):
            self._deliver(listener, event)

    def emit_file_downloaded(self, event: FileDownloadedEvent) -> None:
        for listener in list(self._download_listeners):
            self._deliver(listener, event)

    @staticmethod
    def _deliver(listener: Callable, event) -> None:
        # A failing observer must not abort the pass that notified it.
        try:
            listener(event)
        except Exception:
            logger.exception(
                "Sync event listener %r failed for %s",
                listener,
                type(event).__name__,
            )
