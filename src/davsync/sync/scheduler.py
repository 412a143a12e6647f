"""Timer and on-demand driver for sync passes.

``SyncScheduler`` owns the client, state store and engine built from a
``Config`` and guarantees that at most one pass runs at a time.  A pass
requested while another is in flight is dropped, not queued.

The recurring timer is an APScheduler ``BackgroundScheduler`` job; manual
triggers run on a short-lived worker thread so the caller (typically a
UI thread) never blocks on the network.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from davsync.config import Config
from davsync.core.async_utils import run_sync
from davsync.exceptions import SyncCancelledError
from davsync.sync.engine import SyncEngine
from davsync.sync.events import SyncEvents
from davsync.sync.models import SyncPassResult, SyncStatus
from davsync.sync.state import SyncStateStore

logger = logging.getLogger(__name__)

JOB_ID = "davsync_pass"


class SyncScheduler:
    """Run sync passes on a timer and on demand.

    Args:
        config: Runtime configuration.
        events: Observer hub shared with the engine.  A private one is
            created if omitted.
        state_store: Pre-built state store; loaded from
            ``config.state_path`` if omitted.
    """

    def __init__(
        self,
        config: Config,
        events: SyncEvents | None = None,
        state_store: SyncStateStore | None = None,
    ) -> None:
        self.events = events or SyncEvents()
        self.state_store = state_store or SyncStateStore(config.state_path)

        self._pass_lock = threading.Lock()
        # Guards engine swaps against pass start and end.
        self._wiring_lock = threading.Lock()
        self._pending_config: Config | None = None
        self._cancel_event = threading.Event()
        self._scheduler: BackgroundScheduler | None = None
        self._worker: threading.Thread | None = None

        self.client = None
        self.engine: SyncEngine | None = None
        self._apply_config(config)

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def _apply_config(self, config: Config) -> None:
        """Build a fresh client and engine, carrying over pass outcome."""
        # Deferred: the client module imports the sync models package.
        from davsync.core.client import WebDavClient

        previous_client = self.client
        previous_engine = self.engine

        self.config = config
        self.client = WebDavClient(config) if config.webdav_url else None
        self.engine = SyncEngine(
            client=self.client,
            state_store=self.state_store,
            local_root=config.local_root_path,
            remote_folder=config.remote_folder,
            events=self.events,
            directory_settle_seconds=config.directory_settle_seconds,
        )

        if previous_engine is not None:
            self.engine.status = previous_engine.status
            self.engine.last_sync_time = previous_engine.last_sync_time
        if previous_client is not None:
            previous_client.close()

    def reconfigure(self, config: Config) -> None:
        """Swap in a new configuration.

        If a pass is running, it finishes on the engine it started with and
        the new client and engine are built when it ends.  The timer is
        restarted with the new interval, or stopped if auto-sync was
        turned off.
        """
        if self._scheduler is not None:
            self.stop()

        with self._wiring_lock:
            if self.is_syncing:
                logger.debug("Pass in progress; configuration deferred")
                self._pending_config = config
                self.config = config
            else:
                self._pending_config = None
                self._apply_config(config)

        if config.auto_sync:
            self.start()
        logger.info(
            "Sync configuration updated (auto-sync %s, every %d min)",
            "on" if config.auto_sync else "off",
            config.interval_minutes,
        )

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the recurring timer.  No-op if already running."""
        if self._scheduler is not None:
            return

        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self._timer_job,
            trigger=IntervalTrigger(minutes=self.config.interval_minutes),
            id=JOB_ID,
            name="WebDAV sync pass",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(
            "Auto-sync started (every %d minutes)",
            self.config.interval_minutes,
        )

    def stop(self) -> None:
        """Stop the recurring timer.  An in-flight pass is not interrupted."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Auto-sync stopped")

    def _timer_job(self) -> None:
        logger.debug("Timer fired")
        self.sync_now()

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def sync_now(self) -> SyncPassResult | None:
        """Run one pass on the calling thread.

        Returns:
            The pass result, or ``None`` if the pass was skipped because
            another one is running, failed, or was cancelled.  Failures
            have already been published to status observers.
        """
        with self._wiring_lock:
            if not self._pass_lock.acquire(blocking=False):
                logger.info("Sync already in progress; request dropped")
                return None
            engine = self.engine

        self._cancel_event.clear()
        try:
            return engine.run_pass(self._cancel_event)
        except SyncCancelledError:
            return None
        except Exception:
            logger.exception("Sync pass failed")
            return None
        finally:
            with self._wiring_lock:
                pending, self._pending_config = self._pending_config, None
                try:
                    if pending is not None:
                        self._apply_config(pending)
                finally:
                    self._pass_lock.release()

    def trigger(self) -> bool:
        """Start a pass on a background thread.

        Returns:
            False if a pass is already running and the request was dropped.
        """
        if self.is_syncing:
            logger.info("Sync already in progress; trigger dropped")
            return False

        self._worker = threading.Thread(
            target=self.sync_now, name="davsync-pass", daemon=True
        )
        self._worker.start()
        return True

    def wait(self, timeout: float | None = None) -> None:
        """Block until the last triggered pass has finished."""
        if self._worker is not None:
            self._worker.join(timeout)

    def cancel(self) -> None:
        """Ask the running pass to stop at its next file boundary."""
        if self.is_syncing:
            logger.info("Cancelling sync pass")
            self._cancel_event.set()

    async def sync_now_async(self) -> SyncPassResult | None:
        """``sync_now`` for asyncio callers, run in a worker thread."""
        return await run_sync(self.sync_now)

    def test_connection(self) -> bool:
        """Check that the configured server answers OPTIONS with a 2xx."""
        if self.client is None:
            return False
        return self.client.test_connection()

    def close(self) -> None:
        """Stop the timer and release the HTTP session."""
        self.stop()
        if self.client is not None:
            self.client.close()

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def is_auto_sync_enabled(self) -> bool:
        return self._scheduler is not None

    @property
    def is_syncing(self) -> bool:
        return self._pass_lock.locked()

    @property
    def current_status(self) -> SyncStatus:
        return self.engine.status

    @property
    def last_sync_time(self) -> datetime | None:
        return self.engine.last_sync_time
