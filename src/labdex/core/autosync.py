"""
Labdex Auto-Sync Module

Keeps the cache fresh from a background thread:
- one cycle at startup
- one cycle every ``refresh_interval`` minutes
- on-demand cycles via :meth:`AutoSyncer.trigger` (fire-and-forget)
"""

import logging
from threading import Event, Thread
from typing import Optional

from labdex.core.sync import SyncPipeline

logger = logging.getLogger(__name__)


class AutoSyncer:
    """Periodic and on-demand cache refresh on a single daemon thread."""

    def __init__(self, pipeline: SyncPipeline, interval_minutes: int = 15,
                 sync_on_start: bool = True):
        """
        Initialize auto-syncer.

        Args:
            pipeline: Pipeline whose :meth:`~SyncPipeline.run` performs a cycle
            interval_minutes: Minutes between periodic cycles (default: 15)
            sync_on_start: Run a cycle as soon as the thread starts
        """
        self.pipeline = pipeline
        self.interval_seconds = interval_minutes * 60
        self.sync_on_start = sync_on_start
        self._stop_event = Event()
        self._wake_event = Event()
        self._thread: Optional[Thread] = None
        self.cycles_run = 0

    def start(self):
        """Start the background thread."""
        if self._thread and self._thread.is_alive():
            logger.warning("AutoSyncer already running")
            return

        self._stop_event.clear()
        self._wake_event.clear()
        self._thread = Thread(target=self._loop, name="labdex-autosync", daemon=True)
        self._thread.start()
        logger.info(f"AutoSyncer started (interval: {self.interval_seconds // 60} min)")

    def trigger(self):
        """Request an immediate cycle without waiting for it."""
        if not self.is_running:
            logger.warning("AutoSyncer not running; refresh request ignored")
            return
        logger.info("Refresh requested")
        self._wake_event.set()

    def stop(self, timeout: float = 5.0):
        """Stop after the current cycle (if any); an in-flight cycle is not cancelled."""
        if self._thread:
            self._stop_event.set()
            self._wake_event.set()
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("AutoSyncer thread still finishing a sync cycle")
            else:
                logger.info("AutoSyncer stopped")
            self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self):
        """Main loop (runs in background thread)."""
        if self.sync_on_start:
            self._try_sync()

        while not self._stop_event.is_set():
            self._wake_event.wait(self.interval_seconds)
            if self._stop_event.is_set():
                break
            self._wake_event.clear()
            self._try_sync()

    def _try_sync(self):
        try:
            result = self.pipeline.run()
            self.cycles_run += 1
            if result.skipped:
                logger.debug("Background sync coalesced into the running cycle")
        except Exception as e:
            # The thread must outlive any single failed cycle.
            logger.error(f"Background sync failed: {e}", exc_info=True)
