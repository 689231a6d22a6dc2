"""Removal of reference edges whose notes no longer exist."""
import logging
import threading
from typing import Optional

from noteref_mcp.storage.reference_repository import ReferenceRepository

logger = logging.getLogger(__name__)


class OrphanCollector:
    """Sweeps dangling edges left behind by note deletions.

    Notes can disappear through paths that never reconcile (hard delete,
    bulk cleanup, restore), so edges pointing at or from them are repaired
    here. A sweep only touches reference tables, never note content.
    """

    def __init__(self, reference_store: ReferenceRepository):
        self.reference_store = reference_store
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep(self, owner_id: Optional[str] = None) -> int:
        """Delete every edge with a missing endpoint.

        Endpoint liveness is evaluated by the delete statement itself, so a
        note created concurrently is never mistaken for a missing one. Safe
        to call at any time; a second call right after the first deletes
        nothing.

        Args:
            owner_id: Limit the sweep to one owner. None sweeps every owner.

        Returns:
            Number of edges deleted.
        """
        deleted = self.reference_store.delete_orphaned(owner_id)
        logger.debug(f"Orphan sweep (owner={owner_id or '*'}) deleted {deleted} edges")
        return deleted

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, interval_seconds: float) -> threading.Thread:
        """Sweep every owner periodically on a daemon thread.

        Returns the thread so callers can join() in tests if needed.
        """
        if interval_seconds <= 0:
            raise ValueError("Sweep interval must be positive")
        if self.running:
            return self._thread

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            args=(interval_seconds,),
            daemon=True,
            name="orphan-collector",
        )
        self._thread.start()
        logger.info(f"Orphan collector started (interval={interval_seconds}s)")
        return self._thread

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the periodic sweep and wait for the thread to exit."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info("Orphan collector stopped")

    def _run(self, interval_seconds: float) -> None:
        while not self._stop_event.wait(interval_seconds):
            try:
                self.sweep()
            except Exception as e:
                # Keep sweeping; the next cycle retries
                logger.error(f"Periodic orphan sweep failed: {e}", exc_info=True)
