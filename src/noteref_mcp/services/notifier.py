"""Best-effort push of reference updates to a user's live sessions."""
import logging
import queue
import threading
import time
import uuid
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from noteref_mcp.exceptions import ValidationError
from noteref_mcp.models.schema import ReferencesUpdatedEvent

logger = logging.getLogger(__name__)


@runtime_checkable
class SessionRegistry(Protocol):
    """Delivery primitive for pushing events to an owner's live sessions."""

    def get_live_sessions(self, owner_id: str) -> List[str]:
        """Return handles of the owner's currently connected sessions."""
        ...

    def send(self, session_id: str, event: Dict[str, Any]) -> bool:
        """Deliver one event. Returns False if it was not delivered."""
        ...


class InMemorySessionRegistry:
    """Session registry backed by one bounded queue per session.

    Clients poll their queue with :meth:`drain`. A full queue means the
    client stopped polling; new events for it are dropped. With an
    ``idle_timeout``, sessions not polled for that many seconds are
    forgotten the next time sessions are opened or looked up.
    """

    def __init__(self, max_queue_size: int = 256, idle_timeout: Optional[float] = None):
        self.max_queue_size = max_queue_size
        self.idle_timeout = idle_timeout
        self._sessions: Dict[str, queue.Queue] = {}
        self._owners: Dict[str, str] = {}
        self._last_seen: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _forget(self, session_id: str) -> None:
        # Caller holds self._lock
        self._sessions.pop(session_id, None)
        self._owners.pop(session_id, None)
        self._last_seen.pop(session_id, None)

    def _expire_idle(self) -> int:
        # Caller holds self._lock
        if not self.idle_timeout:
            return 0
        cutoff = time.monotonic() - self.idle_timeout
        expired = [sid for sid, seen in self._last_seen.items() if seen < cutoff]
        for session_id in expired:
            self._forget(session_id)
        if expired:
            logger.info(f"Expired {len(expired)} idle sessions")
        return len(expired)

    def expire_idle(self) -> int:
        """Forget sessions idle longer than ``idle_timeout``.

        Returns:
            Number of sessions removed.
        """
        with self._lock:
            return self._expire_idle()

    def open_session(self, owner_id: str) -> str:
        """Register a new live session for ``owner_id`` and return its ID."""
        session_id = uuid.uuid4().hex
        with self._lock:
            self._expire_idle()
            self._sessions[session_id] = queue.Queue(maxsize=self.max_queue_size)
            self._owners[session_id] = owner_id
            self._last_seen[session_id] = time.monotonic()
        logger.debug(f"Opened session {session_id[:8]} for {owner_id}")
        return session_id

    def close_session(self, session_id: str, owner_id: Optional[str] = None) -> bool:
        """Forget a session. Returns False if it was not open.

        Raises:
            ValidationError: If ``owner_id`` is given and the session belongs
                to someone else.
        """
        with self._lock:
            session_owner = self._owners.get(session_id)
            if session_owner is None:
                return False
            if owner_id is not None and session_owner != owner_id:
                raise ValidationError(f"Unknown session: {session_id}", field="session_id")
            self._forget(session_id)
        return True

    def get_live_sessions(self, owner_id: str) -> List[str]:
        with self._lock:
            self._expire_idle()
            return [sid for sid, owner in self._owners.items() if owner == owner_id]

    def send(self, session_id: str, event: Dict[str, Any]) -> bool:
        with self._lock:
            session_queue = self._sessions.get(session_id)
        if session_queue is None:
            return False
        try:
            session_queue.put_nowait(event)
        except queue.Full:
            logger.warning(f"Session {session_id[:8]} queue full, dropping event")
            return False
        return True

    def drain(
        self, session_id: str, owner_id: Optional[str] = None, max_events: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Pop pending events of a session, oldest first.

        Args:
            session_id: The session to read.
            owner_id: When given, the session must belong to this owner.
            max_events: Upper bound on events returned. None drains all.

        Raises:
            ValidationError: If the session is unknown or owned by someone else.
        """
        with self._lock:
            session_queue = self._sessions.get(session_id)
            if session_queue is None or (
                owner_id is not None and self._owners.get(session_id) != owner_id
            ):
                raise ValidationError(f"Unknown session: {session_id}", field="session_id")
            self._last_seen[session_id] = time.monotonic()

        events = []
        while max_events is None or len(events) < max_events:
            try:
                events.append(session_queue.get_nowait())
            except queue.Empty:
                break
        return events

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class NotificationPublisher:
    """Publishes ``NOTE_REFERENCES_UPDATED`` events after reconciliation.

    Delivery is at most once and never raises: the reference tables and note
    content stay the source of truth, the event is only a freshness hint.
    """

    def __init__(self, registry: SessionRegistry):
        self.registry = registry

    def publish(
        self, owner_id: str, source_note_id: str, affected_note_ids: Sequence[str]
    ) -> int:
        """Notify every live session of ``owner_id``.

        Returns:
            Number of sessions the event was delivered to.
        """
        try:
            event = ReferencesUpdatedEvent(
                note_id=source_note_id,
                affected_note_ids=list(affected_note_ids),
                message=f"References of note {source_note_id} updated",
            ).to_payload()
            sessions = self.registry.get_live_sessions(owner_id)
        except Exception as e:
            logger.warning(f"Failed to prepare reference update for {source_note_id}: {e}")
            return 0

        delivered = 0
        for session_id in sessions:
            try:
                if self.registry.send(session_id, event):
                    delivered += 1
            except Exception as e:
                logger.warning(f"Failed to notify session {str(session_id)[:8]}: {e}")

        if not sessions:
            logger.debug(f"No live sessions for {owner_id}, update dropped")
        return delivered
