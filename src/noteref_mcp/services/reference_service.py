"""Service layer for note references."""
import logging
from typing import Any, Dict, List, Optional

from noteref_mcp.config import config
from noteref_mcp.exceptions import NoteNotFoundError
from noteref_mcp.models.db_models import get_session_factory, init_db
from noteref_mcp.models.schema import (
    MarkerStats,
    Note,
    NoteReferences,
    ReconcileResult,
    SweepResult,
)
from noteref_mcp.observability import traced
from noteref_mcp.services import markers
from noteref_mcp.services.link_parser import format_reference_breaks
from noteref_mcp.services.notifier import (
    InMemorySessionRegistry,
    NotificationPublisher,
    SessionRegistry,
)
from noteref_mcp.services.orphan_collector import OrphanCollector
from noteref_mcp.services.reconciler import ReconciliationEngine
from noteref_mcp.storage.note_repository import NoteRepository
from noteref_mcp.storage.reference_repository import ReferenceRepository
from noteref_mcp.utils import KeyedLock

logger = logging.getLogger(__name__)


class ReferenceService:
    """Operations on notes and their reference graph.

    Every content write goes through the same per-note lock registry as the
    reconciliation engine, so backlink appends never race with saves,
    formatting or cleanup of the same note.
    """

    def __init__(
        self,
        engine: Optional[Any] = None,
        note_repository: Optional[NoteRepository] = None,
        reference_repository: Optional[ReferenceRepository] = None,
        registry: Optional[SessionRegistry] = None,
        mark_forward_references: Optional[bool] = None,
    ):
        """Initialize the service.

        Args:
            engine: Pre-configured SQLAlchemy engine shared by both
                repositories. Created from config when None.
            note_repository: Note store override.
            reference_repository: Reference store override.
            registry: Live session registry. Defaults to an in-memory one
                sized from config.
            mark_forward_references: Override for the config flag.
        """
        if note_repository is None or reference_repository is None:
            engine = engine if engine is not None else init_db()
            session_factory = get_session_factory(engine)
            if note_repository is None:
                note_repository = NoteRepository(engine=engine, session_factory=session_factory)
            if reference_repository is None:
                reference_repository = ReferenceRepository(session_factory)
        self.note_repository = note_repository
        self.reference_repository = reference_repository
        if registry is None:
            registry = InMemorySessionRegistry(
                config.session_queue_size, idle_timeout=config.session_idle_timeout
            )
        self.registry = registry

        if mark_forward_references is None:
            mark_forward_references = config.mark_forward_references
        self.locks = KeyedLock()
        self.reconciler = ReconciliationEngine(
            self.note_repository,
            self.reference_repository,
            locks=self.locks,
            mark_forward_references=mark_forward_references,
        )
        self.orphan_collector = OrphanCollector(self.reference_repository)
        self.publisher = NotificationPublisher(self.registry)

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    def create_note(
        self, owner_id: str, content: str = "", note_id: Optional[str] = None
    ) -> Note:
        """Create a note and reconcile the references in its content."""
        note = self.note_repository.create(owner_id, "", note_id=note_id)
        if content:
            self.save_note(owner_id, note.id, content)
        return self.get_note(owner_id, note.id)

    def get_note(self, owner_id: str, note_id: str) -> Note:
        """Get a note.

        Raises:
            NoteNotFoundError: If the note does not exist for ``owner_id``.
        """
        note = self.note_repository.get_by_id(note_id, owner_id)
        if note is None:
            raise NoteNotFoundError(note_id, owner_id)
        return note

    def save_note(self, owner_id: str, note_id: str, content: str) -> ReconcileResult:
        """Write new content to a note and reconcile its references.

        The content is stored with forward markers (when enabled) in the
        same critical section that replaces the note's edges.

        Raises:
            NoteNotFoundError: If the note does not exist for ``owner_id``.
        """
        result = self.reconciler.reconcile(owner_id, note_id, content, persist_source=True)
        self.publisher.publish(owner_id, note_id, result.affected_note_ids)
        return result

    def delete_note(self, owner_id: str, note_id: str) -> int:
        """Hard-delete a note and sweep the owner's now dangling edges.

        Returns:
            Number of edges removed by the sweep.
        """
        with self.locks.hold((owner_id, note_id)):
            self.note_repository.delete(note_id, owner_id)
        logger.info(f"Deleted note {note_id} of {owner_id}")
        return self.orphan_collector.sweep(owner_id)

    # ------------------------------------------------------------------
    # References
    # ------------------------------------------------------------------

    def reconcile(self, owner_id: str, source_note_id: str, content: str) -> ReconcileResult:
        """Recompute a note's references from ``content`` and notify clients.

        The source note's stored content is not touched.
        """
        result = self.reconciler.reconcile(owner_id, source_note_id, content)
        self.publisher.publish(owner_id, source_note_id, result.affected_note_ids)
        return result

    def get_references(self, owner_id: str, note_id: str) -> NoteReferences:
        """Get the outgoing and incoming edges of a note, newest first."""
        return self.reference_repository.get_by_note(owner_id, note_id)

    def delete_reference(self, owner_id: str, from_note_id: str, to_note_id: str) -> int:
        """Delete the edges from one note to another.

        The next save of ``from_note_id`` recreates them if its content
        still links to ``to_note_id``.

        Returns:
            Number of edges deleted.
        """
        with self.locks.hold((owner_id, from_note_id)):
            deleted = self.reference_repository.delete_edge(owner_id, from_note_id, to_note_id)
        if deleted:
            logger.info(f"Deleted {deleted} references {from_note_id}->{to_note_id}")
        return deleted

    def detect_markers(self, owner_id: str, note_id: str) -> MarkerStats:
        """Count the markers in a note's content.

        Raises:
            NoteNotFoundError: If the note does not exist for ``owner_id``.
        """
        return markers.detect_markers(self.get_note(owner_id, note_id).content)

    @traced("sweep_orphans")
    def sweep_orphans(self, owner_id: Optional[str] = None) -> SweepResult:
        """Delete edges whose source or target note no longer exists."""
        return SweepResult(deleted_count=self.orphan_collector.sweep(owner_id))

    def format_references(self, owner_id: str, note_id: str) -> int:
        """Put every ``> [`` reference opener of a note on its own line.

        Returns:
            Number of newlines inserted.
        """
        with self.locks.hold((owner_id, note_id)):
            note = self.get_note(owner_id, note_id)
            content, added = format_reference_breaks(note.content)
            if added:
                self.note_repository.update(note_id, owner_id, content)
        logger.debug(f"Formatted references of {note_id}: {added} newlines added")
        return added

    def clean_references(self, owner_id: str, note_id: str) -> int:
        """Strip markers and backlink lines from a note.

        Also forgets the note's backlink records, so sources that still link
        here annotate it again on their next save.

        Returns:
            Number of characters removed.
        """
        with self.locks.hold((owner_id, note_id)):
            note = self.get_note(owner_id, note_id)
            cleaned = markers.strip_all_markers(note.content)
            removed = len(note.content) - len(cleaned)
            if removed:
                self.note_repository.update(note_id, owner_id, cleaned)
            self.reference_repository.clear_annotations_for_target(owner_id, note_id)
        logger.info(f"Cleaned {removed} marker characters from note {note_id}")
        return removed

    def search_by_reference(self, owner_id: str, text: str) -> List[Note]:
        """Find notes on either end of a reference whose label contains ``text``."""
        if not text or not text.strip():
            return []
        note_ids = self.reference_repository.search_by_label(owner_id, text.strip())
        return self.note_repository.get_by_ids(note_ids, owner_id)

    # ------------------------------------------------------------------
    # Live sessions
    # ------------------------------------------------------------------

    def open_session(self, owner_id: str) -> str:
        return self.registry.open_session(owner_id)

    def poll_events(
        self, owner_id: str, session_id: str, max_events: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        return self.registry.drain(session_id, owner_id=owner_id, max_events=max_events)

    def close_session(self, owner_id: str, session_id: str) -> bool:
        return self.registry.close_session(session_id, owner_id=owner_id)

    def get_status(self, owner_id: str) -> Dict[str, Any]:
        """Summarize the owner's notes, references and live sessions."""
        return {
            "owner_id": owner_id,
            "note_count": self.note_repository.count_notes(owner_id),
            "reference_count": self.reference_repository.count_edges(owner_id),
            "live_sessions": len(self.registry.get_live_sessions(owner_id)),
            "orphan_collector_running": self.orphan_collector.running,
        }

    def shutdown(self) -> None:
        """Stop background work."""
        self.orphan_collector.stop()
