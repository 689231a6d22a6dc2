"""Reconciliation of a note's reference graph with its current content."""
import logging
from typing import List, Optional

from noteref_mcp.exceptions import ErrorCode, NoteNotFoundError, ValidationError
from noteref_mcp.models.schema import (
    ParsedReference,
    ReconcileResult,
    ReferenceEdge,
    validate_note_id,
)
from noteref_mcp.services.link_parser import parse_references
from noteref_mcp.services.markers import (
    append_backlink,
    apply_forward_markers,
    has_backlink,
    strip_forward_markers,
)
from noteref_mcp.storage.base import NoteStore
from noteref_mcp.storage.reference_repository import ReferenceRepository
from noteref_mcp.utils import KeyedLock

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """Brings a note's outgoing edges and its targets' backlinks in line
    with the note's content.

    The outgoing edge set is always replaced wholesale from a fresh parse,
    so reconciling the same content twice changes nothing the second time.

    Locking: the edge replace runs under the ``(owner_id, source)`` lock and
    each backlink append under the ``(owner_id, target)`` lock. The two are
    never held together, so notes that reference each other can be saved
    concurrently without deadlock.
    """

    def __init__(
        self,
        note_store: NoteStore,
        reference_store: ReferenceRepository,
        locks: Optional[KeyedLock] = None,
        mark_forward_references: bool = True,
    ):
        """Initialize the engine.

        Args:
            note_store: Reads candidate targets and persists backlink appends.
            reference_store: Holds edges and backlink annotation records.
            locks: Per-note lock registry. Share one registry between every
                component that writes note content.
            mark_forward_references: Whether content written back to the
                source note gets forward markers.
        """
        self.note_store = note_store
        self.reference_store = reference_store
        self.locks = locks or KeyedLock()
        self.mark_forward_references = mark_forward_references

    def reconcile(
        self,
        owner_id: str,
        source_note_id: str,
        new_content: Optional[str],
        persist_source: bool = False,
    ) -> ReconcileResult:
        """Recompute the references of ``source_note_id`` from ``new_content``.

        Args:
            owner_id: Owner of the source note; targets are resolved in the
                same owner's notes only.
            source_note_id: The note whose content changed.
            new_content: The note's current content.
            persist_source: Also write ``new_content`` (with forward markers
                when enabled) to the source note, inside the same critical
                section as the edge replace. If that write fails the
                previous edges are put back.

        Returns:
            Counts and the IDs of every note whose content or edges changed.

        Raises:
            ValidationError: If ``source_note_id`` is malformed.
            StorageError: If the edge replace fails. No edges are changed.
            NoteNotFoundError: If the source note does not exist for
                ``owner_id``. Nothing is changed.
        """
        try:
            validate_note_id(source_note_id)
        except ValueError as e:
            raise ValidationError(
                str(e),
                field="note_id",
                value=source_note_id,
                code=ErrorCode.INVALID_NOTE_ID,
            ) from e

        with self.locks.hold((owner_id, source_note_id)):
            if self.note_store.get_by_id(source_note_id, owner_id) is None:
                raise NoteNotFoundError(source_note_id, owner_id)

            content = strip_forward_markers(new_content)
            candidates = parse_references(content, source_note_id)
            edges = self._resolve(owner_id, source_note_id, candidates)

            previous = None
            if persist_source:
                previous = self.reference_store.get_outgoing(owner_id, source_note_id)

            replaced = self.reference_store.replace_outgoing_edges(
                owner_id, source_note_id, edges
            )

            if persist_source:
                if self.mark_forward_references:
                    content = apply_forward_markers(content, candidates)
                try:
                    self.note_store.update(source_note_id, owner_id, content)
                except Exception:
                    # Stored content is unchanged, so its old edges must be too
                    self.reference_store.replace_outgoing_edges(
                        owner_id, source_note_id, previous
                    )
                    raise

        result = ReconcileResult(
            created_edge_count=replaced.created,
            removed_edge_count=replaced.removed,
            processed_reference_count=len(candidates),
            affected_note_ids=[source_note_id],
        )

        for edge in edges:
            try:
                if self._annotate_target(owner_id, edge.to_note_id, source_note_id):
                    result.annotated_target_count += 1
                    result.affected_note_ids.append(edge.to_note_id)
            except Exception as e:
                logger.warning(
                    f"Failed to annotate note {edge.to_note_id} with backlink "
                    f"from {source_note_id}: {e}"
                )

        logger.info(f"Reconciled note {source_note_id}: {result.message}")
        return result

    def _resolve(
        self,
        owner_id: str,
        source_note_id: str,
        candidates: List[ParsedReference],
    ) -> List[ReferenceEdge]:
        """Keep the candidates whose target note exists for ``owner_id``."""
        edges = []
        for candidate in candidates:
            target = self.note_store.get_by_id(candidate.target_note_id, owner_id)
            if target is None:
                logger.debug(
                    f"Dangling reference {source_note_id}->{candidate.target_note_id}"
                )
                continue
            edges.append(
                ReferenceEdge(
                    from_note_id=source_note_id,
                    to_note_id=target.id,
                    label=candidate.label,
                    owner_id=owner_id,
                )
            )
        return edges

    def _annotate_target(
        self, owner_id: str, target_note_id: str, source_note_id: str
    ) -> bool:
        """Append the backlink for ``source_note_id`` to the target note.

        The target is only written to, never reconciled.

        Returns:
            True if the target's content was changed.
        """
        with self.locks.hold((owner_id, target_note_id)):
            if self.reference_store.has_annotation(owner_id, target_note_id, source_note_id):
                return False

            target = self.note_store.get_by_id(target_note_id, owner_id)
            if target is None:
                raise NoteNotFoundError(target_note_id, owner_id)

            # Line written by an earlier run that died before recording it
            if has_backlink(target.content, source_note_id):
                self.reference_store.record_annotation(
                    owner_id, target_note_id, source_note_id
                )
                return False

            self.note_store.update(
                target_note_id, owner_id, append_backlink(target.content, source_note_id)
            )
            self.reference_store.record_annotation(owner_id, target_note_id, source_note_id)
            logger.debug(f"Added backlink from {source_note_id} to {target_note_id}")
            return True
