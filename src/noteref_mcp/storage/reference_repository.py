"""Repository for reference edges and backlink annotation records."""
import logging
from typing import Iterable, List, Optional

from sqlalchemy import delete, func, or_, select, tuple_
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from noteref_mcp.exceptions import ErrorCode, StorageError
from noteref_mcp.models.db_models import DBBacklinkAnnotation, DBNote, DBNoteReference
from noteref_mcp.models.schema import (
    NoteReferences,
    ReferenceEdge,
    ReplaceResult,
    ensure_timezone_aware,
)
from noteref_mcp.utils import escape_like_pattern

logger = logging.getLogger(__name__)


def _to_edge(row: DBNoteReference) -> ReferenceEdge:
    return ReferenceEdge(
        id=row.id,
        from_note_id=row.from_note_id,
        to_note_id=row.to_note_id,
        label=row.reference_text,
        owner_id=row.user_id,
        created_at=ensure_timezone_aware(row.created_at),
    )


class ReferenceRepository:
    """Repository for the directed reference graph between notes.

    An edge set is never edited piecemeal by the reconciler: it is replaced
    wholesale from the current content of the source note. The repository
    also owns the ``backlink_annotations`` side table, which records which
    (target, source) backlink lines have been written.
    """

    def __init__(self, session_factory):
        """Initialize the reference repository.

        Args:
            session_factory: SQLAlchemy session factory for database operations.
        """
        self.session_factory = session_factory

    def replace_outgoing_edges(
        self, owner_id: str, from_note_id: str, edges: Iterable[ReferenceEdge]
    ) -> ReplaceResult:
        """Make ``edges`` the complete outgoing edge set of ``from_note_id``.

        Runs as one transaction: rows that match an incoming edge are kept,
        every other outgoing row is deleted and missing ones are inserted.
        An insert that trips the unique constraint counts as already present.

        Args:
            owner_id: Owner of the source note.
            from_note_id: The source note ID.
            edges: The desired edge set. Every edge must originate at
                ``from_note_id`` and belong to ``owner_id``.

        Returns:
            Counts of created, removed and kept rows.

        Raises:
            StorageError: If the transaction fails; nothing is committed.
        """
        desired = {}
        for edge in edges:
            if edge.from_note_id != from_note_id or edge.owner_id != owner_id:
                raise ValueError(
                    f"Edge {edge.from_note_id}->{edge.to_note_id} does not belong "
                    f"to note {from_note_id} of {owner_id}"
                )
            desired.setdefault(edge.key, edge)

        result = ReplaceResult()
        try:
            with self.session_factory() as session:
                # Write first so SQLite takes the write lock up front
                stale = delete(DBNoteReference).where(
                    (DBNoteReference.user_id == owner_id)
                    & (DBNoteReference.from_note_id == from_note_id)
                )
                if desired:
                    stale = stale.where(
                        tuple_(
                            DBNoteReference.to_note_id, DBNoteReference.reference_text
                        ).not_in([(e.to_note_id, e.label) for e in desired.values()])
                    )
                result.removed = session.execute(
                    stale.execution_options(synchronize_session=False)
                ).rowcount or 0

                for edge in desired.values():
                    inserted = session.execute(
                        sqlite_insert(DBNoteReference)
                        .values(
                            from_note_id=edge.from_note_id,
                            to_note_id=edge.to_note_id,
                            reference_text=edge.label,
                            user_id=edge.owner_id,
                            created_at=edge.created_at,
                        )
                        .on_conflict_do_nothing()
                    ).rowcount
                    if inserted:
                        result.created += 1
                    else:
                        logger.debug(
                            f"Reference {edge.from_note_id}->{edge.to_note_id} "
                            "already present"
                        )
                        result.kept += 1

                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to replace references of note {from_note_id}",
                operation="replace_outgoing_edges",
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

        logger.debug(
            f"Replaced references of {from_note_id}: created={result.created} "
            f"removed={result.removed} kept={result.kept}"
        )
        return result

    def _edges(self, owner_id: str, column, note_id: str, operation: str) -> List[ReferenceEdge]:
        try:
            with self.session_factory() as session:
                rows = session.scalars(
                    select(DBNoteReference)
                    .where((DBNoteReference.user_id == owner_id) & (column == note_id))
                    .order_by(DBNoteReference.created_at.desc(), DBNoteReference.id.desc())
                ).all()
                return [_to_edge(row) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to read references of note {note_id}",
                operation=operation,
                original_error=e,
            ) from e

    def get_outgoing(self, owner_id: str, note_id: str) -> List[ReferenceEdge]:
        """Get all edges leaving a note, newest first."""
        return self._edges(owner_id, DBNoteReference.from_note_id, note_id, "get_outgoing")

    def get_incoming(self, owner_id: str, note_id: str) -> List[ReferenceEdge]:
        """Get all edges pointing at a note, newest first."""
        return self._edges(owner_id, DBNoteReference.to_note_id, note_id, "get_incoming")

    def get_by_note(self, owner_id: str, note_id: str) -> NoteReferences:
        """Get the outgoing and incoming edges of a note."""
        return NoteReferences(
            note_id=note_id,
            outgoing=self.get_outgoing(owner_id, note_id),
            incoming=self.get_incoming(owner_id, note_id),
        )

    def delete_edge(self, owner_id: str, from_note_id: str, to_note_id: str) -> int:
        """Delete every edge from one note to another (any label).

        Returns:
            Number of edges deleted.
        """
        try:
            with self.session_factory() as session:
                result = session.execute(
                    delete(DBNoteReference).where(
                        (DBNoteReference.user_id == owner_id)
                        & (DBNoteReference.from_note_id == from_note_id)
                        & (DBNoteReference.to_note_id == to_note_id)
                    )
                )
                session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to delete references {from_note_id}->{to_note_id}",
                operation="delete_edge",
                code=ErrorCode.STORAGE_DELETE_FAILED,
                original_error=e,
            ) from e

    def delete_orphaned(self, owner_id: Optional[str] = None) -> int:
        """Delete edges whose source or target note no longer exists.

        Liveness is checked inside the DELETE statement itself, so an edge
        is only removed if an endpoint is missing at the moment of deletion.
        Annotation records with a missing endpoint are pruned alongside.

        Args:
            owner_id: Restrict the sweep to one owner's graph. None sweeps all.

        Returns:
            Number of reference edges deleted.
        """
        live_notes = select(DBNote.user_id, DBNote.id)
        edge_filter = or_(
            tuple_(DBNoteReference.user_id, DBNoteReference.from_note_id).not_in(live_notes),
            tuple_(DBNoteReference.user_id, DBNoteReference.to_note_id).not_in(live_notes),
        )
        ann_filter = or_(
            tuple_(DBBacklinkAnnotation.user_id, DBBacklinkAnnotation.target_note_id).not_in(live_notes),
            tuple_(DBBacklinkAnnotation.user_id, DBBacklinkAnnotation.source_note_id).not_in(live_notes),
        )
        if owner_id is not None:
            edge_filter = (DBNoteReference.user_id == owner_id) & edge_filter
            ann_filter = (DBBacklinkAnnotation.user_id == owner_id) & ann_filter

        try:
            with self.session_factory() as session:
                deleted = session.execute(
                    delete(DBNoteReference)
                    .where(edge_filter)
                    .execution_options(synchronize_session=False)
                ).rowcount or 0
                pruned = session.execute(
                    delete(DBBacklinkAnnotation)
                    .where(ann_filter)
                    .execution_options(synchronize_session=False)
                ).rowcount or 0
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to delete orphaned references",
                operation="delete_orphaned",
                code=ErrorCode.STORAGE_DELETE_FAILED,
                original_error=e,
            ) from e

        if deleted or pruned:
            logger.info(
                f"Removed {deleted} orphaned references and {pruned} annotation "
                f"records (owner={owner_id or '*'})"
            )
        return deleted

    def search_by_label(self, owner_id: str, text: str) -> List[str]:
        """Find notes on either end of an edge whose label contains ``text``.

        Returns:
            Distinct note IDs in order of first appearance, newest edges first.
        """
        pattern = f"%{escape_like_pattern(text)}%"
        with self.session_factory() as session:
            rows = session.execute(
                select(DBNoteReference.from_note_id, DBNoteReference.to_note_id)
                .where(
                    (DBNoteReference.user_id == owner_id)
                    & DBNoteReference.reference_text.like(pattern, escape="\\")
                )
                .order_by(DBNoteReference.created_at.desc(), DBNoteReference.id.desc())
            ).all()
        seen: List[str] = []
        for from_id, to_id in rows:
            for note_id in (from_id, to_id):
                if note_id not in seen:
                    seen.append(note_id)
        return seen

    def count_edges(self, owner_id: Optional[str] = None) -> int:
        """Count reference edges, optionally for one owner."""
        query = select(func.count()).select_from(DBNoteReference)
        if owner_id is not None:
            query = query.where(DBNoteReference.user_id == owner_id)
        with self.session_factory() as session:
            return session.scalar(query) or 0

    # ------------------------------------------------------------------
    # Backlink annotation records
    # ------------------------------------------------------------------

    def has_annotation(self, owner_id: str, target_note_id: str, source_note_id: str) -> bool:
        """Whether a backlink for ``source_note_id`` was written to the target."""
        try:
            with self.session_factory() as session:
                return session.scalar(
                    select(DBBacklinkAnnotation.id).where(
                        (DBBacklinkAnnotation.user_id == owner_id)
                        & (DBBacklinkAnnotation.target_note_id == target_note_id)
                        & (DBBacklinkAnnotation.source_note_id == source_note_id)
                    )
                ) is not None
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to read backlink records of note {target_note_id}",
                operation="has_annotation",
                original_error=e,
            ) from e

    def record_annotation(self, owner_id: str, target_note_id: str, source_note_id: str) -> bool:
        """Record that a backlink line exists. Idempotent.

        Returns:
            True if a new record was inserted, False if it already existed.
        """
        try:
            with self.session_factory() as session:
                session.add(
                    DBBacklinkAnnotation(
                        user_id=owner_id,
                        target_note_id=target_note_id,
                        source_note_id=source_note_id,
                    )
                )
                session.commit()
                return True
        except IntegrityError:
            return False
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to record backlink {source_note_id}->{target_note_id}",
                operation="record_annotation",
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

    def clear_annotations_for_target(self, owner_id: str, target_note_id: str) -> int:
        """Forget every backlink record of a target note.

        Returns:
            Number of records removed.
        """
        try:
            with self.session_factory() as session:
                result = session.execute(
                    delete(DBBacklinkAnnotation).where(
                        (DBBacklinkAnnotation.user_id == owner_id)
                        & (DBBacklinkAnnotation.target_note_id == target_note_id)
                    )
                )
                session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to clear backlink records of note {target_note_id}",
                operation="clear_annotations_for_target",
                code=ErrorCode.STORAGE_DELETE_FAILED,
                original_error=e,
            ) from e
