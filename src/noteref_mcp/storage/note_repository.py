"""Repository for note storage and retrieval."""

import logging
from typing import Any, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from noteref_mcp.exceptions import (
    ErrorCode,
    NoteNotFoundError,
    NoteRefError,
    StorageError,
)
from noteref_mcp.models.db_models import DBNote, get_session_factory, init_db
from noteref_mcp.models.schema import (
    Note,
    ensure_timezone_aware,
    utc_now,
    validate_note_id,
)

logger = logging.getLogger(__name__)


class NoteRepository:
    """SQLite-backed note store.

    Every read and write is scoped to an owner: a note that exists but
    belongs to someone else is reported as missing.
    """

    def __init__(self, engine: Optional[Any] = None, session_factory=None):
        """Initialize the repository.

        Args:
            engine: Pre-configured SQLAlchemy engine. When None, one is
                    created from config via init_db().
            session_factory: Optional session factory sharing ``engine``.
        """
        self.engine = engine if engine is not None else init_db()
        self.session_factory = session_factory or get_session_factory(self.engine)

    @staticmethod
    def _db_note_to_model(db_note: DBNote) -> Note:
        return Note(
            id=db_note.id,
            owner_id=db_note.user_id,
            content=db_note.content or "",
            created_at=ensure_timezone_aware(db_note.created_at),
            updated_at=ensure_timezone_aware(db_note.updated_at),
        )

    def create(self, owner_id: str, content: str = "", note_id: Optional[str] = None) -> Note:
        """Create a note.

        Args:
            owner_id: Owner of the new note.
            content: Initial content.
            note_id: Explicit ID; generated when omitted.

        Returns:
            The created Note.

        Raises:
            NoteRefError: If a note with that ID already exists.
        """
        note = Note(owner_id=owner_id, content=content) if note_id is None else Note(
            id=note_id, owner_id=owner_id, content=content
        )
        try:
            with self.session_factory() as session:
                if session.get(DBNote, note.id) is not None:
                    raise NoteRefError(
                        f"Note with ID '{note.id}' already exists",
                        code=ErrorCode.NOTE_ALREADY_EXISTS,
                        details={"note_id": note.id},
                    )
                session.add(
                    DBNote(
                        id=note.id,
                        user_id=note.owner_id,
                        content=note.content,
                        created_at=note.created_at,
                        updated_at=note.updated_at,
                    )
                )
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to create note {note.id}",
                operation="create",
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
        logger.debug(f"Created note {note.id} for {owner_id}")
        return note

    def get_by_id(self, note_id: str, owner_id: str) -> Optional[Note]:
        """Get a note by ID for one owner, or None."""
        try:
            validate_note_id(note_id)
        except ValueError:
            return None
        try:
            with self.session_factory() as session:
                db_note = session.scalar(
                    select(DBNote).where(
                        (DBNote.id == note_id) & (DBNote.user_id == owner_id)
                    )
                )
                return self._db_note_to_model(db_note) if db_note else None
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to read note {note_id}",
                operation="get",
                original_error=e,
            ) from e

    def get_by_ids(self, note_ids: List[str], owner_id: str) -> List[Note]:
        """Get several notes at once, preserving the order of ``note_ids``."""
        if not note_ids:
            return []
        with self.session_factory() as session:
            rows = session.scalars(
                select(DBNote).where(
                    DBNote.id.in_(note_ids) & (DBNote.user_id == owner_id)
                )
            ).all()
        by_id = {row.id: self._db_note_to_model(row) for row in rows}
        return [by_id[i] for i in note_ids if i in by_id]

    def update(self, note_id: str, owner_id: str, content: str) -> Note:
        """Replace a note's content.

        Raises:
            NoteNotFoundError: If the note does not exist for ``owner_id``.
            StorageError: If the write fails.
        """
        try:
            with self.session_factory() as session:
                db_note = session.scalar(
                    select(DBNote).where(
                        (DBNote.id == note_id) & (DBNote.user_id == owner_id)
                    )
                )
                if db_note is None:
                    raise NoteNotFoundError(note_id, owner_id)
                db_note.content = content
                db_note.updated_at = utc_now()
                session.commit()
                return self._db_note_to_model(db_note)
        except SQLAlchemyError as e:
            logger.error(f"Failed to update note {note_id} in database: {e}")
            raise StorageError(
                f"Failed to update note {note_id}",
                operation="update",
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

    def delete(self, note_id: str, owner_id: str) -> None:
        """Hard-delete a note.

        Reference edges touching the note are left in place; the orphan
        sweep removes them.

        Raises:
            NoteNotFoundError: If the note does not exist for ``owner_id``.
        """
        try:
            with self.session_factory() as session:
                result = session.execute(
                    delete(DBNote).where(
                        (DBNote.id == note_id) & (DBNote.user_id == owner_id)
                    )
                )
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to delete note {note_id}",
                operation="delete",
                code=ErrorCode.STORAGE_DELETE_FAILED,
                original_error=e,
            ) from e
        if result.rowcount == 0:
            raise NoteNotFoundError(note_id, owner_id)

    def count_notes(self, owner_id: Optional[str] = None) -> int:
        """Count notes, optionally for one owner."""
        query = select(func.count()).select_from(DBNote)
        if owner_id is not None:
            query = query.where(DBNote.user_id == owner_id)
        with self.session_factory() as session:
            return session.scalar(query) or 0
