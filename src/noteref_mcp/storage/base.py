"""Interfaces the reference engine consumes from the note storage layer."""
from typing import Optional, Protocol, runtime_checkable

from noteref_mcp.models.schema import Note


@runtime_checkable
class NoteStore(Protocol):
    """The slice of a note store the reference engine needs.

    The engine only reads notes and rewrites their content; it never
    creates or deletes notes.
    """

    def get_by_id(self, note_id: str, owner_id: str) -> Optional[Note]:
        """Return the note if it exists and belongs to ``owner_id``."""
        ...

    def update(self, note_id: str, owner_id: str, content: str) -> Note:
        """Replace a note's content.

        Raises:
            NoteNotFoundError: If the note does not exist for ``owner_id``.
        """
        ...
