"""Storage layer for the NoteRef MCP server."""

from noteref_mcp.storage.base import NoteStore
from noteref_mcp.storage.note_repository import NoteRepository
from noteref_mcp.storage.reference_repository import ReferenceRepository

__all__ = [
    "NoteStore",
    "NoteRepository",
    "ReferenceRepository",
]
