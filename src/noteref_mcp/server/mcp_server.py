"""MCP server implementation for the note reference engine."""

import json
import logging
import uuid
from typing import Optional

from mcp.server.fastmcp import FastMCP

from noteref_mcp.config import config
from noteref_mcp.exceptions import NoteRefError
from noteref_mcp.models.schema import Note, ReferenceEdge
from noteref_mcp.observability import metrics, timed_operation
from noteref_mcp.services.reference_service import ReferenceService

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 1_000_000  # 1 MB
MAX_POLL_EVENTS = 500


def _validate_content_length(content: Optional[str]) -> None:
    """Validate input string lengths at the MCP boundary."""
    if content and len(content) > MAX_CONTENT_LENGTH:
        raise ValueError(
            f"Content exceeds maximum length of {MAX_CONTENT_LENGTH} characters"
        )


def _format_edge(edge: ReferenceEdge, incoming: bool = False) -> str:
    other = edge.from_note_id if incoming else edge.to_note_id
    arrow = "<-" if incoming else "->"
    return f"- {arrow} {other} \"{edge.label}\" ({edge.created_at.isoformat()})\n"


def _format_note_line(note: Note) -> str:
    preview = note.content.strip().replace("\n", " ")[:80]
    return f"- {note.id}: {preview}\n"


class NoteRefMcpServer:
    """MCP server exposing the reference engine."""

    def __init__(self, engine=None, service: Optional[ReferenceService] = None):
        """Initialize the MCP server.

        Args:
            engine: Pre-configured SQLAlchemy engine shared by every
                    repository. When None, one is created from config.
            service: Pre-built service, mainly for tests.
        """
        self.mcp = FastMCP(config.server_name)
        self.service = service or ReferenceService(engine=engine)
        self.initialize()
        self._register_tools()

    def initialize(self) -> None:
        """Initialize services."""
        if config.orphan_sweep_interval > 0:
            self.service.orphan_collector.start(config.orphan_sweep_interval)
        logger.info("NoteRef MCP server initialized")

    def shutdown(self) -> None:
        """Clean up resources on server exit."""
        self.service.shutdown()

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way.

        Args:
            error: The exception that occurred

        Returns:
            Formatted error message with appropriate level of detail
        """
        # Generate a unique error ID for traceability in logs
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, NoteRefError):
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return f"Error: {error.message}"
        elif isinstance(error, ValueError):
            # Log full detail but return generic ref to avoid leaking internals
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return f"Error: Invalid input (ref: {error_id})"
        else:
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: An unexpected error occurred (ref: {error_id})"

    def _register_tools(self) -> None:
        """Register MCP tools."""

        @self.mcp.tool(name="ref_create_note")
        def ref_create_note(
            content: str = "", note_id: Optional[str] = None, user_id: Optional[str] = None
        ) -> str:
            """Create a note. References in its content are linked immediately.
            Args:
                content: Initial note content
                note_id: Explicit ID (letters, digits, '-', '_', '.'); generated if omitted
                user_id: Owner of the note (defaults to the configured user)
            """
            owner = config.resolve_user(user_id)
            with timed_operation("ref_create_note", owner_id=owner) as op:
                try:
                    _validate_content_length(content)
                    note = self.service.create_note(owner, content, note_id=note_id)
                    op["note_id"] = note.id
                    return f"Note created successfully with ID: {note.id}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ref_get_note")
        def ref_get_note(note_id: str, user_id: Optional[str] = None) -> str:
            """Retrieve a note's content.
            Args:
                note_id: The ID of the note
                user_id: Owner of the note (defaults to the configured user)
            """
            owner = config.resolve_user(user_id)
            with timed_operation("ref_get_note", note_id=note_id) as op:
                try:
                    note = self.service.get_note(owner, str(note_id))
                    op["found"] = True
                    result = f"# Note {note.id}\n"
                    result += f"Created: {note.created_at.isoformat()}\n"
                    result += f"Updated: {note.updated_at.isoformat()}\n\n"
                    result += note.content
                    return result
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ref_save_note")
        def ref_save_note(note_id: str, content: str, user_id: Optional[str] = None) -> str:
            """Save new content to a note and update its references and backlinks.
            Args:
                note_id: The ID of the note to save
                content: The full new content
                user_id: Owner of the note (defaults to the configured user)
            """
            owner = config.resolve_user(user_id)
            with timed_operation("ref_save_note", note_id=note_id) as op:
                try:
                    _validate_content_length(content)
                    result = self.service.save_note(owner, str(note_id), content)
                    op["created"] = result.created_edge_count
                    op["annotated"] = result.annotated_target_count
                    return (
                        f"Note {note_id} saved. {result.message}.\n"
                        f"Affected notes: {', '.join(result.affected_note_ids)}"
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ref_delete_note")
        def ref_delete_note(note_id: str, user_id: Optional[str] = None) -> str:
            """Delete a note permanently. References touching it are swept.
            Args:
                note_id: The ID of the note to delete
                user_id: Owner of the note (defaults to the configured user)
            """
            owner = config.resolve_user(user_id)
            with timed_operation("ref_delete_note", note_id=note_id) as op:
                try:
                    swept = self.service.delete_note(owner, str(note_id))
                    op["swept"] = swept
                    return f"Note {note_id} deleted ({swept} references removed)"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ref_reconcile")
        def ref_reconcile(
            note_id: str, content: Optional[str] = None, user_id: Optional[str] = None
        ) -> str:
            """Recompute a note's references without changing its stored content.
            Args:
                note_id: The source note
                content: Content to parse; defaults to the note's stored content
                user_id: Owner of the note (defaults to the configured user)
            """
            owner = config.resolve_user(user_id)
            with timed_operation("ref_reconcile", note_id=note_id) as op:
                try:
                    _validate_content_length(content)
                    if content is None:
                        content = self.service.get_note(owner, str(note_id)).content
                    result = self.service.reconcile(owner, str(note_id), content)
                    op["created"] = result.created_edge_count
                    return json.dumps(
                        {
                            "noteId": note_id,
                            "createdEdgeCount": result.created_edge_count,
                            "removedEdgeCount": result.removed_edge_count,
                            "processedReferenceCount": result.processed_reference_count,
                            "annotatedTargetCount": result.annotated_target_count,
                            "affectedNoteIds": result.affected_note_ids,
                            "message": result.message,
                        },
                        indent=2,
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ref_get_references")
        def ref_get_references(note_id: str, user_id: Optional[str] = None) -> str:
            """List the notes a note references and the notes referencing it.
            Args:
                note_id: The ID of the note
                user_id: Owner of the note (defaults to the configured user)
            """
            owner = config.resolve_user(user_id)
            with timed_operation("ref_get_references", note_id=note_id) as op:
                try:
                    refs = self.service.get_references(owner, str(note_id))
                    op["outgoing"] = len(refs.outgoing)
                    op["incoming"] = len(refs.incoming)

                    output = f"# References of {note_id}\n\n"
                    output += f"## Outgoing ({len(refs.outgoing)})\n"
                    for edge in refs.outgoing:
                        output += _format_edge(edge)
                    output += f"\n## Incoming ({len(refs.incoming)})\n"
                    for edge in refs.incoming:
                        output += _format_edge(edge, incoming=True)
                    return output
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ref_delete_reference")
        def ref_delete_reference(
            from_note_id: str, to_note_id: str, user_id: Optional[str] = None
        ) -> str:
            """Delete the reference edges from one note to another.
            Args:
                from_note_id: The referencing note
                to_note_id: The referenced note
                user_id: Owner of the notes (defaults to the configured user)
            """
            owner = config.resolve_user(user_id)
            with timed_operation("ref_delete_reference", from_id=from_note_id) as op:
                try:
                    deleted = self.service.delete_reference(
                        owner, str(from_note_id), str(to_note_id)
                    )
                    op["deleted"] = deleted
                    if not deleted:
                        return f"No reference from {from_note_id} to {to_note_id}"
                    return f"Deleted {deleted} reference(s) from {from_note_id} to {to_note_id}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ref_detect_markers")
        def ref_detect_markers(note_id: str, user_id: Optional[str] = None) -> str:
            """Count the invisible reference and backlink markers in a note.
            Args:
                note_id: The ID of the note
                user_id: Owner of the note (defaults to the configured user)
            """
            owner = config.resolve_user(user_id)
            with timed_operation("ref_detect_markers", note_id=note_id):
                try:
                    stats = self.service.detect_markers(owner, str(note_id))
                    return json.dumps(
                        {
                            "noteId": note_id,
                            "hasReferences": stats.has_references,
                            "hasBacklinks": stats.has_backlinks,
                            "referenceCount": stats.reference_count,
                            "backlinkCount": stats.backlink_count,
                            "contentLength": stats.content_length,
                        },
                        indent=2,
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ref_sweep_orphans")
        def ref_sweep_orphans(user_id: Optional[str] = None) -> str:
            """Delete references whose source or target note no longer exists.
            Args:
                user_id: Owner whose references are swept (defaults to the configured user)
            """
            owner = config.resolve_user(user_id)
            with timed_operation("ref_sweep_orphans", owner_id=owner) as op:
                try:
                    result = self.service.sweep_orphans(owner)
                    op["deleted"] = result.deleted_count
                    return f"Removed {result.deleted_count} orphaned references"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ref_format_references")
        def ref_format_references(note_id: str, user_id: Optional[str] = None) -> str:
            """Put every '> [' reference of a note on its own line.
            Args:
                note_id: The ID of the note
                user_id: Owner of the note (defaults to the configured user)
            """
            owner = config.resolve_user(user_id)
            with timed_operation("ref_format_references", note_id=note_id) as op:
                try:
                    added = self.service.format_references(owner, str(note_id))
                    op["added"] = added
                    return f"Added {added} newline(s) before references in note {note_id}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ref_clean_references")
        def ref_clean_references(note_id: str, user_id: Optional[str] = None) -> str:
            """Remove invisible markers and backlink lines from a note.
            Args:
                note_id: The ID of the note
                user_id: Owner of the note (defaults to the configured user)
            """
            owner = config.resolve_user(user_id)
            with timed_operation("ref_clean_references", note_id=note_id) as op:
                try:
                    removed = self.service.clean_references(owner, str(note_id))
                    op["removed"] = removed
                    return f"Removed {removed} character(s) from note {note_id}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ref_search_by_reference")
        def ref_search_by_reference(text: str, user_id: Optional[str] = None) -> str:
            """Find notes linked by a reference whose text contains the query.
            Args:
                text: Text to look for in reference labels
                user_id: Owner of the notes (defaults to the configured user)
            """
            owner = config.resolve_user(user_id)
            with timed_operation("ref_search_by_reference", query=text[:30]) as op:
                try:
                    notes = self.service.search_by_reference(owner, text)
                    op["result_count"] = len(notes)
                    if not notes:
                        return f"No notes found for reference text '{text}'"
                    output = f"Found {len(notes)} note(s):\n"
                    for note in notes:
                        output += _format_note_line(note)
                    return output
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ref_open_session")
        def ref_open_session(user_id: Optional[str] = None) -> str:
            """Open a live session that receives reference update events.
            Args:
                user_id: Owner of the session (defaults to the configured user)
            """
            owner = config.resolve_user(user_id)
            try:
                session_id = self.service.open_session(owner)
                return f"Session opened: {session_id}"
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="ref_poll_events")
        def ref_poll_events(
            session_id: str, max_events: int = 100, user_id: Optional[str] = None
        ) -> str:
            """Fetch pending reference update events of a live session.
            Args:
                session_id: ID returned by ref_open_session
                max_events: Maximum number of events to return (default: 100)
                user_id: Owner of the session (defaults to the configured user)
            """
            owner = config.resolve_user(user_id)
            try:
                limit = max(1, min(int(max_events), MAX_POLL_EVENTS))
                events = self.service.poll_events(owner, session_id, max_events=limit)
                return json.dumps(events, indent=2)
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="ref_close_session")
        def ref_close_session(session_id: str, user_id: Optional[str] = None) -> str:
            """Close a live session.
            Args:
                session_id: ID returned by ref_open_session
                user_id: Owner of the session (defaults to the configured user)
            """
            owner = config.resolve_user(user_id)
            try:
                if self.service.close_session(owner, session_id):
                    return f"Session {session_id} closed"
                return f"Session not found: {session_id}"
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="ref_status")
        def ref_status(user_id: Optional[str] = None) -> str:
            """Show note and reference counts plus server metrics.
            Args:
                user_id: Owner to report on (defaults to the configured user)
            """
            owner = config.resolve_user(user_id)
            with timed_operation("ref_status"):
                try:
                    status = self.service.get_status(owner)
                    output = "# NoteRef Status\n\n"
                    output += f"**Owner:** {status['owner_id']}\n"
                    output += f"**Notes:** {status['note_count']}\n"
                    output += f"**References:** {status['reference_count']}\n"
                    output += f"**Live sessions:** {status['live_sessions']}\n"
                    output += (
                        "**Orphan collector:** "
                        f"{'running' if status['orphan_collector_running'] else 'idle'}\n\n"
                    )

                    summary = metrics.get_summary()
                    output += "## Metrics\n"
                    output += f"**Operations:** {summary['total_operations']}\n"
                    output += f"**Errors:** {summary['total_errors']}\n"
                    return output
                except Exception as e:
                    return self.format_error_response(e)

    def run(self) -> None:
        """Run the MCP server."""
        self.mcp.run()
