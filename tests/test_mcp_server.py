# tests/test_mcp_server.py
"""Tests for the MCP server implementation."""
import datetime
import json
from unittest.mock import MagicMock, patch

from noteref_mcp.config import config
from noteref_mcp.exceptions import NoteNotFoundError
from noteref_mcp.models.schema import (
    MarkerStats,
    Note,
    NoteReferences,
    ReconcileResult,
    ReferenceEdge,
    SweepResult,
)
from noteref_mcp.server.mcp_server import MAX_CONTENT_LENGTH, MAX_POLL_EVENTS, NoteRefMcpServer

TOOL_NAMES = {
    "ref_create_note",
    "ref_get_note",
    "ref_save_note",
    "ref_delete_note",
    "ref_reconcile",
    "ref_get_references",
    "ref_delete_reference",
    "ref_detect_markers",
    "ref_sweep_orphans",
    "ref_format_references",
    "ref_clean_references",
    "ref_search_by_reference",
    "ref_open_session",
    "ref_poll_events",
    "ref_close_session",
    "ref_status",
}


class TestMcpServer:
    """Tests for the NoteRefMcpServer class."""

    def setup_method(self):
        """Set up test environment before each test."""
        self.registered_tools = {}
        self.mock_mcp = MagicMock()

        # Capture the tool functions as they are registered
        def mock_tool_decorator(*args, **kwargs):
            def tool_wrapper(func):
                self.registered_tools[kwargs.get("name")] = func
                return func
            return tool_wrapper
        self.mock_mcp.tool = mock_tool_decorator

        self.mock_service = MagicMock()

        self.mcp_patcher = patch(
            "noteref_mcp.server.mcp_server.FastMCP", return_value=self.mock_mcp
        )
        self.interval_patcher = patch.object(config, "orphan_sweep_interval", 0)
        self.user_patcher = patch.object(config, "default_user_id", "default_user")
        self.mcp_patcher.start()
        self.interval_patcher.start()
        self.user_patcher.start()

        self.server = NoteRefMcpServer(service=self.mock_service)

    def teardown_method(self):
        """Clean up after each test."""
        self.mcp_patcher.stop()
        self.interval_patcher.stop()
        self.user_patcher.stop()

    def test_all_tools_registered(self):
        assert set(self.registered_tools) == TOOL_NAMES

    def test_collector_not_started_when_disabled(self):
        self.mock_service.orphan_collector.start.assert_not_called()

    def test_collector_started_with_interval(self):
        with patch.object(config, "orphan_sweep_interval", 30):
            NoteRefMcpServer(service=self.mock_service)
        self.mock_service.orphan_collector.start.assert_called_once_with(30)

    def test_shutdown_stops_service(self):
        self.server.shutdown()
        self.mock_service.shutdown.assert_called_once()

    def test_create_note_tool(self):
        self.mock_service.create_note.return_value = Note(id="A", owner_id="default_user")

        result = self.registered_tools["ref_create_note"](content="hello")

        assert "successfully" in result
        assert "A" in result
        self.mock_service.create_note.assert_called_with("default_user", "hello", note_id=None)

    def test_create_note_rejects_oversized_content(self):
        result = self.registered_tools["ref_create_note"](content="x" * (MAX_CONTENT_LENGTH + 1))

        assert result.startswith("Error: Invalid input (ref: ")
        self.mock_service.create_note.assert_not_called()

    def test_get_note_tool(self):
        created = datetime.datetime(2024, 1, 1, 12, 0, tzinfo=datetime.timezone.utc)
        self.mock_service.get_note.return_value = Note(
            id="A",
            owner_id="bob",
            content="Body text",
            created_at=created,
            updated_at=created,
        )

        result = self.registered_tools["ref_get_note"](note_id="A", user_id="bob")

        assert result.startswith("# Note A")
        assert "2024-01-01T12:00:00+00:00" in result
        assert result.endswith("Body text")
        self.mock_service.get_note.assert_called_with("bob", "A")

    def test_get_note_not_found(self):
        self.mock_service.get_note.side_effect = NoteNotFoundError("missing")

        result = self.registered_tools["ref_get_note"](note_id="missing")

        assert result.startswith("Error: ")
        assert "missing" in result

    def test_save_note_tool(self):
        self.mock_service.save_note.return_value = ReconcileResult(
            created_edge_count=1,
            processed_reference_count=1,
            annotated_target_count=1,
            affected_note_ids=["A", "B"],
        )

        result = self.registered_tools["ref_save_note"](note_id="A", content="link")

        assert "Note A saved" in result
        assert "created 1 edges" in result
        assert "Affected notes: A, B" in result
        self.mock_service.save_note.assert_called_with("default_user", "A", "link")

    def test_delete_note_tool(self):
        self.mock_service.delete_note.return_value = 2

        result = self.registered_tools["ref_delete_note"](note_id="A")

        assert result == "Note A deleted (2 references removed)"

    def test_reconcile_uses_stored_content_by_default(self):
        self.mock_service.get_note.return_value = Note(
            id="A", owner_id="default_user", content="stored"
        )
        self.mock_service.reconcile.return_value = ReconcileResult(affected_note_ids=["A"])

        result = json.loads(self.registered_tools["ref_reconcile"](note_id="A"))

        self.mock_service.reconcile.assert_called_with("default_user", "A", "stored")
        assert result["noteId"] == "A"
        assert result["createdEdgeCount"] == 0
        assert result["affectedNoteIds"] == ["A"]

    def test_reconcile_with_explicit_content(self):
        self.mock_service.reconcile.return_value = ReconcileResult(
            created_edge_count=2, affected_note_ids=["A"]
        )

        result = json.loads(
            self.registered_tools["ref_reconcile"](note_id="A", content="new")
        )

        self.mock_service.get_note.assert_not_called()
        assert result["createdEdgeCount"] == 2

    def test_get_references_tool(self):
        self.mock_service.get_references.return_value = NoteReferences(
            note_id="B",
            outgoing=[],
            incoming=[
                ReferenceEdge(
                    from_note_id="A", to_note_id="B", label="see B", owner_id="default_user"
                )
            ],
        )

        result = self.registered_tools["ref_get_references"](note_id="B")

        assert "## Outgoing (0)" in result
        assert "## Incoming (1)" in result
        assert '<- A "see B"' in result

    def test_delete_reference_tool(self):
        self.mock_service.delete_reference.return_value = 0
        missing = self.registered_tools["ref_delete_reference"](from_note_id="A", to_note_id="B")
        self.mock_service.delete_reference.return_value = 1
        deleted = self.registered_tools["ref_delete_reference"](from_note_id="A", to_note_id="B")

        assert missing == "No reference from A to B"
        assert deleted.startswith("Deleted 1 reference(s)")

    def test_detect_markers_tool(self):
        self.mock_service.detect_markers.return_value = MarkerStats(
            has_references=True, reference_count=2, content_length=40
        )

        result = json.loads(self.registered_tools["ref_detect_markers"](note_id="A"))

        assert result == {
            "noteId": "A",
            "hasReferences": True,
            "hasBacklinks": False,
            "referenceCount": 2,
            "backlinkCount": 0,
            "contentLength": 40,
        }

    def test_sweep_orphans_tool(self):
        self.mock_service.sweep_orphans.return_value = SweepResult(deleted_count=3)

        result = self.registered_tools["ref_sweep_orphans"]()

        assert result == "Removed 3 orphaned references"
        self.mock_service.sweep_orphans.assert_called_with("default_user")

    def test_format_and_clean_tools(self):
        self.mock_service.format_references.return_value = 2
        self.mock_service.clean_references.return_value = 31

        assert "Added 2 newline(s)" in self.registered_tools["ref_format_references"](note_id="A")
        assert "Removed 31 character(s)" in self.registered_tools["ref_clean_references"](note_id="A")

    def test_search_by_reference_tool(self):
        self.mock_service.search_by_reference.return_value = [
            Note(id="A", owner_id="default_user", content="First line\nsecond line"),
        ]

        result = self.registered_tools["ref_search_by_reference"](text="design")

        assert result.startswith("Found 1 note(s)")
        assert "- A: First line second line" in result

    def test_search_by_reference_no_results(self):
        self.mock_service.search_by_reference.return_value = []

        result = self.registered_tools["ref_search_by_reference"](text="nothing")

        assert result == "No notes found for reference text 'nothing'"

    def test_session_tools(self):
        self.mock_service.open_session.return_value = "abc123"
        self.mock_service.poll_events.return_value = [{"type": "NOTE_REFERENCES_UPDATED"}]
        self.mock_service.close_session.return_value = True

        opened = self.registered_tools["ref_open_session"](user_id="alice")
        events = json.loads(self.registered_tools["ref_poll_events"](session_id="abc123", user_id="alice"))
        closed = self.registered_tools["ref_close_session"](session_id="abc123")

        assert opened == "Session opened: abc123"
        assert events == [{"type": "NOTE_REFERENCES_UPDATED"}]
        assert closed == "Session abc123 closed"
        self.mock_service.open_session.assert_called_with("alice")
        self.mock_service.close_session.assert_called_with("default_user", "abc123")

    def test_close_session_for_user(self):
        self.mock_service.close_session.return_value = True

        self.registered_tools["ref_close_session"](session_id="abc123", user_id="alice")

        self.mock_service.close_session.assert_called_with("alice", "abc123")

    def test_poll_events_clamps_limit(self):
        self.mock_service.poll_events.return_value = []

        self.registered_tools["ref_poll_events"](session_id="s", max_events=10_000)
        self.mock_service.poll_events.assert_called_with(
            "default_user", "s", max_events=MAX_POLL_EVENTS
        )
        self.registered_tools["ref_poll_events"](session_id="s", max_events=0)
        self.mock_service.poll_events.assert_called_with("default_user", "s", max_events=1)

    def test_close_unknown_session(self):
        self.mock_service.close_session.return_value = False

        assert self.registered_tools["ref_close_session"](session_id="x") == "Session not found: x"

    def test_status_tool(self):
        self.mock_service.get_status.return_value = {
            "owner_id": "default_user",
            "note_count": 4,
            "reference_count": 3,
            "live_sessions": 1,
            "orphan_collector_running": True,
        }

        result = self.registered_tools["ref_status"]()

        assert "**Notes:** 4" in result
        assert "**References:** 3" in result
        assert "**Orphan collector:** running" in result
        assert "## Metrics" in result

    def test_error_handling(self):
        """Unexpected errors are reported with a reference ID only."""
        self.mock_service.delete_note.side_effect = RuntimeError("disk on fire")

        result = self.registered_tools["ref_delete_note"](note_id="A")

        assert result.startswith("Error: An unexpected error occurred (ref: ")
        assert "disk on fire" not in result
