"""Tests for the ReferenceService facade over a real SQLite database."""
from unittest.mock import patch

import pytest

from noteref_mcp.exceptions import (
    NoteNotFoundError,
    NoteRefError,
    StorageError,
    ValidationError,
)
from noteref_mcp.services.markers import (
    BACKLINK_MARKER,
    FORWARD_MARKER,
    backlink_sources,
)
from tests.fakes import note_url

OWNER = "alice"


class TestNotes:
    def test_create_note_reconciles_content(self, reference_service):
        reference_service.create_note(OWNER, "target", note_id="B")
        note = reference_service.create_note(OWNER, f"see [b]({note_url('B')})", note_id="A")

        assert note.content == f"see {FORWARD_MARKER}[b]({note_url('B')})"
        refs = reference_service.get_references(OWNER, "B")
        assert [e.from_note_id for e in refs.incoming] == ["A"]
        assert backlink_sources(reference_service.get_note(OWNER, "B").content) == ["A"]

    def test_create_duplicate_id(self, reference_service):
        reference_service.create_note(OWNER, "", note_id="A")
        with pytest.raises(NoteRefError):
            reference_service.create_note(OWNER, "", note_id="A")

    def test_generated_ids(self, reference_service):
        first = reference_service.create_note(OWNER, "one")
        second = reference_service.create_note(OWNER, "two")
        assert first.id != second.id

    def test_get_note_other_owner(self, reference_service):
        reference_service.create_note(OWNER, "secret", note_id="A")
        with pytest.raises(NoteNotFoundError):
            reference_service.get_note("bob", "A")

    def test_save_missing_note(self, reference_service):
        with pytest.raises(NoteNotFoundError):
            reference_service.save_note(OWNER, "nope", "content")

    def test_delete_note_sweeps_edges(self, reference_service):
        reference_service.create_note(OWNER, "", note_id="B")
        reference_service.create_note(OWNER, note_url("B"), note_id="A")

        assert reference_service.delete_note(OWNER, "B") == 1
        assert reference_service.get_references(OWNER, "A").outgoing == []

    def test_delete_missing_note(self, reference_service):
        with pytest.raises(NoteNotFoundError):
            reference_service.delete_note(OWNER, "nope")


class TestReferenceProperties:
    """End-to-end reference behaviour through the service."""

    def test_save_twice_is_noop(self, reference_service):
        reference_service.create_note(OWNER, "", note_id="B")
        reference_service.create_note(OWNER, "", note_id="A")
        content = f"[b]({note_url('B')})"

        first = reference_service.save_note(OWNER, "A", content)
        b_content = reference_service.get_note(OWNER, "B").content
        second = reference_service.save_note(
            OWNER, "A", reference_service.get_note(OWNER, "A").content
        )

        assert first.created_edge_count == 1
        assert second.created_edge_count == 0
        assert second.annotated_target_count == 0
        assert second.affected_note_ids == ["A"]
        assert reference_service.get_note(OWNER, "B").content == b_content

    def test_two_sources_then_one_unlinks(self, reference_service):
        for note_id in ("A", "B", "C"):
            reference_service.create_note(OWNER, "", note_id=note_id)
        reference_service.save_note(OWNER, "A", note_url("B"))
        reference_service.save_note(OWNER, "C", note_url("B"))

        reference_service.save_note(OWNER, "A", "unlinked")

        b = reference_service.get_note(OWNER, "B")
        assert "C" in backlink_sources(b.content)
        assert [e.from_note_id for e in reference_service.get_references(OWNER, "B").incoming] == ["C"]

    def test_sweep_after_hard_delete(self, reference_service, note_repository):
        for note_id in ("A", "B"):
            reference_service.create_note(OWNER, "", note_id=note_id)
        reference_service.save_note(OWNER, "A", note_url("B"))

        # Bypass the service so no sweep runs on delete
        note_repository.delete("B", OWNER)

        assert reference_service.sweep_orphans(OWNER).deleted_count == 1
        assert reference_service.sweep_orphans(OWNER).deleted_count == 0


class TestReferenceOperations:
    def test_reconcile_does_not_write_source(self, reference_service):
        reference_service.create_note(OWNER, "stored", note_id="A")
        reference_service.create_note(OWNER, "", note_id="B")

        result = reference_service.reconcile(OWNER, "A", note_url("B"))

        assert result.created_edge_count == 1
        assert reference_service.get_note(OWNER, "A").content == "stored"

    def test_delete_reference(self, reference_service):
        reference_service.create_note(OWNER, "", note_id="B")
        reference_service.create_note(OWNER, note_url("B"), note_id="A")

        assert reference_service.delete_reference(OWNER, "A", "B") == 1
        assert reference_service.delete_reference(OWNER, "A", "B") == 0
        assert reference_service.get_references(OWNER, "A").outgoing == []

    def test_detect_markers(self, reference_service):
        reference_service.create_note(OWNER, "", note_id="B")
        reference_service.create_note(OWNER, "", note_id="C")
        reference_service.create_note(
            OWNER, f"{note_url('B')} {note_url('C')}", note_id="A"
        )

        source = reference_service.detect_markers(OWNER, "A")
        target = reference_service.detect_markers(OWNER, "B")

        assert (source.reference_count, source.backlink_count) == (2, 0)
        assert (target.reference_count, target.backlink_count) == (0, 1)
        assert target.has_backlinks

    def test_detect_markers_missing_note(self, reference_service):
        with pytest.raises(NoteNotFoundError):
            reference_service.detect_markers(OWNER, "nope")

    def test_format_references(self, reference_service):
        reference_service.create_note(OWNER, "intro> [x](u) more> [y](v)", note_id="A")

        assert reference_service.format_references(OWNER, "A") == 2
        assert reference_service.get_note(OWNER, "A").content == "intro\n> [x](u) more\n> [y](v)"
        assert reference_service.format_references(OWNER, "A") == 0

    def test_clean_references(self, reference_service):
        reference_service.create_note(OWNER, "body", note_id="B")
        reference_service.create_note(OWNER, note_url("B"), note_id="A")
        dirty = reference_service.get_note(OWNER, "B").content

        removed = reference_service.clean_references(OWNER, "B")

        assert removed == len(dirty) - len("body")
        b = reference_service.get_note(OWNER, "B")
        assert b.content == "body"
        assert BACKLINK_MARKER not in b.content

    def test_clean_then_resave_annotates_again(self, reference_service):
        reference_service.create_note(OWNER, "body", note_id="B")
        reference_service.create_note(OWNER, note_url("B"), note_id="A")
        reference_service.clean_references(OWNER, "B")

        result = reference_service.save_note(OWNER, "A", note_url("B"))

        assert result.annotated_target_count == 1
        assert backlink_sources(reference_service.get_note(OWNER, "B").content) == ["A"]

    def test_search_by_reference(self, reference_service):
        reference_service.create_note(OWNER, "", note_id="B")
        reference_service.create_note(OWNER, "", note_id="C")
        reference_service.create_note(OWNER, f"[Design doc]({note_url('B')})", note_id="A")
        reference_service.create_note(OWNER, f"[groceries]({note_url('A')})", note_id="C2")

        found = reference_service.search_by_reference(OWNER, "design")

        assert {n.id for n in found} == {"A", "B"}
        assert reference_service.search_by_reference(OWNER, "  ") == []


class TestNotifications:
    def test_save_publishes_to_live_sessions(self, reference_service):
        sid = reference_service.open_session(OWNER)
        other = reference_service.open_session("bob")
        reference_service.create_note(OWNER, "", note_id="B")
        reference_service.create_note(OWNER, "", note_id="A")
        reference_service.poll_events(OWNER, sid)

        reference_service.save_note(OWNER, "A", note_url("B"))

        events = reference_service.poll_events(OWNER, sid)
        assert events == [
            {
                "type": "NOTE_REFERENCES_UPDATED",
                "noteId": "A",
                "affectedNoteIds": ["A", "B"],
                "message": "References of note A updated",
            }
        ]
        assert reference_service.poll_events("bob", other) == []

    def test_save_without_sessions_succeeds(self, reference_service):
        reference_service.create_note(OWNER, "", note_id="A")
        result = reference_service.save_note(OWNER, "A", "text")
        assert result.affected_note_ids == ["A"]

    def test_status(self, reference_service):
        reference_service.create_note(OWNER, "", note_id="B")
        reference_service.create_note(OWNER, note_url("B"), note_id="A")
        reference_service.open_session(OWNER)

        status = reference_service.get_status(OWNER)

        assert status["note_count"] == 2
        assert status["reference_count"] == 1
        assert status["live_sessions"] == 1
        assert status["orphan_collector_running"] is False

    def test_close_session_checks_owner(self, reference_service):
        sid = reference_service.open_session(OWNER)

        with pytest.raises(ValidationError):
            reference_service.close_session("bob", sid)
        assert reference_service.get_status(OWNER)["live_sessions"] == 1
        assert reference_service.close_session(OWNER, sid)
        assert reference_service.get_status(OWNER)["live_sessions"] == 0


class TestFailureConsistency:
    def test_reconcile_unknown_source(self, reference_service):
        reference_service.create_note(OWNER, "target", note_id="B")

        with pytest.raises(NoteNotFoundError):
            reference_service.reconcile(OWNER, "ghost", note_url("B"))

        assert reference_service.get_references(OWNER, "B").incoming == []
        assert reference_service.get_note(OWNER, "B").content == "target"

    def test_save_with_failed_replace(self, reference_service):
        reference_service.create_note(OWNER, "", note_id="B")
        reference_service.create_note(OWNER, "", note_id="C")
        reference_service.create_note(OWNER, note_url("B"), note_id="A")
        stored = reference_service.get_note(OWNER, "A").content

        with patch.object(
            reference_service.reference_repository,
            "replace_outgoing_edges",
            side_effect=StorageError("disk full", operation="replace_outgoing_edges"),
        ):
            with pytest.raises(StorageError):
                reference_service.save_note(OWNER, "A", note_url("C"))

        assert reference_service.get_note(OWNER, "A").content == stored
        outgoing = reference_service.get_references(OWNER, "A").outgoing
        assert [e.to_note_id for e in outgoing] == ["B"]
        assert backlink_sources(reference_service.get_note(OWNER, "C").content) == []
