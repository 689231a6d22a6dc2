"""Common test fixtures for the NoteRef MCP server."""

import pytest

from noteref_mcp.config import config
from noteref_mcp.models.db_models import get_session_factory, init_db
from noteref_mcp.observability import metrics
from noteref_mcp.services.notifier import InMemorySessionRegistry
from noteref_mcp.services.reference_service import ReferenceService
from noteref_mcp.storage.note_repository import NoteRepository
from noteref_mcp.storage.reference_repository import ReferenceRepository
from tests.fakes import FakeNoteStore, RecordingSessionRegistry


@pytest.fixture
def test_config(tmp_path, monkeypatch):
    """Point config at a temporary database (auto-restored even on crash)."""
    database_path = tmp_path / "db" / "test_noteref.db"
    monkeypatch.setattr(config, "base_dir", tmp_path)
    monkeypatch.setattr(config, "database_path", database_path)
    monkeypatch.setattr(config, "in_memory_db", False)
    monkeypatch.setattr(config, "orphan_sweep_interval", 0)
    yield config


@pytest.fixture
def db_engine(test_config):
    """File-backed engine; threads get their own connections."""
    engine = init_db(test_config.get_db_url())
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory(db_engine)


@pytest.fixture
def note_repository(db_engine, session_factory):
    """Create a test note repository."""
    yield NoteRepository(engine=db_engine, session_factory=session_factory)


@pytest.fixture
def reference_repository(session_factory):
    """Create a test reference repository."""
    yield ReferenceRepository(session_factory)


@pytest.fixture
def session_registry():
    return InMemorySessionRegistry(max_queue_size=16)


@pytest.fixture
def reference_service(db_engine, note_repository, reference_repository, session_registry):
    """Create a test ReferenceService over the temporary database."""
    service = ReferenceService(
        engine=db_engine,
        note_repository=note_repository,
        reference_repository=reference_repository,
        registry=session_registry,
        mark_forward_references=True,
    )
    yield service
    service.shutdown()


@pytest.fixture
def fake_notes():
    """In-memory note store for engine tests."""
    return FakeNoteStore()


@pytest.fixture
def recording_registry():
    return RecordingSessionRegistry()


@pytest.fixture
def clean_metrics():
    """Reset the global metrics collector around a test."""
    metrics.reset()
    yield metrics
    metrics.reset()
