"""SQLAlchemy database models for the NoteRef MCP server."""
import datetime
from typing import Optional

from sqlalchemy import (Column, DateTime, Index, Integer, String, Text,
                        UniqueConstraint, create_engine, event)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from noteref_mcp.config import config

Base = declarative_base()


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class DBNote(Base):
    """Database model for a note."""
    __tablename__ = "notes"
    id = Column(String(255), primary_key=True, index=True)
    user_id = Column(String(255), nullable=False, default="default_user", index=True)
    content = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Note(id='{self.id}', user='{self.user_id}')>"


class DBNoteReference(Base):
    """Database model for a directed reference between two notes.

    Endpoints are plain columns rather than foreign keys: notes can be
    destroyed by paths that never touch this table, and the orphan sweep
    is what repairs that drift.
    """
    __tablename__ = "note_references"
    id = Column(Integer, primary_key=True, autoincrement=True)
    from_note_id = Column(String(255), nullable=False, index=True)
    to_note_id = Column(String(255), nullable=False, index=True)
    reference_text = Column(Text, nullable=False)
    user_id = Column(String(255), nullable=False, index=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "from_note_id", "to_note_id", "reference_text",
            name="unique_note_reference",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<NoteReference(id={self.id}, from='{self.from_note_id}', "
            f"to='{self.to_note_id}', text='{self.reference_text}')>"
        )


class DBBacklinkAnnotation(Base):
    """Records that a backlink line for ``source_note_id`` was appended to
    ``target_note_id``. This row, not the content text, decides whether an
    annotation exists."""
    __tablename__ = "backlink_annotations"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False)
    target_note_id = Column(String(255), nullable=False)
    source_note_id = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "target_note_id", "source_note_id",
            name="unique_backlink_annotation",
        ),
        Index("ix_backlink_annotations_source", "user_id", "source_note_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<BacklinkAnnotation(target='{self.target_note_id}', "
            f"source='{self.source_note_id}')>"
        )


def init_db(db_url: Optional[str] = None) -> Engine:
    """Create the engine and schema.

    File databases get WAL journaling so readers never observe a
    half-applied edge replace; in-memory databases share one connection
    across threads via StaticPool.

    Args:
        db_url: SQLAlchemy URL. Defaults to ``config.get_db_url()``.

    Returns:
        The configured engine.
    """
    url = db_url or config.get_db_url()

    if ":memory:" in url:
        engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        # SQLite is single-writer, so a small pool is ideal
        engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Optional[Engine] = None):
    """Get a session factory for the database."""
    if engine is None:
        engine = init_db()
    return sessionmaker(bind=engine, expire_on_commit=False)
