"""Configuration module for the NoteRef MCP server."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from noteref_mcp import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config: survives reinstalls, lives alongside the database
_USER_ENV = Path.home() / ".noteref" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

# Upper bound for a single session's pending event queue
_MAX_SESSION_QUEUE_SIZE = 10_000


def _env_flag(name: str, default: str) -> bool:
    """Read a boolean environment flag ("true", "1", "yes" are truthy)."""
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class NoteRefConfig(BaseModel):
    """Configuration for the NoteRef server."""

    # Base directory for the project
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEREF_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTEREF_DATABASE_PATH", "data/db/noteref.db")
        )
    )
    # When True, uses in-memory SQLite (useful for throwaway sessions and tests).
    in_memory_db: bool = Field(
        default_factory=lambda: _env_flag("NOTEREF_IN_MEMORY_DB", "false")
    )
    # Owner used by tools that are called without an explicit user_id.
    default_user_id: str = Field(
        default_factory=lambda: os.getenv("NOTEREF_DEFAULT_USER", "default_user")
    )
    # Server configuration
    server_name: str = Field(default=os.getenv("NOTEREF_SERVER_NAME", "noteref-mcp"))
    server_version: str = Field(default=__version__)
    log_level: str = Field(
        default_factory=lambda: os.getenv("NOTEREF_LOG_LEVEL", "INFO").upper()
    )
    # Seconds between background orphan sweeps; 0 disables the scheduler.
    orphan_sweep_interval: int = Field(
        default_factory=lambda: int(os.getenv("NOTEREF_ORPHAN_SWEEP_INTERVAL", "0"))
    )
    # Pending realtime events kept per live session before new ones are dropped
    session_queue_size: int = Field(
        default_factory=lambda: int(os.getenv("NOTEREF_SESSION_QUEUE_SIZE", "256"))
    )
    # Seconds a live session may go unpolled before it is forgotten; 0 keeps it
    session_idle_timeout: int = Field(
        default_factory=lambda: int(os.getenv("NOTEREF_SESSION_IDLE_TIMEOUT", "3600"))
    )
    # Insert invisible forward markers before recognised links on save
    mark_forward_references: bool = Field(
        default_factory=lambda: _env_flag("NOTEREF_MARK_FORWARD_REFERENCES", "true")
    )

    @model_validator(mode="after")
    def _validate_limits(self) -> "NoteRefConfig":
        """Validate numeric settings."""
        if self.orphan_sweep_interval < 0:
            raise ValueError("orphan_sweep_interval must be >= 0")
        if self.session_idle_timeout < 0:
            raise ValueError("session_idle_timeout must be >= 0")
        if self.session_queue_size < 1:
            raise ValueError("session_queue_size must be >= 1")
        if self.session_queue_size > _MAX_SESSION_QUEUE_SIZE:
            logger.warning(
                "session_queue_size=%d is unusually large; slow clients will "
                "hold up to that many events in memory.",
                self.session_queue_size,
            )
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {self.log_level}")
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        if self.in_memory_db:
            return "sqlite:///:memory:"
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"

    def resolve_user(self, user_id: Optional[str]) -> str:
        """Return user_id, falling back to the configured default owner."""
        if user_id is None or not str(user_id).strip():
            return self.default_user_id
        return str(user_id).strip()


# Create a global config instance
config = NoteRefConfig()
