"""Utility functions for the NoteRef MCP server."""
import threading
import weakref
from contextlib import contextmanager
from typing import Hashable, Iterator


def escape_like_pattern(value: str) -> str:
    """Escape SQL LIKE wildcards to treat them as literals.

    Prevents SQL LIKE pattern injection where user input containing
    '%' or '_' could match unintended patterns.

    Args:
        value: User input string that may contain LIKE wildcards

    Returns:
        String with '%', '_', and '\\' escaped for use with ``escape="\\\\"``

    Example:
        >>> escape_like_pattern("100% done")
        '100\\\\% done'
    """
    escape_table = str.maketrans(
        {
            "\\": "\\\\",  # Escape backslash first
            "%": "\\%",
            "_": "\\_",
        }
    )
    return value.translate(escape_table)


class KeyedLock:
    """Per-key reentrant locks, e.g. one per ``(owner_id, note_id)``.

    Locks live in a WeakValueDictionary so they are garbage collected once
    no thread holds or waits on them. Different keys never contend.
    """

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[Hashable, threading.RLock]" = (
            weakref.WeakValueDictionary()
        )
        self._registry_lock = threading.Lock()  # Protects _locks access

    def get(self, key: Hashable) -> threading.RLock:
        """Get or create the lock for ``key``."""
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        # Keep a strong reference while held so the entry is not collected
        lock = self.get(key)
        with lock:
            yield

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)
