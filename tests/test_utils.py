"""Tests for utility helpers."""
import threading

from noteref_mcp.utils import KeyedLock, escape_like_pattern


class TestEscapeLikePattern:
    def test_plain_text_unchanged(self):
        assert escape_like_pattern("design doc") == "design doc"

    def test_wildcards_escaped(self):
        assert escape_like_pattern("100%_done") == "100\\%\\_done"

    def test_backslash_escaped_first(self):
        assert escape_like_pattern("a\\%") == "a\\\\\\%"


class TestKeyedLock:
    def test_same_key_same_lock(self):
        locks = KeyedLock()
        first = locks.get(("alice", "A"))
        assert locks.get(("alice", "A")) is first
        assert locks.get(("alice", "B")) is not first

    def test_reentrant(self):
        locks = KeyedLock()
        with locks.hold("A"):
            with locks.hold("A"):
                pass

    def test_released_locks_are_dropped(self):
        locks = KeyedLock()
        with locks.hold("A"):
            assert len(locks) == 1
        assert len(locks) == 0

    def test_same_key_serializes(self):
        locks = KeyedLock()
        inside = threading.Event()
        release = threading.Event()
        entered = []

        def holder():
            with locks.hold("A"):
                inside.set()
                release.wait(5)

        def waiter():
            with locks.hold("A"):
                entered.append("A")

        first = threading.Thread(target=holder)
        first.start()
        inside.wait(5)
        second = threading.Thread(target=waiter)
        second.start()
        second.join(0.1)
        assert entered == []

        release.set()
        first.join(5)
        second.join(5)
        assert entered == ["A"]

    def test_different_keys_do_not_contend(self):
        locks = KeyedLock()
        done = threading.Event()

        def other_key():
            with locks.hold("B"):
                done.set()

        with locks.hold("A"):
            thread = threading.Thread(target=other_key)
            thread.start()
            assert done.wait(5)
        thread.join(5)
