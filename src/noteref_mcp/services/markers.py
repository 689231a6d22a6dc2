"""Invisible in-band markers for system-generated spans in note content.

Two zero-width characters are used:

* ``FORWARD_MARKER`` (U+200B) sits immediately before a recognised outgoing
  reference. It is cosmetic: nothing in the reference graph depends on it.
* ``BACKLINK_MARKER`` (U+200C) starts a generated backlink line of the form
  ``[Referenced by note {id}]`` appended to a referenced note.

Every function here is pure and idempotent. Whether a backlink has been
written is decided by the annotation side table, not by these markers.
"""
import re
from typing import Iterable, List, Optional

from noteref_mcp.models.schema import MarkerStats, ParsedReference

FORWARD_MARKER = "\u200b"
BACKLINK_MARKER = "\u200c"

BACKLINK_TEMPLATE = "[Referenced by note {note_id}]"

# A whole line holding a backlink annotation, with or without its marker
_BACKLINK_LINE_RE = re.compile(
    BACKLINK_MARKER + r"?\[Referenced by note (?P<note_id>[A-Za-z0-9\-_.]+)\][ \t]*"
)


def encode_forward_marker(text: str, start: int) -> str:
    """Insert the forward marker at ``start`` unless one is already there."""
    if start < 0 or start > len(text):
        raise ValueError(f"Offset {start} outside text of length {len(text)}")
    if start > 0 and text[start - 1] == FORWARD_MARKER:
        return text
    return text[:start] + FORWARD_MARKER + text[start:]


def apply_forward_markers(text: str, references: Iterable[ParsedReference]) -> str:
    """Mark every parsed reference span in ``text``.

    ``references`` must have been parsed from ``text`` itself so their
    offsets line up. Spans are marked right to left so earlier offsets stay
    valid while inserting.
    """
    for ref in sorted(references, key=lambda r: r.start, reverse=True):
        text = encode_forward_marker(text, ref.start)
    return text


def encode_backlink(source_note_id: str) -> str:
    """Build the annotation line naming ``source_note_id``."""
    return BACKLINK_MARKER + BACKLINK_TEMPLATE.format(note_id=source_note_id)


def append_backlink(content: Optional[str], source_note_id: str) -> str:
    """Append the backlink line for ``source_note_id`` on its own line.

    Content that already carries that line is returned unchanged.
    """
    content = content or ""
    if has_backlink(content, source_note_id):
        return content
    separator = "\n" if content and not content.endswith("\n") else ""
    return content + separator + encode_backlink(source_note_id)


def backlink_sources(content: Optional[str]) -> List[str]:
    """Source note IDs named by backlink lines in ``content``, in order."""
    sources = []
    for line in (content or "").split("\n"):
        match = _BACKLINK_LINE_RE.fullmatch(line)
        if match:
            sources.append(match.group("note_id"))
    return sources


def has_backlink(content: Optional[str], source_note_id: str) -> bool:
    """Whether ``content`` holds a backlink line for ``source_note_id``."""
    return source_note_id in backlink_sources(content)


def strip_forward_markers(text: Optional[str]) -> str:
    """Remove forward markers only; backlink lines are left alone."""
    return (text or "").replace(FORWARD_MARKER, "")


def strip_all_markers(text: Optional[str]) -> str:
    """Remove every marker and every backlink annotation line."""
    lines = (text or "").split("\n")
    kept = [line for line in lines if not _BACKLINK_LINE_RE.fullmatch(line)]
    return (
        "\n".join(kept)
        .replace(FORWARD_MARKER, "")
        .replace(BACKLINK_MARKER, "")
    )


def detect_markers(content: Optional[str]) -> MarkerStats:
    """Count marker occurrences in ``content``."""
    content = content or ""
    reference_count = content.count(FORWARD_MARKER)
    backlink_count = content.count(BACKLINK_MARKER)
    return MarkerStats(
        has_references=reference_count > 0,
        has_backlinks=backlink_count > 0,
        reference_count=reference_count,
        backlink_count=backlink_count,
        content_length=len(content),
    )
