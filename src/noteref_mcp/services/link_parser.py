"""Extraction of note references from free-text note content.

Three textual shapes are recognised, most specific first:

1. ``prefix> [text](url)``: a Markdown link introduced by leading text that
   ends in ``>``.
2. ``[text](url)``: a plain Markdown link. ``text`` may carry inline markup
   such as ``<u>...</u>``.
3. ``url``: a bare note URL.

Each shape is matched only against text no earlier shape has claimed, so a
character of input is attributed to at most one reference.
"""
import logging
import re
from typing import List, Optional, Tuple

from noteref_mcp.models.schema import ParsedReference, ReferenceShape

logger = logging.getLogger(__name__)

# scheme://host[:port]/note/{id}
NOTE_URL_PATTERN = (
    r"[A-Za-z][A-Za-z0-9+.\-]*://"
    r"[^\s/:?#()\[\]<>]+(?::\d+)?"
    r"/note/(?P<note_id>[A-Za-z0-9\-_.]+)"
)

_PREFIXED_LINK_RE = re.compile(
    r"(?<!\S)[^\s>]*>[ \t]*\[(?P<label>[^\]\n]*)\]\(" + NOTE_URL_PATTERN + r"\)"
)
_MARKDOWN_LINK_RE = re.compile(
    r"\[(?P<label>[^\]\n]*)\]\(" + NOTE_URL_PATTERN + r"\)"
)
_BARE_URL_RE = re.compile(NOTE_URL_PATTERN)

# Priority order matters: earlier shapes claim their spans first
_SHAPES = (
    (ReferenceShape.PREFIXED_LINK, _PREFIXED_LINK_RE),
    (ReferenceShape.MARKDOWN_LINK, _MARKDOWN_LINK_RE),
    (ReferenceShape.BARE_URL, _BARE_URL_RE),
)

# Reference opener that does not start its own line
_INLINE_REFERENCE_RE = re.compile(r"([^\n ])( *> *\[)")


def default_label(note_id: str) -> str:
    """Label used when a reference carries no link text."""
    return f"note {note_id}"


def _overlaps(start: int, end: int, claimed: List[Tuple[int, int]]) -> bool:
    return any(start < c_end and c_start < end for c_start, c_end in claimed)


def find_references(content: Optional[str]) -> List[ParsedReference]:
    """Find every reference-shaped span in ``content``, in document order.

    No deduplication or self-reference filtering happens here; see
    :func:`parse_references`.
    """
    if not content:
        return []

    claimed: List[Tuple[int, int]] = []
    found: List[ParsedReference] = []
    for shape, pattern in _SHAPES:
        for match in pattern.finditer(content):
            start, end = match.span()
            if _overlaps(start, end, claimed):
                continue
            claimed.append((start, end))

            note_id = match.group("note_id")
            label = ""
            if shape is not ReferenceShape.BARE_URL:
                label = match.group("label").strip()
            found.append(
                ParsedReference(
                    target_note_id=note_id,
                    label=label or default_label(note_id),
                    start=start,
                    end=end,
                    shape=shape,
                )
            )

    found.sort(key=lambda ref: ref.start)
    return found


def parse_references(
    content: Optional[str], source_note_id: Optional[str] = None
) -> List[ParsedReference]:
    """Parse the candidate reference targets of a note.

    Args:
        content: Raw note content. May contain markers from earlier passes;
            callers normally strip forward markers first.
        source_note_id: ID of the note being parsed. References to it are
            dropped.

    Returns:
        Candidates ordered by first occurrence, one per target note ID. When
        a target is linked several times the first occurrence (and its label)
        wins. Targets are not checked for existence.
    """
    seen = set()
    references: List[ParsedReference] = []
    for ref in find_references(content):
        if ref.target_note_id == source_note_id:
            continue
        if ref.target_note_id in seen:
            continue
        seen.add(ref.target_note_id)
        references.append(ref)

    if references:
        logger.debug(
            f"Parsed {len(references)} references from note {source_note_id}: "
            f"{[r.target_note_id for r in references]}"
        )
    return references


def format_reference_breaks(content: Optional[str]) -> Tuple[str, int]:
    """Move every ``> [`` reference opener onto its own line.

    Returns:
        Tuple of (new content, number of newlines inserted). Running the
        function on its own output inserts nothing.
    """
    if not content:
        return content or "", 0
    return _INLINE_REFERENCE_RE.subn(r"\1\n\2", content)
