"""Canonical-ID marker parsing and rendering.

Two marker forms identify the canonical ID of a GitHub issue:
- Title marker: ``[CID:<id>] <title>`` at the start of the title
- Body marker: a line ``Canonical-ID: <id>`` on its own

Parsing is exact-format, not free-text inference. When an issue carries
both markers, the body marker is authoritative and the title marker is
ignored.

All functions are pure: no I/O, deterministic output.
"""

from enum import Enum
from typing import Optional, Tuple


TITLE_MARKER_PREFIX = "[CID:"
TITLE_MARKER_SUFFIX = "]"
BODY_MARKER_PREFIX = "Canonical-ID:"


class MatchedBy(str, Enum):
    """Which marker identified an issue."""

    BODY = "body"
    TITLE = "title"


def extract_title_marker(title: Optional[str]) -> Optional[str]:
    """Extract the canonical ID from a ``[CID:<id>] <title>`` title.

    Example:
        >>> extract_title_marker("[CID:CR-2026-01-01-001] Fix bug")
        'CR-2026-01-01-001'
        >>> extract_title_marker("Regular title") is None
        True
    """
    if not title:
        return None

    trimmed = title.strip()
    if not trimmed.startswith(TITLE_MARKER_PREFIX):
        return None

    closing = trimmed.find(TITLE_MARKER_SUFFIX, len(TITLE_MARKER_PREFIX))
    if closing == -1:
        return None

    canonical_id = trimmed[len(TITLE_MARKER_PREFIX):closing].strip()
    return canonical_id or None


def extract_body_marker(body: Optional[str]) -> Optional[str]:
    """Extract the canonical ID from the first ``Canonical-ID:`` line.

    Tolerates surrounding whitespace and both ``\\n`` and ``\\r\\n`` line
    endings. A marker line without a value is skipped.

    Example:
        >>> extract_body_marker("Description\\r\\n\\r\\nCanonical-ID: I-1  \\r\\n")
        'I-1'
    """
    if not body:
        return None

    for line in body.splitlines():
        trimmed = line.strip()
        if trimmed.startswith(BODY_MARKER_PREFIX):
            canonical_id = trimmed[len(BODY_MARKER_PREFIX):].strip()
            if canonical_id:
                return canonical_id
    return None


def effective_canonical_id(
    title: Optional[str],
    body: Optional[str],
) -> Optional[Tuple[str, MatchedBy]]:
    """Return the canonical ID an issue declares and the marker declaring it.

    The body marker takes precedence: an issue whose body says ``B`` and
    whose title says ``A`` is identified as ``B`` only.
    """
    body_id = extract_body_marker(body)
    if body_id is not None:
        return body_id, MatchedBy.BODY

    title_id = extract_title_marker(title)
    if title_id is not None:
        return title_id, MatchedBy.TITLE

    return None


def render_title_marker(canonical_id: str, title: str) -> str:
    """Build a title carrying the title marker.

    Example:
        >>> render_title_marker("I-1", "Add widget")
        '[CID:I-1] Add widget'
    """
    return f"{TITLE_MARKER_PREFIX}{canonical_id.strip()}{TITLE_MARKER_SUFFIX} {title.strip()}".rstrip()


def render_body_marker(canonical_id: str, body: str) -> str:
    """Build a body whose first line is the body marker."""
    marker = f"{BODY_MARKER_PREFIX} {canonical_id.strip()}"
    if not body or not body.strip():
        return marker
    return f"{marker}\n\n{body}"
