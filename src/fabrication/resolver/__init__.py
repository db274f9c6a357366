"""Canonical-ID resolution for mirrored GitHub issues.

This module provides:
- Marker parsing and rendering (title ``[CID:<id>]``, body ``Canonical-ID:``)
- CanonicalIdResolver: read-only lookup of the issue mirroring a canonical ID
"""

from src.fabrication.resolver.markers import (
    BODY_MARKER_PREFIX,
    TITLE_MARKER_PREFIX,
    MatchedBy,
    effective_canonical_id,
    extract_body_marker,
    extract_title_marker,
    render_body_marker,
    render_title_marker,
)
from src.fabrication.resolver.resolver import CanonicalIdResolver, ResolverResult

__all__ = [
    "BODY_MARKER_PREFIX",
    "TITLE_MARKER_PREFIX",
    "CanonicalIdResolver",
    "MatchedBy",
    "ResolverResult",
    "effective_canonical_id",
    "extract_body_marker",
    "extract_title_marker",
    "render_body_marker",
    "render_title_marker",
]
