"""Canonical-ID resolver.

Given repository coordinates and a canonical ID, determine whether a GitHub
issue already mirrors that ID. The resolver is read-only, deterministic and
never retries; retry policy belongs to the caller.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel

from src.fabrication.errors import FabricationError, InputValidationError
from src.fabrication.resolver.markers import MatchedBy, effective_canonical_id


logger = logging.getLogger(__name__)


class IssueSearchClient(Protocol):
    """The slice of GitHubClient the resolver depends on."""

    async def search_issues(
        self,
        owner: str,
        repo: str,
        term: str,
        per_page: int = 100,
    ) -> List[Dict[str, Any]]:
        ...


class ResolverResult(BaseModel):
    """Outcome of a resolve call.

    ``found`` is False for not-found; the artifact fields are then None.
    """

    found: bool
    canonical_id: str
    artifact_id: Optional[int] = None
    artifact_url: Optional[str] = None
    matched_by: Optional[MatchedBy] = None

    @classmethod
    def not_found(cls, canonical_id: str) -> "ResolverResult":
        return cls(found=False, canonical_id=canonical_id)


class CanonicalIdResolver:
    """Resolve a canonical ID to at most one mirrored GitHub issue.

    Example:
        >>> resolver = CanonicalIdResolver(github_client)
        >>> result = await resolver.resolve("acme", "widgets", "I-1")
        >>> result.found, result.artifact_id
        (True, 42)
    """

    def __init__(self, client: IssueSearchClient):
        self.client = client

    async def resolve(
        self,
        owner: str,
        repo: str,
        canonical_id: str,
    ) -> ResolverResult:
        """Find the GitHub issue carrying a canonical-ID marker.

        Among matching issues a body-marker match wins over a title-marker
        match; among equal matches the first in API order wins.

        Raises:
            InputValidationError: If the canonical ID or coordinates are
                blank (before any external call).
            AccessDeniedError: If the repository is not allowed.
            ExternalTransientError: On network, timeout or rate-limit errors.
            ExternalPermanentError: On other GitHub failures.
        """
        if not canonical_id or not canonical_id.strip():
            raise InputValidationError(
                "canonical_id cannot be empty",
                repository=f"{owner}/{repo}",
            )
        if not owner or not owner.strip() or not repo or not repo.strip():
            raise InputValidationError(
                "Repository owner and name are required",
                canonical_id=canonical_id,
            )

        canonical_id = canonical_id.strip()
        repository = f"{owner}/{repo}"

        try:
            items = await self.client.search_issues(owner, repo, canonical_id)
        except FabricationError as e:
            e.add_context(repository=repository, canonical_id=canonical_id)
            raise

        title_match: Optional[Dict[str, Any]] = None
        for item in items:
            if "pull_request" in item:
                continue

            declared = effective_canonical_id(item.get("title"), item.get("body"))
            if declared is None or declared[0] != canonical_id:
                continue

            if declared[1] == MatchedBy.BODY:
                return self._found(canonical_id, item, MatchedBy.BODY, repository)
            if title_match is None:
                title_match = item

        if title_match is not None:
            return self._found(canonical_id, title_match, MatchedBy.TITLE, repository)

        logger.info(
            "No mirror found for canonical ID",
            extra={
                "repository": repository,
                "canonical_id": canonical_id,
                "candidates": len(items),
            },
        )
        return ResolverResult.not_found(canonical_id)

    @staticmethod
    def _found(
        canonical_id: str,
        item: Dict[str, Any],
        matched_by: MatchedBy,
        repository: str,
    ) -> ResolverResult:
        logger.info(
            "Resolved mirror for canonical ID",
            extra={
                "repository": repository,
                "canonical_id": canonical_id,
                "artifact_id": item.get("number"),
                "matched_by": matched_by.value,
            },
        )
        return ResolverResult(
            found=True,
            canonical_id=canonical_id,
            artifact_id=item.get("number"),
            artifact_url=item.get("html_url"),
            matched_by=matched_by,
        )
