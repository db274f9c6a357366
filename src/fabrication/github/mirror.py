"""Mirror creation for canonical issues.

GitHubMirrorPublisher creates the GitHub issue that mirrors an internal
issue, with both canonical-ID markers embedded so the resolver can find it
again. Callers resolve first and create only on not-found.
"""

import logging
from typing import Any, Dict, Protocol

from src.fabrication.errors import ExternalPermanentError, InputValidationError
from src.fabrication.resolver.markers import render_body_marker, render_title_marker
from src.fabrication.state.models import Issue, MirrorReference


logger = logging.getLogger(__name__)


class IssueCreateClient(Protocol):
    async def create_issue(
        self,
        owner: str,
        repo: str,
        title: str,
        body: str,
    ) -> Dict[str, Any]:
        ...


class GitHubMirrorPublisher:
    """Create marker-carrying GitHub issues for canonical issues."""

    def __init__(self, client: IssueCreateClient):
        self.client = client

    async def create_mirror(self, issue: Issue) -> MirrorReference:
        """Create the GitHub issue mirroring ``issue``.

        Raises:
            InputValidationError: If the issue has no repository coordinates.
            AccessDeniedError: If the repository is not allowed.
            ExternalPermanentError: If GitHub answers without an issue number.
        """
        if not issue.owner or not issue.repo:
            raise InputValidationError(
                "Issue has no repository coordinates",
                issue_id=issue.id,
                canonical_id=issue.canonical_id,
            )

        title = render_title_marker(issue.canonical_id, issue.title or issue.canonical_id)
        body = render_body_marker(issue.canonical_id, issue.body)

        created = await self.client.create_issue(issue.owner, issue.repo, title, body)

        number = created.get("number")
        url = created.get("html_url")
        if not isinstance(number, int) or number <= 0 or not url:
            raise ExternalPermanentError(
                "GitHub issue creation returned no issue number",
                repository=issue.repository,
                canonical_id=issue.canonical_id,
            )

        logger.info(
            "Created mirror issue",
            extra={
                "issue_id": issue.id,
                "canonical_id": issue.canonical_id,
                "repository": issue.repository,
                "artifact_id": number,
            },
        )
        return MirrorReference(
            owner=issue.owner,
            repo=issue.repo,
            artifact_id=number,
            artifact_url=url,
        )
