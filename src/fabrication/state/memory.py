"""In-memory issue repository for tests and local development."""

from typing import Dict, List, Optional

from src.fabrication.errors import DatabaseError
from src.fabrication.state.models import Issue, IssueState


class InMemoryIssueRepository:
    """Dictionary-backed implementation of the IssueRepository protocol.

    No method awaits between reading and writing, so each call is atomic
    with respect to other coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self._issues: Dict[str, Issue] = {}

    async def save(self, issue: Issue) -> None:
        if issue.id in self._issues:
            raise DatabaseError("Issue already exists", issue_id=issue.id)
        for existing in self._issues.values():
            if existing.canonical_id == issue.canonical_id:
                raise DatabaseError(
                    "Canonical ID already assigned",
                    canonical_id=issue.canonical_id,
                )
        self._issues[issue.id] = issue

    async def get(self, issue_id: str) -> Optional[Issue]:
        return self._issues.get(issue_id)

    async def get_by_canonical_id(self, canonical_id: str) -> Optional[Issue]:
        for issue in self._issues.values():
            if issue.canonical_id == canonical_id:
                return issue
        return None

    async def list_by_state(self, state: IssueState) -> List[Issue]:
        return [issue for issue in self._issues.values() if issue.state == state]

    async def update_with_version(self, issue: Issue) -> bool:
        existing = self._issues.get(issue.id)
        if existing is None or existing.version != issue.version - 1:
            return False
        self._issues[issue.id] = issue
        return True

    async def health_check(self) -> bool:
        return True

    def clear(self) -> None:
        self._issues.clear()
