"""Repository access policy consulted before every repository-scoped call."""

import logging
from typing import Iterable, Protocol, runtime_checkable

from src.fabrication.errors import AccessDeniedError, InputValidationError


logger = logging.getLogger(__name__)


@runtime_checkable
class RepoAccessPolicy(Protocol):
    """Decides whether the core may act on a repository."""

    def check(self, owner: str, repo: str) -> None:
        """Return normally if access is allowed.

        Raises:
            AccessDeniedError: If the repository is not allowed.
        """
        ...


class AllowAllRepoAccessPolicy:
    """Policy that allows every repository."""

    def check(self, owner: str, repo: str) -> None:
        return None


class AllowlistRepoAccessPolicy:
    """Allowlist of ``owner/repo`` entries and ``owner/*`` wildcards.

    Matching is case-insensitive, as GitHub owner and repository names are.
    An empty allowlist allows every repository.

    Example:
        >>> policy = AllowlistRepoAccessPolicy(["acme/widgets", "tools/*"])
        >>> policy.check("acme", "widgets")
        >>> policy.check("tools", "anything")
        >>> policy.check("acme", "gadgets")  # raises AccessDeniedError
    """

    def __init__(self, entries: Iterable[str]):
        self._repositories = set()
        self._owners = set()
        for entry in entries:
            entry = entry.strip().lower()
            if not entry:
                continue
            owner, sep, repo = entry.partition("/")
            if not sep or not owner or not repo:
                raise InputValidationError(
                    "Allowlist entries must be 'owner/repo' or 'owner/*'",
                    entry=entry,
                )
            if repo == "*":
                self._owners.add(owner)
            else:
                self._repositories.add(f"{owner}/{repo}")

    @property
    def allows_all(self) -> bool:
        return not self._repositories and not self._owners

    def is_allowed(self, owner: str, repo: str) -> bool:
        if self.allows_all:
            return True
        owner = owner.lower()
        return (
            owner in self._owners
            or f"{owner}/{repo.lower()}" in self._repositories
        )

    def check(self, owner: str, repo: str) -> None:
        if not self.is_allowed(owner, repo):
            logger.warning(
                "Repository access denied by allowlist",
                extra={"repository": f"{owner}/{repo}"},
            )
            raise AccessDeniedError(
                "Repository is not in the allowlist",
                repository=f"{owner}/{repo}",
            )
