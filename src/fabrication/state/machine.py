"""Canonical issue state machine.

This module implements the IssueStateMachine class that moves issues through
their lifecycle with transition validation, an audit trail of applied
transitions, and optimistic-concurrency persistence.

The state machine depends on an IssueRepository interface for persistence,
implemented in memory.py (tests, local development) and repository.py
(PostgreSQL).
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from src.fabrication.errors import (
    InputValidationError,
    InvalidTransitionError,
    IssueNotFoundError,
    MirrorReferenceConflictError,
    UnexpectedStateError,
    VersionConflictError,
)
from src.fabrication.state.models import (
    Issue,
    IssueState,
    MirrorReference,
    StateTransition,
    ensure_not_killed,
    validate_transition,
)


logger = logging.getLogger(__name__)


@runtime_checkable
class IssueRepository(Protocol):
    """Protocol defining the interface for issue persistence.

    The repository is responsible for:
    - Persisting issues and their transition history
    - Retrieving issues by internal ID, canonical ID or state
    - Compare-and-set updates keyed on the version field
    """

    async def save(self, issue: Issue) -> None:
        """Persist a new issue.

        Raises:
            DatabaseError: If an issue with the same ID or canonical ID exists.
        """
        ...

    async def get(self, issue_id: str) -> Optional[Issue]:
        ...

    async def get_by_canonical_id(self, canonical_id: str) -> Optional[Issue]:
        ...

    async def list_by_state(self, state: IssueState) -> List[Issue]:
        ...

    async def update_with_version(self, issue: Issue) -> bool:
        """Update an issue only if the stored version is ``issue.version - 1``.

        Returns:
            True if the update was applied, False on a version conflict.
        """
        ...


class IssueStateMachine:
    """State machine for the canonical issue lifecycle.

    Invariants enforced here:
    - Only transitions listed in ISSUE_STATE_TRANSITIONS are applied
    - A rejected transition never mutates the stored issue
    - Nothing leaves KILLED; every mutation of a KILLED issue is rejected
    - The canonical ID is never changed after creation
    - The mirror reference is set at most once to a single artifact
    - Each update increments the version and is persisted compare-and-set

    Example:
        >>> machine = IssueStateMachine(InMemoryIssueRepository())
        >>> issue = await machine.create("I-1", owner="acme", repo="widgets")
        >>> issue = await machine.transition(issue.id, IssueState.SPEC_READY)
    """

    def __init__(self, repository: IssueRepository):
        self.repository = repository

    async def create(
        self,
        canonical_id: str,
        title: str = "",
        body: str = "",
        owner: Optional[str] = None,
        repo: Optional[str] = None,
        issue_id: Optional[str] = None,
    ) -> Issue:
        """Create a new issue in the CREATED state.

        Raises:
            InputValidationError: If the canonical ID is blank, the repository
                coordinates are incomplete, or the canonical ID is taken.
            DatabaseError: If persistence fails.
        """
        if not canonical_id or not canonical_id.strip():
            raise InputValidationError("canonical_id cannot be empty")
        if bool(owner) != bool(repo):
            raise InputValidationError(
                "owner and repo must be provided together",
                canonical_id=canonical_id,
            )

        canonical_id = canonical_id.strip()
        existing = await self.repository.get_by_canonical_id(canonical_id)
        if existing is not None:
            raise InputValidationError(
                "canonical_id is already assigned to another issue",
                canonical_id=canonical_id,
                issue_id=existing.id,
            )

        now = datetime.now(timezone.utc)
        issue = Issue(
            id=issue_id or str(uuid.uuid4()),
            canonical_id=canonical_id,
            title=title,
            body=body,
            owner=owner,
            repo=repo,
            state=IssueState.CREATED,
            created_at=now,
            updated_at=now,
            version=1,
        )

        logger.info(
            "Creating issue",
            extra={
                "issue_id": issue.id,
                "canonical_id": canonical_id,
                "repository": issue.repository,
            },
        )

        await self.repository.save(issue)
        return issue

    async def transition(
        self,
        issue_id: str,
        to_state: IssueState,
        actor: str = "system",
        details: Optional[Dict[str, Any]] = None,
        expected_state: Optional[IssueState] = None,
    ) -> Issue:
        """Apply a validated transition to an issue.

        Args:
            issue_id: Internal issue identifier.
            to_state: Target state.
            actor: Who requested the transition (recorded in the audit trail).
            details: Optional metadata recorded with the transition.
            expected_state: When given, the transition only applies if the
                issue is still in this state.

        Returns:
            The updated issue.

        Raises:
            IssueNotFoundError: If the issue doesn't exist.
            UnexpectedStateError: If ``expected_state`` does not hold.
            InvalidTransitionError: If the transition table forbids the move.
            VersionConflictError: If a concurrent update won the race.
        """
        issue = await self.require(issue_id)
        from_state = issue.state

        if expected_state is not None and from_state != expected_state:
            raise UnexpectedStateError(
                expected_state,
                from_state,
                issue_id=issue_id,
                canonical_id=issue.canonical_id,
            )

        if not validate_transition(from_state, to_state):
            logger.warning(
                "Invalid state transition attempted",
                extra={
                    "issue_id": issue_id,
                    "from_state": from_state.value,
                    "to_state": to_state.value,
                    "actor": actor,
                },
            )
            raise InvalidTransitionError(
                from_state,
                to_state,
                issue_id=issue_id,
                canonical_id=issue.canonical_id,
            )

        now = datetime.now(timezone.utc)
        record = StateTransition(
            from_state=from_state,
            to_state=to_state,
            actor=actor,
            timestamp=now,
            details=details or {},
        )
        updated = issue.model_copy(
            update={
                "state": to_state,
                "state_history": issue.state_history + [record],
                "updated_at": now,
                "version": issue.version + 1,
            }
        )

        await self._persist(issue, updated)

        logger.info(
            "Issue transitioned",
            extra={
                "issue_id": issue_id,
                "canonical_id": issue.canonical_id,
                "from_state": from_state.value,
                "to_state": to_state.value,
                "actor": actor,
                "version": updated.version,
            },
        )
        return updated

    async def set_mirror_reference(
        self,
        issue_id: str,
        mirror: MirrorReference,
    ) -> Issue:
        """Record the GitHub issue mirroring an issue.

        Setting the same artifact again is a no-op.

        Raises:
            IssueNotFoundError: If the issue doesn't exist.
            IssueKilledError: If the issue is KILLED.
            MirrorReferenceConflictError: If a different artifact is recorded.
            VersionConflictError: If a concurrent update won the race.
        """
        issue = await self.require(issue_id)
        ensure_not_killed(
            issue.state, issue_id=issue_id, canonical_id=issue.canonical_id
        )

        if issue.mirror is not None:
            if issue.mirror.same_artifact(mirror):
                return issue
            raise MirrorReferenceConflictError(
                "Issue is already mirrored by a different artifact",
                issue_id=issue_id,
                canonical_id=issue.canonical_id,
                existing_artifact_id=issue.mirror.artifact_id,
                new_artifact_id=mirror.artifact_id,
            )

        updated = issue.model_copy(
            update={
                "mirror": mirror,
                "owner": issue.owner or mirror.owner,
                "repo": issue.repo or mirror.repo,
                "updated_at": datetime.now(timezone.utc),
                "version": issue.version + 1,
            }
        )
        await self._persist(issue, updated)

        logger.info(
            "Mirror reference recorded",
            extra={
                "issue_id": issue_id,
                "canonical_id": issue.canonical_id,
                "artifact_id": mirror.artifact_id,
            },
        )
        return updated

    async def get(self, issue_id: str) -> Optional[Issue]:
        return await self.repository.get(issue_id)

    async def require(self, issue_id: str) -> Issue:
        """Get an issue, raising IssueNotFoundError if it doesn't exist."""
        issue = await self.repository.get(issue_id)
        if issue is None:
            raise IssueNotFoundError(issue_id)
        return issue

    async def get_by_canonical_id(self, canonical_id: str) -> Optional[Issue]:
        return await self.repository.get_by_canonical_id(canonical_id)

    async def list_by_state(self, state: IssueState) -> List[Issue]:
        return await self.repository.list_by_state(state)

    async def _persist(self, current: Issue, updated: Issue) -> None:
        success = await self.repository.update_with_version(updated)
        if not success:
            logger.warning(
                "Version conflict while updating issue",
                extra={"issue_id": current.id, "version": current.version},
            )
            raise VersionConflictError(
                current.id,
                current.version,
                canonical_id=current.canonical_id,
            )
