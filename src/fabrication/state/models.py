"""Canonical issue state models.

This module defines the data models for the canonical issue state machine:
- IssueState: Enum of all lifecycle states
- StateTransition: Audit record of an applied transition
- MirrorReference: Weak reference to the GitHub issue mirroring an issue
- Issue: Complete persisted state of an issue
- ISSUE_STATE_TRANSITIONS: Map defining allowed transitions

The module is pure: no I/O, no clock-dependent branching.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from src.fabrication.errors import IssueKilledError, TerminalIssueError


class IssueState(str, Enum):
    """Lifecycle states of a fabricated issue.

    Stage Flow:
        CREATED → SPEC_READY → IMPLEMENTING → VERIFIED → MERGE_READY → DONE

    Every non-terminal state can move to HOLD or KILLED. IMPLEMENTING,
    VERIFIED and MERGE_READY can step back one stage. HOLD can resume into
    any non-terminal state. DONE and KILLED are terminal and retained for
    audit.
    """

    CREATED = "CREATED"
    SPEC_READY = "SPEC_READY"
    IMPLEMENTING = "IMPLEMENTING"
    VERIFIED = "VERIFIED"
    MERGE_READY = "MERGE_READY"
    DONE = "DONE"
    HOLD = "HOLD"
    KILLED = "KILLED"


# Allowed transitions
#
# - DONE and KILLED have no outgoing transitions; nothing leaves KILLED
# - HOLD resumes into any non-terminal state, or is killed
ISSUE_STATE_TRANSITIONS: Dict[IssueState, List[IssueState]] = {
    IssueState.CREATED: [
        IssueState.SPEC_READY,
        IssueState.HOLD,
        IssueState.KILLED,
    ],
    IssueState.SPEC_READY: [
        IssueState.IMPLEMENTING,
        IssueState.HOLD,
        IssueState.KILLED,
    ],
    IssueState.IMPLEMENTING: [
        IssueState.VERIFIED,
        IssueState.SPEC_READY,
        IssueState.HOLD,
        IssueState.KILLED,
    ],
    IssueState.VERIFIED: [
        IssueState.MERGE_READY,
        IssueState.IMPLEMENTING,
        IssueState.HOLD,
        IssueState.KILLED,
    ],
    IssueState.MERGE_READY: [
        IssueState.DONE,
        IssueState.VERIFIED,
        IssueState.HOLD,
        IssueState.KILLED,
    ],
    IssueState.HOLD: [
        IssueState.CREATED,
        IssueState.SPEC_READY,
        IssueState.IMPLEMENTING,
        IssueState.VERIFIED,
        IssueState.MERGE_READY,
        IssueState.KILLED,
    ],
    IssueState.DONE: [],
    IssueState.KILLED: [],
}


_STATE_DESCRIPTIONS: Dict[IssueState, str] = {
    IssueState.CREATED: "Issue created, awaiting specification",
    IssueState.SPEC_READY: "Specification ready for implementation",
    IssueState.IMPLEMENTING: "Implementation in progress",
    IssueState.VERIFIED: "Implementation verified",
    IssueState.MERGE_READY: "Ready to merge",
    IssueState.DONE: "Completed successfully",
    IssueState.HOLD: "Work on hold",
    IssueState.KILLED: "Cancelled and retained for audit",
}


class StateTransition(BaseModel):
    """Audit record of an applied state transition.

    Attributes:
        from_state: The state before the transition.
        to_state: The state after the transition.
        actor: Who or what requested the transition.
        timestamp: When the transition was applied (UTC).
        details: Optional metadata (run ID, reason, policy).
    """

    from_state: IssueState
    to_state: IssueState
    actor: str = "system"
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    details: Dict[str, Any] = Field(default_factory=dict)


class MirrorReference(BaseModel):
    """Reference to the GitHub issue that mirrors an internal issue.

    This is a lookup relation, never ownership: it is re-resolved through
    the canonical-ID markers on significant operations.
    """

    owner: str = Field(..., min_length=1)
    repo: str = Field(..., min_length=1)
    artifact_id: int = Field(..., gt=0, description="GitHub issue number")
    artifact_url: str = Field(..., min_length=1)

    def same_artifact(self, other: "MirrorReference") -> bool:
        return (
            self.owner.lower() == other.owner.lower()
            and self.repo.lower() == other.repo.lower()
            and self.artifact_id == other.artifact_id
        )


class Issue(BaseModel):
    """Persisted state of an issue in the fabrication lifecycle.

    The version field is the optimistic-concurrency guard: every update
    increments it and persistence only succeeds when the stored version is
    the one the update was derived from.

    Attributes:
        id: Unique internal identifier.
        canonical_id: Stable, externally visible correlation key. Immutable.
        title: Human readable title used when creating the mirror.
        body: Description used when creating the mirror.
        owner: Repository owner when mirrored.
        repo: Repository name when mirrored.
        state: Current lifecycle state.
        mirror: External mirror reference, set at most once.
        state_history: Ordered audit trail of applied transitions.
        created_at: Creation time (UTC).
        updated_at: Last update time (UTC).
        version: Optimistic locking version.
    """

    id: str = Field(..., min_length=1)
    canonical_id: str = Field(..., min_length=1)
    title: str = ""
    body: str = ""
    owner: Optional[str] = None
    repo: Optional[str] = None
    state: IssueState = IssueState.CREATED
    mirror: Optional[MirrorReference] = None
    state_history: List[StateTransition] = Field(default_factory=list)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    version: int = Field(default=1, ge=1)

    @property
    def repository(self) -> Optional[str]:
        if self.owner and self.repo:
            return f"{self.owner}/{self.repo}"
        return None


def is_valid_issue_state(value: str) -> bool:
    """Check whether a raw string names a lifecycle state (case-sensitive)."""
    return value in {state.value for state in IssueState}


def validate_transition(from_state: IssueState, to_state: IssueState) -> bool:
    """Check if a transition is allowed by the transition table.

    Example:
        >>> validate_transition(IssueState.CREATED, IssueState.SPEC_READY)
        True
        >>> validate_transition(IssueState.KILLED, IssueState.HOLD)
        False
    """
    return to_state in ISSUE_STATE_TRANSITIONS.get(from_state, [])


def is_terminal_state(state: IssueState) -> bool:
    """Check if a state has no outgoing transitions (DONE, KILLED)."""
    return len(ISSUE_STATE_TRANSITIONS.get(state, [])) == 0


def is_active_state(state: IssueState) -> bool:
    """Check if work may be dispatched for an issue in this state.

    True for every non-terminal state except HOLD.
    """
    return not is_terminal_state(state) and state != IssueState.HOLD


def can_perform_action(state: IssueState) -> bool:
    """Check if actions are permitted at all (false for terminal states)."""
    return not is_terminal_state(state)


def ensure_not_killed(state: IssueState, **context: Any) -> None:
    """Reject any downstream action on a KILLED issue.

    Raises:
        IssueKilledError: If the state is KILLED.
    """
    if state == IssueState.KILLED:
        raise IssueKilledError(**context)


def ensure_not_terminal(state: IssueState, **context: Any) -> None:
    """Reject any action on an issue in a terminal state.

    Raises:
        IssueKilledError: If the state is KILLED.
        TerminalIssueError: If the state is DONE.
    """
    ensure_not_killed(state, **context)
    if is_terminal_state(state):
        raise TerminalIssueError(state, **context)


def get_issue_state_description(state: IssueState) -> str:
    """Return a short human readable description of a state."""
    return _STATE_DESCRIPTIONS[state]
