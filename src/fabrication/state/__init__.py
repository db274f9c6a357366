"""Canonical issue state machine and persistence.

This module manages issue progression through the lifecycle:
- CREATED → SPEC_READY → IMPLEMENTING → VERIFIED → MERGE_READY → DONE
- HOLD and KILLED reachable from every non-terminal state

State is persisted with optimistic locking for concurrent update protection.
"""

from src.fabrication.state.models import (
    ISSUE_STATE_TRANSITIONS,
    Issue,
    IssueState,
    MirrorReference,
    StateTransition,
    can_perform_action,
    ensure_not_killed,
    ensure_not_terminal,
    get_issue_state_description,
    is_active_state,
    is_terminal_state,
    is_valid_issue_state,
    validate_transition,
)
from src.fabrication.state.machine import IssueRepository, IssueStateMachine
from src.fabrication.state.memory import InMemoryIssueRepository

__all__ = [
    # Models
    "ISSUE_STATE_TRANSITIONS",
    "Issue",
    "IssueState",
    "MirrorReference",
    "StateTransition",
    "can_perform_action",
    "ensure_not_killed",
    "ensure_not_terminal",
    "get_issue_state_description",
    "is_active_state",
    "is_terminal_state",
    "is_valid_issue_state",
    "validate_transition",
    # State machine
    "IssueRepository",
    "IssueStateMachine",
    "InMemoryIssueRepository",
]
