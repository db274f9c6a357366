"""Property-based tests for the canonical issue state machine.

Verifies that validate_transition agrees with the transition table for
every state pair, that terminal states reject every outgoing transition,
and that rejected transitions never mutate the stored issue.

Testing Configuration:
- Library: Hypothesis (Python)
- Minimum iterations: 100 per property test
"""

import asyncio
import itertools

import pytest
from hypothesis import given, settings, strategies as st

from src.fabrication.errors import (
    InvalidTransitionError,
    IssueKilledError,
    TerminalIssueError,
)
from src.fabrication.state import (
    ISSUE_STATE_TRANSITIONS,
    InMemoryIssueRepository,
    IssueState,
    IssueStateMachine,
    can_perform_action,
    ensure_not_terminal,
    is_terminal_state,
    is_valid_issue_state,
    validate_transition,
)


def run_async(coro):
    return asyncio.run(coro)


issue_states = st.sampled_from(list(IssueState))

ALL_PAIRS = list(itertools.product(list(IssueState), repeat=2))


# =============================================================================
# Transition table
# =============================================================================


class TestTransitionTable:
    """validate_transition is exactly the transition table."""

    @pytest.mark.parametrize("from_state,to_state", ALL_PAIRS)
    def test_validate_transition_matches_table(self, from_state, to_state):
        expected = to_state in ISSUE_STATE_TRANSITIONS[from_state]
        assert validate_transition(from_state, to_state) is expected

    @pytest.mark.parametrize("terminal", [IssueState.DONE, IssueState.KILLED])
    def test_terminal_states_reject_everything(self, terminal):
        for to_state in IssueState:
            assert validate_transition(terminal, to_state) is False
        assert is_terminal_state(terminal)
        assert not can_perform_action(terminal)

    def test_every_state_has_an_entry(self):
        assert set(ISSUE_STATE_TRANSITIONS) == set(IssueState)

    def test_every_non_terminal_state_can_be_killed_and_held(self):
        for state in IssueState:
            if is_terminal_state(state):
                continue
            assert validate_transition(state, IssueState.KILLED)
            if state != IssueState.HOLD:
                assert validate_transition(state, IssueState.HOLD)

    def test_no_self_transitions(self):
        for state in IssueState:
            assert not validate_transition(state, state)

    @given(st.text(max_size=20))
    @settings(max_examples=100)
    def test_is_valid_issue_state_only_accepts_exact_names(self, value):
        assert is_valid_issue_state(value) is (value in IssueState.__members__)

    def test_ensure_not_terminal_distinguishes_killed(self):
        with pytest.raises(IssueKilledError) as exc_info:
            ensure_not_terminal(IssueState.KILLED, canonical_id="I-1")
        assert "Re-activation requires explicit new intent" in str(exc_info.value)

        with pytest.raises(TerminalIssueError) as exc_info:
            ensure_not_terminal(IssueState.DONE)
        assert not isinstance(exc_info.value, IssueKilledError)


# =============================================================================
# State machine
# =============================================================================


async def _issue_in_state(machine: IssueStateMachine, target: IssueState):
    """Walk a fresh issue to ``target`` through valid transitions."""
    issue = await machine.create("I-prop", owner="acme", repo="widgets")
    paths = {
        IssueState.CREATED: [],
        IssueState.SPEC_READY: [IssueState.SPEC_READY],
        IssueState.IMPLEMENTING: [IssueState.SPEC_READY, IssueState.IMPLEMENTING],
        IssueState.VERIFIED: [
            IssueState.SPEC_READY,
            IssueState.IMPLEMENTING,
            IssueState.VERIFIED,
        ],
        IssueState.MERGE_READY: [
            IssueState.SPEC_READY,
            IssueState.IMPLEMENTING,
            IssueState.VERIFIED,
            IssueState.MERGE_READY,
        ],
        IssueState.DONE: [
            IssueState.SPEC_READY,
            IssueState.IMPLEMENTING,
            IssueState.VERIFIED,
            IssueState.MERGE_READY,
            IssueState.DONE,
        ],
        IssueState.HOLD: [IssueState.HOLD],
        IssueState.KILLED: [IssueState.KILLED],
    }
    for state in paths[target]:
        issue = await machine.transition(issue.id, state)
    return issue


class TestStateMachineProperties:
    """The machine applies exactly the allowed transitions."""

    @given(from_state=issue_states, to_state=issue_states)
    @settings(max_examples=100, deadline=None)
    def test_transition_applies_iff_allowed(self, from_state, to_state):
        async def scenario():
            machine = IssueStateMachine(InMemoryIssueRepository())
            issue = await _issue_in_state(machine, from_state)

            if validate_transition(from_state, to_state):
                updated = await machine.transition(issue.id, to_state, actor="prop")
                assert updated.state == to_state
                assert updated.version == issue.version + 1
                assert updated.state_history[-1].from_state == from_state
                assert updated.state_history[-1].to_state == to_state
                assert updated.state_history[-1].actor == "prop"
            else:
                with pytest.raises((InvalidTransitionError, TerminalIssueError)):
                    await machine.transition(issue.id, to_state)
                stored = await machine.get(issue.id)
                assert stored == issue

        run_async(scenario())

    @given(st.lists(issue_states, min_size=1, max_size=12))
    @settings(max_examples=100, deadline=None)
    def test_history_is_a_valid_chain(self, targets):
        async def scenario():
            machine = IssueStateMachine(InMemoryIssueRepository())
            issue = await machine.create("I-chain")
            for target in targets:
                try:
                    issue = await machine.transition(issue.id, target)
                except (InvalidTransitionError, TerminalIssueError):
                    continue

            stored = await machine.require(issue.id)
            previous = IssueState.CREATED
            for record in stored.state_history:
                assert record.from_state == previous
                assert validate_transition(record.from_state, record.to_state)
                previous = record.to_state
            assert stored.state == previous
            assert stored.version == len(stored.state_history) + 1

        run_async(scenario())
