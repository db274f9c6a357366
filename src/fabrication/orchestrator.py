"""Fabrication orchestrator connecting the state machine, resolver and runs.

A transition into IMPLEMENTING drives two side effects after the state
machine has accepted it:
1. Resolve-or-create the GitHub mirror of the issue (always re-resolved
   through the canonical-ID markers, never trusted from cache alone)
2. Dispatch the implementation workflow keyed by the issue's canonical ID

Run status flows back the other way: once a poll observes a terminal run,
the run is ingested and its outcome is proposed as a transition
(SUCCEEDED → VERIFIED; FAILED or CANCELLED → HOLD, or no change, per the
failure policy). The proposal goes through the state machine with
IMPLEMENTING as the expected current state, so the transition table is
never bypassed. Each run outcome is claimed on its ledger record before it
is proposed, so polling an already applied run again (for example after the
issue resumed from HOLD) changes nothing. A claim whose proposal was refused
because the issue had left IMPLEMENTING is handed back.

The orchestrator holds no shared mutable state across external calls;
idempotency lives in the run ledger and the issue repository.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel

from src.fabrication.config import FabricationSettings
from src.fabrication.errors import (
    FabricationError,
    InputValidationError,
    IssueNotActiveError,
    RunRecordNotFoundError,
    RunWaitTimeoutError,
    UnexpectedStateError,
    VersionConflictError,
)
from src.fabrication.events.emitter import EventEmitter
from src.fabrication.events.models import EventType, FabricationEvent
from src.fabrication.github.mirror import GitHubMirrorPublisher
from src.fabrication.resolver.resolver import CanonicalIdResolver
from src.fabrication.runs.adapter import RunAdapter
from src.fabrication.runs.models import (
    DispatchResult,
    DispatchState,
    IngestResult,
    PollResult,
    RunRecord,
    RunStatus,
)
from src.fabrication.state.machine import IssueStateMachine
from src.fabrication.state.models import (
    Issue,
    IssueState,
    MirrorReference,
    ensure_not_killed,
    ensure_not_terminal,
    is_active_state,
)


logger = logging.getLogger(__name__)


# Attempts to apply a run outcome when concurrent updates conflict
MAX_OUTCOME_ATTEMPTS = 3


class FailurePolicy(str, Enum):
    """What a FAILED or CANCELLED run proposes for its issue."""

    HOLD = "hold"
    STAY = "stay"


class MirrorOutcome(BaseModel):
    """Result of resolving or creating an issue's GitHub mirror."""

    mirror: MirrorReference
    created: bool = False
    matched_by: Optional[str] = None


class TransitionOutcome(BaseModel):
    """Result of transition_issue, with the side effects it drove."""

    issue: Issue
    mirror: Optional[MirrorOutcome] = None
    dispatch: Optional[DispatchResult] = None


class RunSyncResult(BaseModel):
    """Result of folding one run's status back into its issue."""

    poll: PollResult
    ingest: Optional[IngestResult] = None
    issue: Optional[Issue] = None
    applied_state: Optional[IssueState] = None


class FabricationOrchestrator:
    """Orchestrates issue transitions, mirrors and workflow runs.

    Attributes:
        state_machine: Validates and persists issue transitions.
        resolver: Finds the GitHub issue mirroring a canonical ID.
        mirror_publisher: Creates the mirror when none exists.
        run_adapter: Dispatches, polls and ingests workflow runs.
        event_emitter: Emits orchestration events for observability.
        workflow_id: Workflow dispatched on IMPLEMENTING.
        ref: Git ref the workflow is dispatched on.
        failure_policy: Outcome proposed for FAILED or CANCELLED runs.
        poll_interval: Delay between polls in wait_for_run, in seconds.
        poll_timeout: Overall wait_for_run timeout, in seconds.
    """

    def __init__(
        self,
        state_machine: IssueStateMachine,
        resolver: CanonicalIdResolver,
        mirror_publisher: GitHubMirrorPublisher,
        run_adapter: RunAdapter,
        event_emitter: EventEmitter,
        workflow_id: str = "ci.yml",
        ref: str = "main",
        failure_policy: FailurePolicy = FailurePolicy.HOLD,
        poll_interval: float = 15.0,
        poll_timeout: float = 3600.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.state_machine = state_machine
        self.resolver = resolver
        self.mirror_publisher = mirror_publisher
        self.run_adapter = run_adapter
        self.event_emitter = event_emitter
        self.workflow_id = workflow_id
        self.ref = ref
        self.failure_policy = FailurePolicy(failure_policy)
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: FabricationSettings,
        state_machine: IssueStateMachine,
        resolver: CanonicalIdResolver,
        mirror_publisher: GitHubMirrorPublisher,
        run_adapter: RunAdapter,
        event_emitter: EventEmitter,
    ) -> "FabricationOrchestrator":
        return cls(
            state_machine=state_machine,
            resolver=resolver,
            mirror_publisher=mirror_publisher,
            run_adapter=run_adapter,
            event_emitter=event_emitter,
            workflow_id=settings.default_workflow_id,
            ref=settings.default_ref,
            failure_policy=FailurePolicy(settings.failure_policy),
            poll_interval=settings.poll_interval_seconds,
            poll_timeout=settings.poll_timeout_seconds,
        )

    # -------------------------------------------------------------------------
    # Issues
    # -------------------------------------------------------------------------

    async def create_issue(
        self,
        canonical_id: str,
        title: str = "",
        body: str = "",
        owner: Optional[str] = None,
        repo: Optional[str] = None,
    ) -> Issue:
        issue = await self.state_machine.create(
            canonical_id, title=title, body=body, owner=owner, repo=repo
        )
        await self._emit(
            EventType.STATE_TRANSITION,
            issue,
            {"from_state": None, "to_state": issue.state.value, "actor": "system"},
        )
        return issue

    async def get_issue(self, issue_id: str) -> Issue:
        return await self.state_machine.require(issue_id)

    async def transition_issue(
        self,
        issue_id: str,
        to_state: IssueState,
        actor: str = "system",
        details: Optional[Dict[str, Any]] = None,
        expected_state: Optional[IssueState] = None,
        workflow_id: Optional[str] = None,
        ref: Optional[str] = None,
        inputs: Optional[Dict[str, Any]] = None,
    ) -> TransitionOutcome:
        """Apply a transition and drive the side effects it authorizes.

        Entering IMPLEMENTING resolves-or-creates the mirror and dispatches
        the workflow. The transition is committed first; a failed side
        effect leaves the issue in IMPLEMENTING and can be retried with
        dispatch_for_issue, which is idempotent.

        Raises:
            IssueNotFoundError: If the issue doesn't exist.
            IssueKilledError: If the issue is KILLED.
            InputValidationError: If IMPLEMENTING is requested for an issue
                without repository coordinates.
            InvalidTransitionError: If the transition table forbids the move.
            UnexpectedStateError: If ``expected_state`` does not hold.
            VersionConflictError: If a concurrent update won the race.
            FabricationError: Any mirror or dispatch failure, after the
                transition was applied.
        """
        issue = await self.state_machine.require(issue_id)
        context = {"issue_id": issue_id, "canonical_id": issue.canonical_id}
        ensure_not_killed(issue.state, **context)

        if to_state == IssueState.IMPLEMENTING and issue.repository is None:
            raise InputValidationError(
                "Issue needs repository coordinates before IMPLEMENTING",
                **context,
            )

        from_state = issue.state
        issue = await self.state_machine.transition(
            issue_id,
            to_state,
            actor=actor,
            details=details,
            expected_state=expected_state,
        )
        await self._emit(
            EventType.STATE_TRANSITION,
            issue,
            {"from_state": from_state.value, "to_state": to_state.value, "actor": actor},
        )

        outcome = TransitionOutcome(issue=issue)
        if to_state != IssueState.IMPLEMENTING:
            return outcome

        mirror = await self._guard("mirror", issue, self.ensure_mirror(issue_id))
        dispatch = await self._guard(
            "dispatch",
            issue,
            self.dispatch_for_issue(issue_id, workflow_id=workflow_id, ref=ref, inputs=inputs),
        )
        outcome.issue = await self.state_machine.require(issue_id)
        outcome.mirror = mirror
        outcome.dispatch = dispatch
        return outcome

    async def ensure_mirror(self, issue_id: str) -> MirrorOutcome:
        """Re-resolve the issue's GitHub mirror, creating it if none exists.

        A found mirror is recorded on the issue. When the resolver finds
        nothing but the issue already records a mirror, the recorded mirror
        is kept; search indexing lags issue creation, and creating a second
        artifact would break the one-mirror invariant.

        Raises:
            IssueKilledError: If the issue is KILLED.
            InputValidationError: If the issue has no repository coordinates.
            MirrorReferenceConflictError: If the resolved mirror differs from
                the recorded one.
        """
        issue = await self.state_machine.require(issue_id)
        ensure_not_killed(issue.state, issue_id=issue_id, canonical_id=issue.canonical_id)
        if issue.owner is None or issue.repo is None:
            raise InputValidationError(
                "Issue has no repository coordinates",
                issue_id=issue_id,
                canonical_id=issue.canonical_id,
            )

        resolved = await self.resolver.resolve(issue.owner, issue.repo, issue.canonical_id)

        if resolved.found:
            mirror = MirrorReference(
                owner=issue.owner,
                repo=issue.repo,
                artifact_id=resolved.artifact_id,
                artifact_url=resolved.artifact_url or "",
            )
            outcome = MirrorOutcome(
                mirror=mirror,
                matched_by=resolved.matched_by.value if resolved.matched_by else None,
            )
        elif issue.mirror is not None:
            logger.warning(
                "Recorded mirror not found by search; keeping recorded reference",
                extra={
                    "issue_id": issue_id,
                    "canonical_id": issue.canonical_id,
                    "artifact_id": issue.mirror.artifact_id,
                },
            )
            return MirrorOutcome(mirror=issue.mirror)
        else:
            mirror = await self.mirror_publisher.create_mirror(issue)
            outcome = MirrorOutcome(mirror=mirror, created=True)

        issue = await self.state_machine.set_mirror_reference(issue_id, mirror)
        await self._emit(
            EventType.MIRROR_RESOLVED,
            issue,
            {
                "artifact_id": mirror.artifact_id,
                "artifact_url": mirror.artifact_url,
                "matched_by": outcome.matched_by,
                "created": outcome.created,
            },
        )
        return outcome

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    async def dispatch_for_issue(
        self,
        issue_id: str,
        workflow_id: Optional[str] = None,
        ref: Optional[str] = None,
        inputs: Optional[Dict[str, Any]] = None,
    ) -> DispatchResult:
        """Dispatch the workflow for an active issue, keyed by its canonical ID.

        Raises:
            IssueKilledError: If the issue is KILLED.
            TerminalIssueError: If the issue is DONE.
            IssueNotActiveError: If the issue is on HOLD.
            InputValidationError: If the issue has no repository coordinates.
        """
        issue = await self.state_machine.require(issue_id)
        self._ensure_dispatchable(issue)
        if issue.owner is None or issue.repo is None:
            raise InputValidationError(
                "Issue has no repository coordinates",
                issue_id=issue_id,
                canonical_id=issue.canonical_id,
            )

        workflow_id = workflow_id or self.workflow_id
        result = await self.run_adapter.dispatch(
            issue.owner,
            issue.repo,
            workflow_id,
            ref or self.ref,
            correlation_key=issue.canonical_id,
            inputs=inputs,
        )
        await self._emit_dispatched(issue, workflow_id, result)
        return result

    async def dispatch_run(
        self,
        owner: str,
        repo: str,
        workflow_id: str,
        ref: str,
        correlation_key: str,
        inputs: Optional[Dict[str, Any]] = None,
    ) -> DispatchResult:
        """Dispatch a workflow under an explicit correlation key.

        A key naming a known issue gets the same guards as
        dispatch_for_issue, so no workflow is started for an issue that is
        KILLED, DONE or on HOLD.

        Raises:
            IssueKilledError: If the key names a KILLED issue.
            TerminalIssueError: If the key names a DONE issue.
            IssueNotActiveError: If the key names an issue on HOLD.
        """
        issue = await self.state_machine.get_by_canonical_id((correlation_key or "").strip())
        if issue is not None:
            self._ensure_dispatchable(issue)

        result = await self.run_adapter.dispatch(
            owner,
            repo,
            workflow_id,
            ref,
            correlation_key=correlation_key,
            inputs=inputs,
        )
        if issue is not None:
            await self._emit_dispatched(issue, workflow_id, result)
        return result

    @staticmethod
    def _ensure_dispatchable(issue: Issue) -> None:
        context = {"issue_id": issue.id, "canonical_id": issue.canonical_id}
        ensure_not_terminal(issue.state, **context)
        if not is_active_state(issue.state):
            raise IssueNotActiveError(issue.state, **context)

    async def _emit_dispatched(
        self,
        issue: Issue,
        workflow_id: str,
        result: DispatchResult,
    ) -> None:
        await self._emit(
            EventType.RUN_DISPATCHED,
            issue,
            {
                "workflow_id": workflow_id,
                "run_record_id": result.run_record_id,
                "external_run_id": result.external_run_id,
                "is_existing": result.is_existing,
            },
        )

    async def list_runs_for_issue(self, issue_id: str) -> List[RunRecord]:
        issue = await self.state_machine.require(issue_id)
        return await self.run_adapter.list_runs(issue.canonical_id)

    async def poll_and_apply(self, external_run_id: int) -> RunSyncResult:
        """Poll a run; when terminal, ingest it and propose the outcome.

        Raises:
            RunRecordNotFoundError: If the ledger has no record of the run.
        """
        record = await self.run_adapter.get_run(external_run_id)
        if record is None:
            raise RunRecordNotFoundError(
                "No run record for external run",
                external_run_id=external_run_id,
            )

        issue = await self.state_machine.get_by_canonical_id(record.correlation_key)

        poll = await self.run_adapter.poll(record.owner, record.repo, external_run_id)
        await self._emit_run_event(
            EventType.RUN_STATUS,
            record,
            issue,
            {
                "external_run_id": external_run_id,
                "status": poll.status.value,
                "raw_status": poll.raw_status,
                "raw_conclusion": poll.raw_conclusion,
                "applied": poll.applied,
            },
        )
        result = RunSyncResult(poll=poll, issue=issue)
        if not poll.is_terminal:
            return result

        ingested = await self.run_adapter.ingest(record.owner, record.repo, external_run_id)
        result.ingest = ingested
        await self._emit_run_event(
            EventType.RUN_INGESTED,
            record,
            issue,
            {
                "external_run_id": external_run_id,
                "status": ingested.summary.status.value,
                "total_jobs": ingested.summary.total_jobs,
                "failed_jobs": ingested.summary.failed_jobs,
                "duration_seconds": ingested.summary.duration_seconds,
            },
        )

        if issue is None:
            return result

        if not await self.run_adapter.claim_outcome(external_run_id):
            logger.info(
                "Run outcome already applied",
                extra={"issue_id": issue.id, "external_run_id": external_run_id},
            )
            result.issue = await self.state_machine.get(issue.id)
            return result

        try:
            result.issue, result.applied_state = await self._apply_run_outcome(
                issue.id, ingested.summary.status, external_run_id
            )
        except (Exception, asyncio.CancelledError):
            await asyncio.shield(self.run_adapter.release_outcome(external_run_id))
            raise
        return result

    async def sync_runs(self, issue_id: str) -> List[RunSyncResult]:
        """Poll every started run of an issue whose outcome is still pending."""
        results = []
        for record in await self.list_runs_for_issue(issue_id):
            if (
                record.dispatch_state != DispatchState.STARTED
                or record.external_run_id is None
                or record.outcome_applied_at is not None
            ):
                continue
            results.append(await self.poll_and_apply(record.external_run_id))
        return results

    async def wait_for_run(
        self,
        external_run_id: int,
        interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> RunSyncResult:
        """Poll a run until it is terminal, then apply its outcome.

        Cancellation of the calling task propagates out of the sleep.

        Raises:
            RunWaitTimeoutError: If the run is still in flight after
                ``timeout`` seconds of polling.
        """
        interval = interval if interval is not None else self.poll_interval
        timeout = timeout if timeout is not None else self.poll_timeout
        max_polls = max(1, int(timeout // interval) + 1) if interval > 0 else 1

        for attempt in range(max_polls):
            if attempt > 0:
                await self._sleep(interval)
            result = await self.poll_and_apply(external_run_id)
            if result.poll.is_terminal:
                return result

        logger.warning(
            "Run did not finish before wait timeout",
            extra={"external_run_id": external_run_id, "timeout_seconds": timeout},
        )
        record = await self.run_adapter.get_run(external_run_id)
        if record is not None:
            await self._emit_run_event(
                EventType.TIMEOUT,
                record,
                await self.state_machine.get_by_canonical_id(record.correlation_key),
                {
                    "operation": "wait_for_run",
                    "external_run_id": external_run_id,
                    "timeout_seconds": timeout,
                },
            )
        raise RunWaitTimeoutError(
            "Run did not finish before wait timeout",
            external_run_id=external_run_id,
            timeout_seconds=timeout,
        )

    def proposed_state(self, status: RunStatus) -> Optional[IssueState]:
        """Map a terminal run status to the issue state it proposes."""
        if status == RunStatus.SUCCEEDED:
            return IssueState.VERIFIED
        if status in (RunStatus.FAILED, RunStatus.CANCELLED):
            if self.failure_policy == FailurePolicy.HOLD:
                return IssueState.HOLD
        return None

    async def _apply_run_outcome(
        self,
        issue_id: str,
        status: RunStatus,
        external_run_id: int,
    ) -> Tuple[Optional[Issue], Optional[IssueState]]:
        target = self.proposed_state(status)
        if target is None:
            logger.info(
                "Run outcome proposes no transition",
                extra={
                    "issue_id": issue_id,
                    "external_run_id": external_run_id,
                    "status": status.value,
                },
            )
            return await self.state_machine.get(issue_id), None

        for attempt in range(MAX_OUTCOME_ATTEMPTS):
            try:
                issue = await self.state_machine.transition(
                    issue_id,
                    target,
                    actor="run-sync",
                    details={"external_run_id": external_run_id, "run_status": status.value},
                    expected_state=IssueState.IMPLEMENTING,
                )
            except UnexpectedStateError as e:
                logger.info(
                    "Issue left IMPLEMENTING; run outcome not applied",
                    extra={
                        "issue_id": issue_id,
                        "external_run_id": external_run_id,
                        "actual_state": getattr(e.actual, "value", str(e.actual)),
                    },
                )
                await self.run_adapter.release_outcome(external_run_id)
                return await self.state_machine.get(issue_id), None
            except VersionConflictError:
                if attempt == MAX_OUTCOME_ATTEMPTS - 1:
                    raise
                continue

            await self._emit(
                EventType.STATE_TRANSITION,
                issue,
                {
                    "from_state": IssueState.IMPLEMENTING.value,
                    "to_state": target.value,
                    "actor": "run-sync",
                    "external_run_id": external_run_id,
                },
            )
            return issue, target

        return await self.state_machine.get(issue_id), None

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    async def _guard(self, stage: str, issue: Issue, operation: Awaitable[Any]) -> Any:
        """Await a side effect, emitting an ERROR event if it fails."""
        try:
            return await operation
        except FabricationError as exc:
            logger.error(
                "Orchestration step failed",
                extra={
                    "issue_id": issue.id,
                    "canonical_id": issue.canonical_id,
                    "stage": stage,
                    "error": str(exc),
                },
            )
            await self._emit(
                EventType.ERROR,
                issue,
                {
                    "stage": stage,
                    "error_type": type(exc).__name__,
                    "error_message": str(exc),
                },
            )
            raise

    async def _emit(
        self,
        event_type: EventType,
        issue: Issue,
        details: Dict[str, Any],
    ) -> None:
        await self._safe_emit(
            FabricationEvent(
                event_type=event_type,
                issue_id=issue.id,
                canonical_id=issue.canonical_id,
                repository=issue.repository,
                details=details,
            )
        )

    async def _emit_run_event(
        self,
        event_type: EventType,
        record: RunRecord,
        issue: Optional[Issue],
        details: Dict[str, Any],
    ) -> None:
        await self._safe_emit(
            FabricationEvent(
                event_type=event_type,
                issue_id=issue.id if issue else record.correlation_key,
                canonical_id=issue.canonical_id if issue else None,
                repository=record.repository,
                details=details,
            )
        )

    async def _safe_emit(self, event: FabricationEvent) -> None:
        """Emit an event, swallowing exceptions to avoid disrupting orchestration."""
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit fabrication event",
                extra={
                    "event_type": event.event_type.value,
                    "issue_id": event.issue_id,
                },
            )
