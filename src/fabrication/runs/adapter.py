"""Workflow run dispatcher, poller and ingester.

RunAdapter makes at most one GitHub Actions dispatch per
(correlation_key, workflow_id), tracks the run's status and ingests its
terminal result exactly once.

Dispatch protocol:
1. An existing STARTED record for the key is returned with is_existing=True
   and no external call.
2. Otherwise a DISPATCHING reservation is inserted with the ledger's atomic
   insert_if_absent. A caller that loses the race waits for the winner's
   record to resolve instead of triggering a second run.
3. The reservation owner triggers the workflow once (never retried), with a
   fresh correlation token in the workflow inputs.
4. The run is located with bounded attempts and a fixed delay: candidates
   created after dispatch time minus a margin are matched on the token
   echoed in the run's display title, falling back to the most recent
   unclaimed run on the ref when enabled.
5. The reservation is completed to STARTED with the external run ID.

A trigger that GitHub definitely refused (access denied, a 4xx, a rate limit
response) removes the reservation, so no record exists. When the outcome of
the trigger call is unknown (timeout, 5xx, cancellation while the request is
in flight) or the run could not be located, the record is kept as
START_FAILED with its dispatch time; the next dispatch for the key first
tries to adopt the late run by its token before triggering again.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from src.fabrication.config import FabricationSettings
from src.fabrication.errors import (
    AccessDeniedError,
    ExternalPermanentError,
    ExternalTransientError,
    FabricationError,
    InputValidationError,
    RateLimitError,
    RunLookupError,
    RunNotTerminalError,
    RunRecordNotFoundError,
    VersionConflictError,
)
from src.fabrication.retry import RetryPolicy, retry_transient
from src.fabrication.runs.ledger import RunLedger
from src.fabrication.runs.models import (
    ArtifactSummary,
    DispatchResult,
    DispatchState,
    IngestResult,
    JobSummary,
    PollResult,
    RunRecord,
    RunStatus,
    RunSummary,
    normalize_run_status,
    parse_github_timestamp,
)


logger = logging.getLogger(__name__)


DISPATCH_EVENT = "workflow_dispatch"

# Job conclusions counted in the ingestion summary
SUCCESSFUL_JOB_CONCLUSIONS = frozenset({"success", "neutral"})
FAILED_JOB_CONCLUSIONS = frozenset({"failure", "timed_out", "action_required"})

# Compare-and-set attempts for poll and ingest writes
MAX_CAS_ATTEMPTS = 5

# Trigger errors that prove GitHub did not create a run
TRIGGER_REJECTED_ERRORS = (
    AccessDeniedError,
    ExternalPermanentError,
    InputValidationError,
    RateLimitError,
)


class WorkflowClient(Protocol):
    """The slice of GitHubClient the adapter depends on."""

    async def trigger_workflow(
        self,
        owner: str,
        repo: str,
        workflow_id: str,
        ref: str,
        inputs: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...

    async def list_workflow_runs(
        self,
        owner: str,
        repo: str,
        workflow_id: str,
        branch: Optional[str] = None,
        event: Optional[str] = None,
        created_after: Optional[datetime] = None,
        per_page: int = 30,
    ) -> List[Dict[str, Any]]:
        ...

    async def get_workflow_run(self, owner: str, repo: str, run_id: int) -> Dict[str, Any]:
        ...

    async def list_run_jobs(self, owner: str, repo: str, run_id: int) -> List[Dict[str, Any]]:
        ...

    async def list_run_artifacts(self, owner: str, repo: str, run_id: int) -> List[Dict[str, Any]]:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunAdapter:
    """Dispatch, poll and ingest GitHub Actions workflow runs.

    Attributes:
        client: GitHub workflow client.
        ledger: Run ledger, the source of truth for idempotency.
        lookup_attempts: Bounded attempts to locate a triggered run.
        lookup_delay: Fixed delay between lookup attempts, in seconds.
        lookup_margin: Runs created before dispatch time minus this margin
            are ignored, in seconds.
        dispatch_timeout: Overall deadline of one dispatch call, in seconds.
        correlation_input_name: Workflow input carrying the correlation token.
        allow_most_recent_fallback: Accept the most recent unclaimed run on
            the ref when no run echoes the token.
        retry_policy: Transient retry policy for poll and ingest reads.
    """

    def __init__(
        self,
        client: WorkflowClient,
        ledger: RunLedger,
        lookup_attempts: int = 5,
        lookup_delay: float = 2.0,
        lookup_margin: float = 10.0,
        dispatch_timeout: float = 120.0,
        correlation_input_name: str = "correlation_id",
        allow_most_recent_fallback: bool = True,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.ledger = ledger
        self.lookup_attempts = lookup_attempts
        self.lookup_delay = lookup_delay
        self.lookup_margin = lookup_margin
        self.dispatch_timeout = dispatch_timeout
        self.correlation_input_name = correlation_input_name
        self.allow_most_recent_fallback = allow_most_recent_fallback
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: FabricationSettings,
        client: WorkflowClient,
        ledger: RunLedger,
    ) -> "RunAdapter":
        return cls(
            client=client,
            ledger=ledger,
            lookup_attempts=settings.dispatch_lookup_attempts,
            lookup_delay=settings.dispatch_lookup_delay_seconds,
            lookup_margin=settings.dispatch_lookup_margin_seconds,
            dispatch_timeout=settings.dispatch_timeout_seconds,
            correlation_input_name=settings.correlation_input_name,
            allow_most_recent_fallback=settings.allow_most_recent_fallback,
            retry_policy=RetryPolicy(
                max_retries=settings.max_retries,
                base_delay=settings.retry_base_delay_seconds,
                max_delay=settings.retry_max_delay_seconds,
            ),
        )

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def dispatch(
        self,
        owner: str,
        repo: str,
        workflow_id: str,
        ref: str,
        correlation_key: str,
        inputs: Optional[Dict[str, Any]] = None,
    ) -> DispatchResult:
        """Dispatch a workflow at most once per (correlation_key, workflow_id).

        Args:
            owner: Repository owner.
            repo: Repository name.
            workflow_id: Workflow file name or ID.
            ref: Git ref to run the workflow on.
            correlation_key: Deduplication key, usually the canonical ID.
            inputs: Workflow inputs.

        Returns:
            DispatchResult; ``is_existing`` is True when no trigger was made.

        Raises:
            InputValidationError: If an identifier is blank or the inputs
                use the reserved correlation input name.
            AccessDeniedError: If the repository is not allowed.
            RunLookupError: If the triggered run never became visible, or the
                deadline expired.
            ExternalTransientError: If the trigger call failed transiently.
            ExternalPermanentError: If the workflow or repository is missing.
        """
        for field_name, value in (
            ("owner", owner),
            ("repo", repo),
            ("workflow_id", workflow_id),
            ("ref", ref),
            ("correlation_key", correlation_key),
        ):
            if not value or not str(value).strip():
                raise InputValidationError(
                    f"{field_name} cannot be empty",
                    repository=f"{owner}/{repo}",
                    correlation_key=correlation_key,
                    workflow_id=workflow_id,
                )

        inputs = dict(inputs or {})
        if self.correlation_input_name in inputs:
            raise InputValidationError(
                f"Workflow input '{self.correlation_input_name}' is reserved",
                correlation_key=correlation_key,
                workflow_id=workflow_id,
            )

        context = {
            "repository": f"{owner}/{repo}",
            "correlation_key": correlation_key,
            "workflow_id": workflow_id,
        }

        try:
            return await asyncio.wait_for(
                self._dispatch(owner, repo, workflow_id, ref, correlation_key, inputs),
                timeout=self.dispatch_timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(
                "Dispatch deadline exceeded",
                extra={"timeout_seconds": self.dispatch_timeout, **context},
            )
            raise RunLookupError(
                "Dispatch deadline exceeded",
                timeout_seconds=self.dispatch_timeout,
                **context,
            ) from e
        except FabricationError as e:
            e.add_context(**context)
            raise

    async def _dispatch(
        self,
        owner: str,
        repo: str,
        workflow_id: str,
        ref: str,
        correlation_key: str,
        inputs: Dict[str, Any],
    ) -> DispatchResult:
        existing = await self.ledger.get(correlation_key, workflow_id)

        while True:
            if existing is None:
                now = self._clock()
                reservation = RunRecord(
                    id=str(uuid.uuid4()),
                    correlation_key=correlation_key,
                    workflow_id=workflow_id,
                    owner=owner,
                    repo=repo,
                    ref=ref,
                    inputs=inputs,
                    correlation_token=uuid.uuid4().hex,
                    dispatch_state=DispatchState.DISPATCHING,
                    created_at=now,
                    updated_at=now,
                )
                record, created = await self.ledger.insert_if_absent(reservation)
                if created:
                    return await self._start(record)
                existing = record
                continue

            if existing.dispatch_state == DispatchState.STARTED:
                logger.info(
                    "Dispatch resolved to existing run",
                    extra={
                        "correlation_key": correlation_key,
                        "workflow_id": workflow_id,
                        "external_run_id": existing.external_run_id,
                    },
                )
                return self._result(existing, is_existing=True)

            if existing.dispatch_state == DispatchState.START_FAILED or self._is_stale(existing):
                reclaimed = await self._reclaim(existing, inputs)
                if reclaimed is None:
                    existing = await self.ledger.get(correlation_key, workflow_id)
                    continue
                if reclaimed.dispatch_state == DispatchState.STARTED:
                    return self._result(reclaimed, is_existing=False)
                return await self._start(reclaimed)

            # Another caller holds the reservation; wait for it to resolve.
            await self._sleep(self.lookup_delay)
            existing = await self.ledger.get(correlation_key, workflow_id)

    def _is_stale(self, record: RunRecord) -> bool:
        """A DISPATCHING reservation older than the deadline has been abandoned."""
        if record.dispatch_state != DispatchState.DISPATCHING:
            return False
        age = (self._clock() - record.updated_at).total_seconds()
        return age > self.dispatch_timeout

    async def _reclaim(
        self,
        record: RunRecord,
        inputs: Dict[str, Any],
    ) -> Optional[RunRecord]:
        """Take over a START_FAILED or abandoned record.

        The run triggered by the previous attempt is adopted if it has
        become visible. Otherwise the record is reset to DISPATCHING with a
        fresh token.

        Returns:
            The updated record, or None if a concurrent caller won the CAS.
        """
        if record.dispatched_at is not None:
            late_run = await self._find_run(record, record.dispatched_at, token_only=True)
            if late_run is not None:
                adopted = self._started(record, late_run)
                if await self.ledger.update_with_version(adopted):
                    logger.info(
                        "Adopted late run from earlier dispatch",
                        extra={
                            "correlation_key": record.correlation_key,
                            "workflow_id": record.workflow_id,
                            "external_run_id": adopted.external_run_id,
                        },
                    )
                    return adopted
                return None

        now = self._clock()
        reset = record.model_copy(
            update={
                "dispatch_state": DispatchState.DISPATCHING,
                "correlation_token": uuid.uuid4().hex,
                "inputs": inputs,
                "dispatched_at": None,
                "error": None,
                "updated_at": now,
                "version": record.version + 1,
            }
        )
        if await self.ledger.update_with_version(reset):
            logger.info(
                "Reclaimed run record for a new dispatch",
                extra={
                    "correlation_key": record.correlation_key,
                    "workflow_id": record.workflow_id,
                    "previous_state": record.dispatch_state.value,
                },
            )
            return reset
        return None

    async def _start(self, record: RunRecord) -> DispatchResult:
        """Trigger the workflow for a reservation and locate its run."""
        context = {
            "repository": record.repository,
            "correlation_key": record.correlation_key,
            "workflow_id": record.workflow_id,
        }
        payload = dict(record.inputs)
        payload[self.correlation_input_name] = record.correlation_token

        dispatched_at = self._clock()
        try:
            await self.client.trigger_workflow(
                record.owner,
                record.repo,
                record.workflow_id,
                record.ref,
                payload,
            )
        except TRIGGER_REJECTED_ERRORS:
            await self._release(record)
            raise
        except (Exception, asyncio.CancelledError) as e:
            # The request may have reached GitHub; keep the token for adoption.
            await self._mark_start_failed(
                record.model_copy(update={"dispatched_at": dispatched_at}),
                f"trigger outcome unknown: {type(e).__name__}: {e}",
            )
            raise

        logger.info("Workflow triggered", extra=context)

        # From here the trigger has been accepted; the record is kept.
        triggered = record.model_copy(
            update={
                "dispatched_at": dispatched_at,
                "updated_at": self._clock(),
                "version": record.version + 1,
            }
        )
        try:
            if not await self.ledger.update_with_version(triggered):
                raise VersionConflictError(record.id, record.version, **context)
            run = await self._locate(triggered, dispatched_at)
        except (Exception, asyncio.CancelledError) as e:
            await self._mark_start_failed(triggered, f"{type(e).__name__}: {e}")
            raise

        if run is None:
            await self._mark_start_failed(triggered, "run not visible after lookup")
            raise RunLookupError(
                "Triggered workflow run was not found",
                attempts=self.lookup_attempts,
                **context,
            )

        started = self._started(triggered, run)
        if not await self.ledger.update_with_version(started):
            raise VersionConflictError(triggered.id, triggered.version, **context)

        logger.info(
            "Workflow run located",
            extra={
                "external_run_id": started.external_run_id,
                "status": started.status.value,
                **context,
            },
        )
        return self._result(started, is_existing=False)

    async def _release(self, record: RunRecord) -> None:
        """Remove a reservation whose trigger was never accepted."""
        removed = await asyncio.shield(self.ledger.discard(record.id, record.version))
        logger.warning(
            "Trigger rejected; reservation released",
            extra={
                "correlation_key": record.correlation_key,
                "workflow_id": record.workflow_id,
                "removed": removed,
            },
        )

    async def _mark_start_failed(self, record: RunRecord, reason: str) -> None:
        failed = record.model_copy(
            update={
                "dispatch_state": DispatchState.START_FAILED,
                "error": reason,
                "updated_at": self._clock(),
                "version": record.version + 1,
            }
        )
        stored = await asyncio.shield(self.ledger.update_with_version(failed))
        logger.error(
            "Dispatch left without a located run",
            extra={
                "correlation_key": record.correlation_key,
                "workflow_id": record.workflow_id,
                "reason": reason,
                "stored": stored,
            },
        )

    async def _locate(
        self,
        record: RunRecord,
        dispatched_at: datetime,
    ) -> Optional[Dict[str, Any]]:
        """Find the run created by a trigger, with bounded attempts."""
        for attempt in range(self.lookup_attempts):
            if attempt > 0:
                await self._sleep(self.lookup_delay)
            try:
                run = await self._find_run(record, dispatched_at, token_only=False)
            except ExternalTransientError as e:
                logger.warning(
                    "Run lookup attempt failed",
                    extra={
                        "correlation_key": record.correlation_key,
                        "workflow_id": record.workflow_id,
                        "attempt": attempt + 1,
                        "error": e.message,
                    },
                )
                continue
            if run is not None:
                return run
            logger.debug(
                "Run not visible yet",
                extra={
                    "correlation_key": record.correlation_key,
                    "attempt": attempt + 1,
                },
            )
        return None

    async def _find_run(
        self,
        record: RunRecord,
        dispatched_at: datetime,
        token_only: bool,
    ) -> Optional[Dict[str, Any]]:
        """Select the run belonging to a record from the recent runs.

        A run echoing the record's correlation token wins. Without one, and
        when the fallback is enabled, the most recent candidate not already
        claimed by another record is chosen.
        """
        created_after = dispatched_at - timedelta(seconds=self.lookup_margin)
        runs = await self.client.list_workflow_runs(
            record.owner,
            record.repo,
            record.workflow_id,
            branch=record.ref,
            event=DISPATCH_EVENT,
            created_after=created_after,
        )

        candidates = []
        for run in runs:
            created_at = parse_github_timestamp(run.get("created_at"))
            if created_at is not None and created_at < created_after:
                continue
            if run.get("event") not in (None, DISPATCH_EVENT):
                continue
            if run.get("head_branch") not in (None, record.ref):
                continue
            candidates.append(run)

        for run in candidates:
            if _echoes_token(run, record.correlation_token):
                return run

        if token_only or not self.allow_most_recent_fallback:
            return None

        epoch = datetime.min.replace(tzinfo=timezone.utc)
        newest_first = sorted(
            candidates,
            key=lambda run: parse_github_timestamp(run.get("created_at")) or epoch,
            reverse=True,
        )
        for run in newest_first:
            run_id = run.get("id")
            if not isinstance(run_id, int):
                continue
            claimed = await self.ledger.get_by_external_run_id(run_id)
            if claimed is None or claimed.id == record.id:
                logger.warning(
                    "No run echoed the correlation token; using most recent run",
                    extra={
                        "correlation_key": record.correlation_key,
                        "workflow_id": record.workflow_id,
                        "external_run_id": run_id,
                    },
                )
                return run
        return None

    def _started(self, record: RunRecord, run: Dict[str, Any]) -> RunRecord:
        status = normalize_run_status(run.get("status"), run.get("conclusion"))
        now = self._clock()
        return record.model_copy(
            update={
                "dispatch_state": DispatchState.STARTED,
                "external_run_id": run.get("id"),
                "run_url": run.get("html_url"),
                "status": status,
                "raw_status": run.get("status"),
                "raw_conclusion": run.get("conclusion"),
                "external_updated_at": parse_github_timestamp(run.get("updated_at")),
                "completed_at": now if status.is_terminal else None,
                "error": None,
                "updated_at": now,
                "version": record.version + 1,
            }
        )

    @staticmethod
    def _result(record: RunRecord, is_existing: bool) -> DispatchResult:
        return DispatchResult(
            run_record_id=record.id,
            correlation_key=record.correlation_key,
            workflow_id=record.workflow_id,
            external_run_id=record.external_run_id,
            run_url=record.run_url,
            status=record.status,
            is_existing=is_existing,
        )

    # -------------------------------------------------------------------------
    # Poll
    # -------------------------------------------------------------------------

    async def poll(self, owner: str, repo: str, external_run_id: int) -> PollResult:
        """Fetch a run's status and fold it into the ledger.

        The observation is applied only if it is not older than the record's
        last applied observation, the record is not ingested, and it would
        not move a terminal record back to a non-terminal status.

        Raises:
            AccessDeniedError: If the repository is not allowed.
            ExternalTransientError: If retries are exhausted.
            ExternalPermanentError: If the run does not exist.
        """
        context = {"repository": f"{owner}/{repo}", "external_run_id": external_run_id}

        run = await retry_transient(
            lambda: self.client.get_workflow_run(owner, repo, external_run_id),
            self.retry_policy,
            "get_workflow_run",
            context,
            sleep=self._sleep,
        )
        polled_at = self._clock()
        status = normalize_run_status(run.get("status"), run.get("conclusion"))
        updated_at = parse_github_timestamp(run.get("updated_at"))

        applied = await self._apply_observation(external_run_id, run, status, updated_at, polled_at)

        logger.info(
            "Polled workflow run",
            extra={
                "status": status.value,
                "raw_status": run.get("status"),
                "raw_conclusion": run.get("conclusion"),
                "applied": applied,
                **context,
            },
        )
        return PollResult(
            external_run_id=external_run_id,
            status=status,
            raw_status=run.get("status"),
            raw_conclusion=run.get("conclusion"),
            created_at=parse_github_timestamp(run.get("created_at")),
            run_started_at=parse_github_timestamp(run.get("run_started_at")),
            updated_at=updated_at,
            polled_at=polled_at,
            run_url=run.get("html_url"),
            applied=applied,
        )

    async def _apply_observation(
        self,
        external_run_id: int,
        run: Dict[str, Any],
        status: RunStatus,
        observed_at: Optional[datetime],
        polled_at: datetime,
    ) -> bool:
        for _ in range(MAX_CAS_ATTEMPTS):
            record = await self.ledger.get_by_external_run_id(external_run_id)
            if record is None or record.is_ingested:
                return False

            if (
                observed_at is not None
                and record.external_updated_at is not None
                and observed_at < record.external_updated_at
            ):
                logger.warning(
                    "Ignoring stale poll result",
                    extra={
                        "external_run_id": external_run_id,
                        "observed_at": observed_at.isoformat(),
                        "last_known_at": record.external_updated_at.isoformat(),
                    },
                )
                return False

            if record.is_terminal and not status.is_terminal:
                logger.warning(
                    "Ignoring non-terminal status for terminal run",
                    extra={
                        "external_run_id": external_run_id,
                        "record_status": record.status.value,
                        "status": status.value,
                    },
                )
                return False

            updated = record.model_copy(
                update={
                    "status": status,
                    "raw_status": run.get("status"),
                    "raw_conclusion": run.get("conclusion"),
                    "last_polled_at": polled_at,
                    "external_updated_at": observed_at or record.external_updated_at,
                    "completed_at": record.completed_at
                    or (polled_at if status.is_terminal else None),
                    "updated_at": polled_at,
                    "version": record.version + 1,
                }
            )
            if await self.ledger.update_with_version(updated):
                return True

        raise VersionConflictError(
            record.id,
            record.version,
            external_run_id=external_run_id,
        )

    # -------------------------------------------------------------------------
    # Ingest
    # -------------------------------------------------------------------------

    async def ingest(self, owner: str, repo: str, external_run_id: int) -> IngestResult:
        """Capture a terminal run's summary, jobs and artifacts exactly once.

        Re-ingesting returns the stored payload without any external call.

        Raises:
            RunRecordNotFoundError: If the ledger has no record of the run.
            RunNotTerminalError: If the run has not finished.
            InputValidationError: If owner/repo differ from the recorded run.
            AccessDeniedError: If the repository is not allowed.
            ExternalTransientError: If retries are exhausted.
            ExternalPermanentError: If the run does not exist.
        """
        context = {"repository": f"{owner}/{repo}", "external_run_id": external_run_id}

        record = await self.ledger.get_by_external_run_id(external_run_id)
        if record is None:
            raise RunRecordNotFoundError("No run record for external run", **context)
        if (owner.lower(), repo.lower()) != (record.owner.lower(), record.repo.lower()):
            raise InputValidationError(
                "Run belongs to a different repository",
                run_repository=record.repository,
                **context,
            )
        if record.result is not None:
            logger.info("Returning stored ingestion result", extra=context)
            return record.result

        async def fetch(operation: Callable[[], Awaitable[Any]], name: str) -> Any:
            return await retry_transient(
                operation, self.retry_policy, name, context, sleep=self._sleep
            )

        run = await fetch(
            lambda: self.client.get_workflow_run(owner, repo, external_run_id),
            "get_workflow_run",
        )
        status = normalize_run_status(run.get("status"), run.get("conclusion"))
        if not status.is_terminal:
            raise RunNotTerminalError(
                "Cannot ingest a run that has not finished",
                status=status.value,
                **context,
            )

        jobs = await fetch(
            lambda: self.client.list_run_jobs(owner, repo, external_run_id),
            "list_run_jobs",
        )
        artifacts = await fetch(
            lambda: self.client.list_run_artifacts(owner, repo, external_run_id),
            "list_run_artifacts",
        )
        result = build_ingest_result(run, jobs, artifacts, self._clock())

        for _ in range(MAX_CAS_ATTEMPTS):
            current = await self.ledger.get_by_id(record.id)
            if current is None:
                raise RunRecordNotFoundError("Run record disappeared", **context)
            if current.result is not None:
                return current.result

            now = self._clock()
            updated = current.model_copy(
                update={
                    "result": result,
                    "status": status,
                    "raw_status": run.get("status"),
                    "raw_conclusion": run.get("conclusion"),
                    "external_updated_at": max(
                        filter(None, [current.external_updated_at, result.summary.completed_at]),
                        default=None,
                    ),
                    "completed_at": current.completed_at or now,
                    "updated_at": now,
                    "version": current.version + 1,
                }
            )
            if await self.ledger.update_with_version(updated):
                logger.info(
                    "Ingested workflow run",
                    extra={
                        "status": status.value,
                        "total_jobs": result.summary.total_jobs,
                        "failed_jobs": result.summary.failed_jobs,
                        "artifacts": len(result.artifacts),
                        **context,
                    },
                )
                return result

        raise VersionConflictError(record.id, record.version, **context)

    # -------------------------------------------------------------------------
    # Outcome
    # -------------------------------------------------------------------------

    async def claim_outcome(self, external_run_id: int) -> bool:
        """Mark an ingested run's outcome as consumed by its issue.

        Exactly one caller gets True per outcome. False means the run is
        unknown, not ingested yet, or its outcome was already claimed.
        """
        for _ in range(MAX_CAS_ATTEMPTS):
            record = await self.ledger.get_by_external_run_id(external_run_id)
            if record is None or not record.is_ingested or record.outcome_applied_at is not None:
                return False
            now = self._clock()
            claimed = record.model_copy(
                update={
                    "outcome_applied_at": now,
                    "updated_at": now,
                    "version": record.version + 1,
                }
            )
            if await self.ledger.update_with_version(claimed):
                return True

        raise VersionConflictError(
            record.id,
            record.version,
            external_run_id=external_run_id,
        )

    async def release_outcome(self, external_run_id: int) -> None:
        """Return a claimed outcome whose transition was not applied."""
        for _ in range(MAX_CAS_ATTEMPTS):
            record = await self.ledger.get_by_external_run_id(external_run_id)
            if record is None or record.outcome_applied_at is None:
                return
            released = record.model_copy(
                update={
                    "outcome_applied_at": None,
                    "updated_at": self._clock(),
                    "version": record.version + 1,
                }
            )
            if await self.ledger.update_with_version(released):
                return

        raise VersionConflictError(
            record.id,
            record.version,
            external_run_id=external_run_id,
        )

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    async def get_run(self, external_run_id: int) -> Optional[RunRecord]:
        return await self.ledger.get_by_external_run_id(external_run_id)

    async def list_runs(self, correlation_key: str) -> List[RunRecord]:
        return await self.ledger.list_by_correlation_key(correlation_key)


def _echoes_token(run: Dict[str, Any], token: str) -> bool:
    for field in ("display_title", "name"):
        value = run.get(field)
        if isinstance(value, str) and token in value:
            return True
    return False


def _duration(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    if start is None or end is None:
        return None
    return max(0.0, (end - start).total_seconds())


def build_ingest_result(
    run: Dict[str, Any],
    jobs: List[Dict[str, Any]],
    artifacts: List[Dict[str, Any]],
    ingested_at: datetime,
) -> IngestResult:
    """Build the ingestion payload from GitHub run, job and artifact data.

    Jobs concluding success or neutral count as successful; failure,
    timed_out and action_required count as failed. The run duration spans
    run_started_at to updated_at.
    """
    job_summaries = []
    for job in jobs:
        started = parse_github_timestamp(job.get("started_at"))
        completed = parse_github_timestamp(job.get("completed_at"))
        job_summaries.append(
            JobSummary(
                job_id=job.get("id", 0),
                name=job.get("name") or "",
                status=job.get("status"),
                conclusion=job.get("conclusion"),
                started_at=started,
                completed_at=completed,
                duration_seconds=_duration(started, completed),
            )
        )

    artifact_summaries = [
        ArtifactSummary(
            artifact_id=artifact.get("id", 0),
            name=artifact.get("name") or "",
            size_in_bytes=artifact.get("size_in_bytes") or 0,
            download_url=artifact.get("archive_download_url"),
            expired=bool(artifact.get("expired", False)),
            expires_at=parse_github_timestamp(artifact.get("expires_at")),
        )
        for artifact in artifacts
    ]

    run_started_at = parse_github_timestamp(run.get("run_started_at"))
    completed_at = parse_github_timestamp(run.get("updated_at"))

    summary = RunSummary(
        status=normalize_run_status(run.get("status"), run.get("conclusion")),
        raw_status=run.get("status"),
        raw_conclusion=run.get("conclusion"),
        total_jobs=len(job_summaries),
        successful_jobs=sum(
            1 for job in job_summaries if job.conclusion in SUCCESSFUL_JOB_CONCLUSIONS
        ),
        failed_jobs=sum(
            1 for job in job_summaries if job.conclusion in FAILED_JOB_CONCLUSIONS
        ),
        duration_seconds=_duration(run_started_at, completed_at),
        run_started_at=run_started_at,
        completed_at=completed_at,
    )

    return IngestResult(
        external_run_id=run.get("id"),
        summary=summary,
        jobs=job_summaries,
        artifacts=artifact_summaries,
        logs_url=run.get("logs_url"),
        run_url=run.get("html_url"),
        ingested_at=ingested_at,
    )
