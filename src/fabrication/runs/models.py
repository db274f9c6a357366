"""Workflow run models.

This module defines the data models for dispatched GitHub Actions runs:
- RunStatus: Normalized five-value status vocabulary
- DispatchState: Progress of the dispatch that created a run record
- RunRecord: Ledger entry keyed by (correlation_key, workflow_id)
- JobSummary, ArtifactSummary, RunSummary, IngestResult: Ingested payload
- DispatchResult, PollResult: Operation results

normalize_run_status maps every GitHub (status, conclusion) pair onto
exactly one RunStatus.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    """Normalized workflow run status.

    QUEUED and RUNNING are in flight; SUCCEEDED, FAILED and CANCELLED are
    terminal and never revert.
    """

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED}
)


def normalize_run_status(
    status: Optional[str],
    conclusion: Optional[str],
) -> RunStatus:
    """Map a GitHub run status and conclusion onto RunStatus.

    | status      | conclusion      | normalized |
    |-------------|-----------------|------------|
    | completed   | success         | SUCCEEDED  |
    | completed   | cancelled       | CANCELLED  |
    | completed   | anything else   | FAILED     |
    | in_progress | -               | RUNNING    |
    | other       | -               | QUEUED     |

    Statuses other than completed and in_progress (queued, waiting,
    requested, pending, unknown or missing) are still waiting to run.
    """
    normalized_status = (status or "").strip().lower()

    if normalized_status == "completed":
        normalized_conclusion = (conclusion or "").strip().lower()
        if normalized_conclusion == "success":
            return RunStatus.SUCCEEDED
        if normalized_conclusion == "cancelled":
            return RunStatus.CANCELLED
        return RunStatus.FAILED

    if normalized_status == "in_progress":
        return RunStatus.RUNNING

    return RunStatus.QUEUED


def parse_github_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp as returned by GitHub ("...Z")."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class DispatchState(str, Enum):
    """Progress of the dispatch that owns a run record.

    DISPATCHING: Reserved; the trigger is in flight or the run is being located.
    STARTED: The run was located and its external ID recorded.
    START_FAILED: The trigger was accepted but the run was never located.
        The next dispatch for the same key adopts the late run or retries.
    """

    DISPATCHING = "DISPATCHING"
    STARTED = "STARTED"
    START_FAILED = "START_FAILED"


class JobSummary(BaseModel):
    """Per-job status and duration of an ingested run."""

    job_id: int
    name: str
    status: Optional[str] = None
    conclusion: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None


class ArtifactSummary(BaseModel):
    """Artifact metadata; artifact bytes are never fetched."""

    artifact_id: int
    name: str
    size_in_bytes: int = 0
    download_url: Optional[str] = None
    expired: bool = False
    expires_at: Optional[datetime] = None


class RunSummary(BaseModel):
    """Aggregate of an ingested run."""

    status: RunStatus
    raw_status: Optional[str] = None
    raw_conclusion: Optional[str] = None
    total_jobs: int = 0
    successful_jobs: int = 0
    failed_jobs: int = 0
    duration_seconds: Optional[float] = None
    run_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class IngestResult(BaseModel):
    """Terminal payload attached to a run record exactly once.

    Attributes:
        external_run_id: GitHub run ID.
        summary: Aggregate counts and duration.
        jobs: Per-job status and duration.
        artifacts: Artifact metadata.
        logs_url: Reference to the full logs archive (not inlined).
        run_url: Web URL of the run.
        ingested_at: When the payload was captured.
    """

    external_run_id: int
    summary: RunSummary
    jobs: List[JobSummary] = Field(default_factory=list)
    artifacts: List[ArtifactSummary] = Field(default_factory=list)
    logs_url: Optional[str] = None
    run_url: Optional[str] = None
    ingested_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )


class RunRecord(BaseModel):
    """Ledger entry for one dispatched workflow run.

    At most one record exists per (correlation_key, workflow_id). The
    version field is the optimistic-concurrency guard for every update.

    Attributes:
        id: Internal run record ID.
        correlation_key: Deduplication key, usually the canonical ID.
        workflow_id: Workflow file name or ID.
        owner: Repository owner.
        repo: Repository name.
        ref: Git ref the workflow was dispatched on.
        inputs: Workflow inputs requested by the caller.
        correlation_token: Opaque token sent with the trigger and echoed in
            the run's display title.
        dispatch_state: Progress of the dispatch.
        external_run_id: GitHub run ID, set once the run is located.
        run_url: GitHub web URL of the run.
        status: Last known normalized status.
        raw_status: Last known GitHub status.
        raw_conclusion: Last known GitHub conclusion.
        dispatched_at: When the trigger call was issued.
        last_polled_at: When the status was last applied.
        external_updated_at: GitHub's updated_at of the last applied poll.
        completed_at: When a terminal status was first observed.
        outcome_applied_at: When the run's outcome was claimed for the
            issue it belongs to. Set at most once per outcome.
        result: Ingested payload, set once.
        error: Reason of the last failed start.
    """

    id: str = Field(..., min_length=1)
    correlation_key: str = Field(..., min_length=1)
    workflow_id: str = Field(..., min_length=1)
    owner: str = Field(..., min_length=1)
    repo: str = Field(..., min_length=1)
    ref: str = Field(..., min_length=1)
    inputs: Dict[str, Any] = Field(default_factory=dict)
    correlation_token: str = Field(..., min_length=1)
    dispatch_state: DispatchState = DispatchState.DISPATCHING
    external_run_id: Optional[int] = None
    run_url: Optional[str] = None
    status: RunStatus = RunStatus.QUEUED
    raw_status: Optional[str] = None
    raw_conclusion: Optional[str] = None
    dispatched_at: Optional[datetime] = None
    last_polled_at: Optional[datetime] = None
    external_updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    outcome_applied_at: Optional[datetime] = None
    result: Optional[IngestResult] = None
    error: Optional[str] = None
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    version: int = Field(default=1, ge=1)

    @property
    def repository(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_ingested(self) -> bool:
        return self.result is not None


class DispatchResult(BaseModel):
    """Outcome of a dispatch call.

    ``is_existing`` is True when the call resolved to a run started by an
    earlier or concurrent request and made no trigger call of its own.
    """

    run_record_id: str
    correlation_key: str
    workflow_id: str
    external_run_id: Optional[int] = None
    run_url: Optional[str] = None
    status: RunStatus = RunStatus.QUEUED
    is_existing: bool = False


class PollResult(BaseModel):
    """Status of a run as observed by one poll.

    ``applied`` is False when the observation was not written to the
    ledger (unknown run, stale observation, ingested or terminal record).
    """

    external_run_id: int
    status: RunStatus
    raw_status: Optional[str] = None
    raw_conclusion: Optional[str] = None
    created_at: Optional[datetime] = None
    run_started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    polled_at: datetime
    run_url: Optional[str] = None
    applied: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal
