"""GitHub Actions run dispatch, polling and ingestion.

This module provides:
- RunStatus and normalize_run_status: the five-value status vocabulary
- RunRecord and the RunLedger protocol with in-memory and PostgreSQL stores
- RunAdapter: at-most-once dispatch, ordered polling, once-only ingestion
"""

from src.fabrication.runs.adapter import RunAdapter, build_ingest_result
from src.fabrication.runs.ledger import InMemoryRunLedger, RunLedger
from src.fabrication.runs.models import (
    TERMINAL_RUN_STATUSES,
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

__all__ = [
    "TERMINAL_RUN_STATUSES",
    "ArtifactSummary",
    "DispatchResult",
    "DispatchState",
    "InMemoryRunLedger",
    "IngestResult",
    "JobSummary",
    "PollResult",
    "RunAdapter",
    "RunLedger",
    "RunRecord",
    "RunStatus",
    "RunSummary",
    "build_ingest_result",
    "normalize_run_status",
    "parse_github_timestamp",
]
