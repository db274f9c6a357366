"""Orchestration event models for observability.

This module defines the data models for orchestration events:
- EventType: Enum of all event types emitted by the orchestrator
- FabricationEvent: Structured event with the identifiers of its subject

Events are produced to collaborators (audit log, UI, monitoring); they
never drive control flow.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


# LogRecord attributes that event details must not overwrite
_RESERVED_LOG_KEYS = frozenset(
    {
        "args", "asctime", "created", "exc_info", "exc_text", "filename",
        "funcName", "levelname", "levelno", "lineno", "message", "module",
        "msecs", "msg", "name", "pathname", "process", "processName",
        "relativeCreated", "stack_info", "taskName", "thread", "threadName",
    }
)


class EventType(str, Enum):
    """Types of events emitted by the orchestration core.

    Event Categories:
        STATE_TRANSITION: An issue moved between lifecycle states.
        MIRROR_RESOLVED: The GitHub mirror of an issue was found or created.
        RUN_DISPATCHED: A workflow dispatch completed (new or existing run).
        RUN_STATUS: A poll observed a run's status.
        RUN_INGESTED: A terminal run's result was captured.
        ERROR: An orchestration step failed.
        TIMEOUT: A wait or dispatch exceeded its deadline.
    """

    STATE_TRANSITION = "state_transition"
    MIRROR_RESOLVED = "mirror_resolved"
    RUN_DISPATCHED = "run_dispatched"
    RUN_STATUS = "run_status"
    RUN_INGESTED = "run_ingested"
    ERROR = "error"
    TIMEOUT = "timeout"


class FabricationEvent(BaseModel):
    """Structured event emitted by the orchestrator.

    Attributes:
        event_type: The category of event.
        issue_id: Internal issue ID, or the correlation key for run events
            not tied to a known issue.
        canonical_id: Canonical ID of the issue, when known.
        repository: Repository path "{owner}/{repo}", when known.
        timestamp: When the event occurred (UTC).
        details: Additional context specific to the event type.

    Details Field Conventions:
        STATE_TRANSITION: from_state, to_state, actor
        MIRROR_RESOLVED: artifact_id, artifact_url, matched_by, created
        RUN_DISPATCHED: workflow_id, external_run_id, is_existing
        RUN_STATUS: external_run_id, status, raw_status, raw_conclusion
        RUN_INGESTED: external_run_id, status, total_jobs, failed_jobs
        ERROR: error_type, error_message, stage
        TIMEOUT: operation, timeout_seconds
    """

    event_type: EventType
    issue_id: str = Field(..., min_length=1)
    canonical_id: Optional[str] = None
    repository: Optional[str] = None
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    details: Dict[str, Any] = Field(default_factory=dict)

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten the event for structured logging.

        Detail keys that collide with LogRecord attributes are prefixed
        with ``detail_``.

        Example:
            >>> event = FabricationEvent(
            ...     event_type=EventType.ERROR,
            ...     issue_id="c0ffee",
            ...     details={"stage": "dispatch"},
            ... )
            >>> event.to_log_dict()["event_type"]
            'error'
        """
        flattened: Dict[str, Any] = {
            "event_type": self.event_type.value,
            "issue_id": self.issue_id,
            "canonical_id": self.canonical_id,
            "repository": self.repository,
            "timestamp": self.timestamp.isoformat(),
        }
        for key, value in self.details.items():
            if key in _RESERVED_LOG_KEYS or key in flattened:
                key = f"detail_{key}"
            flattened[key] = value
        return flattened
