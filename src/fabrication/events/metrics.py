"""Prometheus metrics for orchestration observability.

Metrics Defined:
- fabrication_transitions_total: Counter of applied state transitions
- fabrication_dispatches_total: Counter of dispatches by outcome
- fabrication_run_status_total: Counter of polled run statuses
- fabrication_runs_ingested_total: Counter of ingested runs by status
- fabrication_run_duration_seconds: Histogram of ingested run durations
- fabrication_errors_total: Counter of errors by stage
- fabrication_issues_by_state: Gauge of current issues per lifecycle state

Metrics are exposed at the ``/metrics`` endpoint in Prometheus format.
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from src.fabrication.events.emitter import EventEmitter
from src.fabrication.events.models import EventType, FabricationEvent
from src.fabrication.state.models import IssueState


logger = logging.getLogger(__name__)


# Run durations from 10 seconds to 2 hours
DEFAULT_DURATION_BUCKETS = (
    10.0,
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
    1200.0,
    1800.0,
    3600.0,
    7200.0,
)


class FabricationMetrics:
    """Container for all orchestration Prometheus metrics.

    Pass a custom registry in tests to avoid duplicate registration on the
    default one.

    Example:
        >>> metrics = FabricationMetrics(CollectorRegistry())
        >>> metrics.record_dispatch("org/repo", "ci.yml", is_existing=False)
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.transitions_total = Counter(
            "fabrication_transitions_total",
            "Total number of applied issue state transitions",
            labelnames=["from_state", "to_state"],
            registry=self.registry,
        )

        self.dispatches_total = Counter(
            "fabrication_dispatches_total",
            "Total number of workflow dispatches by outcome",
            labelnames=["repository", "workflow_id", "outcome"],
            registry=self.registry,
        )

        self.run_status_total = Counter(
            "fabrication_run_status_total",
            "Total number of polled run status observations",
            labelnames=["status"],
            registry=self.registry,
        )

        self.runs_ingested_total = Counter(
            "fabrication_runs_ingested_total",
            "Total number of ingested workflow runs",
            labelnames=["repository", "status"],
            registry=self.registry,
        )

        self.run_duration_seconds = Histogram(
            "fabrication_run_duration_seconds",
            "Duration of ingested workflow runs in seconds",
            labelnames=["repository"],
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.errors_total = Counter(
            "fabrication_errors_total",
            "Total number of orchestration errors",
            labelnames=["stage", "error_type"],
            registry=self.registry,
        )

        self.issues_by_state = Gauge(
            "fabrication_issues_by_state",
            "Current number of issues in each lifecycle state",
            labelnames=["state"],
            registry=self.registry,
        )

        for state in IssueState:
            self.issues_by_state.labels(state=state.value).set(0)

    def record_transition(self, from_state: str, to_state: str) -> None:
        self.transitions_total.labels(from_state=from_state, to_state=to_state).inc()
        self.update_state_count(from_state, -1)
        self.update_state_count(to_state, +1)

    def record_dispatch(self, repository: str, workflow_id: str, is_existing: bool) -> None:
        outcome = "existing" if is_existing else "triggered"
        self.dispatches_total.labels(
            repository=repository,
            workflow_id=workflow_id,
            outcome=outcome,
        ).inc()

    def record_run_status(self, status: str) -> None:
        self.run_status_total.labels(status=status).inc()

    def record_ingestion(
        self,
        repository: str,
        status: str,
        duration_seconds: Optional[float],
    ) -> None:
        self.runs_ingested_total.labels(repository=repository, status=status).inc()
        if duration_seconds is not None:
            self.run_duration_seconds.labels(repository=repository).observe(
                duration_seconds
            )

    def record_error(self, stage: str, error_type: str) -> None:
        self.errors_total.labels(stage=stage, error_type=error_type).inc()

    def update_state_count(self, state: str, delta: int) -> None:
        """Adjust the issue count of a state, never below zero."""
        if state in IssueState.__members__:
            gauge = self.issues_by_state.labels(state=state)
            gauge.set(max(0, gauge._value.get() + delta))

    def set_state_count(self, state: str, count: int) -> None:
        if state in IssueState.__members__:
            self.issues_by_state.labels(state=state).set(max(0, count))


# Global metrics instance for the default registry
_default_metrics: Optional[FabricationMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> FabricationMetrics:
    """Get the global metrics instance, or a new one for a custom registry."""
    global _default_metrics

    if registry is not None:
        return FabricationMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = FabricationMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Render metrics in Prometheus text format for the /metrics endpoint."""
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics.

    - STATE_TRANSITION: transitions counter and state gauge
    - RUN_DISPATCHED: dispatch counter by outcome
    - RUN_STATUS: run status counter
    - RUN_INGESTED: ingestion counter and duration histogram
    - ERROR, TIMEOUT: error counter by stage
    """

    def __init__(
        self,
        metrics: Optional[FabricationMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)

    @property
    def metrics(self) -> FabricationMetrics:
        return self._metrics

    async def emit(self, event: FabricationEvent) -> None:
        details = event.details
        repository = event.repository or "unknown"
        try:
            if event.event_type == EventType.STATE_TRANSITION:
                from_state = details.get("from_state")
                to_state = details.get("to_state")
                if from_state and to_state:
                    self._metrics.record_transition(from_state, to_state)
                elif to_state:
                    # Issue creation has no source state
                    self._metrics.update_state_count(to_state, +1)
            elif event.event_type == EventType.RUN_DISPATCHED:
                self._metrics.record_dispatch(
                    repository,
                    details.get("workflow_id", "unknown"),
                    bool(details.get("is_existing")),
                )
            elif event.event_type == EventType.RUN_STATUS:
                self._metrics.record_run_status(details.get("status", "unknown"))
            elif event.event_type == EventType.RUN_INGESTED:
                duration = details.get("duration_seconds")
                self._metrics.record_ingestion(
                    repository,
                    details.get("status", "unknown"),
                    float(duration) if duration is not None else None,
                )
            elif event.event_type == EventType.ERROR:
                self._metrics.record_error(
                    details.get("stage", "unknown"),
                    details.get("error_type", "unknown"),
                )
            elif event.event_type == EventType.TIMEOUT:
                self._metrics.record_error(
                    details.get("operation", "unknown"),
                    "timeout",
                )
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={
                    "event_type": event.event_type.value,
                    "issue_id": event.issue_id,
                },
            )
