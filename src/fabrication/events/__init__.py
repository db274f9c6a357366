"""Orchestration events and metrics.

Events are emitted for state transitions, mirror resolution, run dispatch,
status and ingestion, errors and timeouts. Sinks: structured logs and
Prometheus metrics.
"""

from src.fabrication.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    create_event_emitter,
)
from src.fabrication.events.metrics import (
    FabricationMetrics,
    MetricsEventEmitter,
    generate_metrics_output,
    get_metrics,
)
from src.fabrication.events.models import EventType, FabricationEvent

__all__ = [
    "CompositeEventEmitter",
    "EventEmitter",
    "EventSinkType",
    "EventType",
    "FabricationEvent",
    "FabricationMetrics",
    "LoggingEventEmitter",
    "MetricsEventEmitter",
    "NullEventEmitter",
    "create_event_emitter",
    "generate_metrics_output",
    "get_metrics",
]
