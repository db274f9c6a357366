"""Sinks for fabrication events.

Every state change, dispatch, run status observation and ingestion is
published through an EventEmitter. Sinks are best effort: the orchestrator
logs and drops any exception a sink raises, and CompositeEventEmitter keeps
one broken sink from starving the rest. The Prometheus sink is defined in
metrics.py.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, List, Optional

from src.fabrication.events.models import EventType, FabricationEvent


logger = logging.getLogger(__name__)

_EVENT_LOG_LEVELS: Dict[EventType, int] = {
    EventType.ERROR: logging.ERROR,
    EventType.TIMEOUT: logging.WARNING,
}


class EventSinkType(str, Enum):
    """Sinks selectable through create_event_emitter()."""

    LOGGING = "logging"
    METRICS = "metrics"


class EventEmitter(ABC):
    """Destination for FabricationEvent records.

    emit() runs on the orchestrator's event loop and must not block it.
    """

    @abstractmethod
    async def emit(self, event: FabricationEvent) -> None:
        """Record one event."""

    async def close(self) -> None:
        return None


class LoggingEventEmitter(EventEmitter):
    """Writes each event as one log record with the payload in ``extra``.

    ERROR events log at ERROR, TIMEOUT at WARNING, the rest at INFO.
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger

    async def emit(self, event: FabricationEvent) -> None:
        self._logger.log(
            _EVENT_LOG_LEVELS.get(event.event_type, logging.INFO),
            "%s on issue %s",
            event.event_type.value,
            event.issue_id,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Fans every event out to a list of sinks, in order."""

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._sinks: List[EventEmitter] = list(emitters or [])

    def add_emitter(self, emitter: EventEmitter) -> None:
        self._sinks.append(emitter)

    @property
    def emitters(self) -> List[EventEmitter]:
        return list(self._sinks)

    async def emit(self, event: FabricationEvent) -> None:
        for sink in self._sinks:
            try:
                await sink.emit(event)
            except Exception as e:
                logger.error(
                    "Event sink %s rejected %s: %s",
                    type(sink).__name__,
                    event.event_type.value,
                    e,
                    extra={
                        "sink": type(sink).__name__,
                        "event_type": event.event_type.value,
                        "issue_id": event.issue_id,
                    },
                )

    async def close(self) -> None:
        for sink in self._sinks:
            try:
                await sink.close()
            except Exception as e:
                logger.error("Event sink %s failed to close: %s", type(sink).__name__, e)


class NullEventEmitter(EventEmitter):
    """Drops every event."""

    async def emit(self, event: FabricationEvent) -> None:
        return None


def _build_sink(sink_type: EventSinkType, logger_name: Optional[str]) -> Optional[EventEmitter]:
    if sink_type == EventSinkType.LOGGING:
        return LoggingEventEmitter(logger_name=logger_name)
    if sink_type == EventSinkType.METRICS:
        # metrics.py imports this module
        from src.fabrication.events.metrics import MetricsEventEmitter

        return MetricsEventEmitter()
    logger.warning("Ignoring unknown event sink %s", sink_type)
    return None


def create_event_emitter(
    sink_types: Optional[List[EventSinkType]] = None,
    logger_name: Optional[str] = None,
) -> EventEmitter:
    """Build the emitter for a set of sinks.

    Args:
        sink_types: Sinks to enable. Logging only when omitted.
        logger_name: Logger used by the logging sink.

    Returns:
        The sink itself when only one is requested, otherwise a
        CompositeEventEmitter over all of them.
    """
    sinks = [
        sink
        for sink in (_build_sink(t, logger_name) for t in (sink_types or [EventSinkType.LOGGING]))
        if sink is not None
    ]
    if len(sinks) == 1:
        return sinks[0]
    return CompositeEventEmitter(sinks)
