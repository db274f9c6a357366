"""Unit tests for orchestration events, emitters and Prometheus metrics."""

import asyncio
import logging

import pytest
from prometheus_client import CollectorRegistry

from src.fabrication.events import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    EventType,
    FabricationEvent,
    FabricationMetrics,
    LoggingEventEmitter,
    MetricsEventEmitter,
    NullEventEmitter,
    create_event_emitter,
    generate_metrics_output,
)


def run_async(coro):
    return asyncio.run(coro)


def _event(event_type=EventType.STATE_TRANSITION, **details) -> FabricationEvent:
    return FabricationEvent(
        event_type=event_type,
        issue_id="issue-1",
        canonical_id="I-1",
        repository="acme/widgets",
        details=details,
    )


class FailingEmitter(EventEmitter):
    async def emit(self, event: FabricationEvent) -> None:
        raise RuntimeError("sink unavailable")


class ListEmitter(EventEmitter):
    def __init__(self):
        self.events = []

    async def emit(self, event: FabricationEvent) -> None:
        self.events.append(event)


class TestFabricationEvent:
    def test_to_log_dict_flattens_details(self):
        flattened = _event(from_state="CREATED", to_state="SPEC_READY").to_log_dict()

        assert flattened["event_type"] == "state_transition"
        assert flattened["canonical_id"] == "I-1"
        assert flattened["from_state"] == "CREATED"
        assert flattened["to_state"] == "SPEC_READY"

    def test_reserved_keys_are_prefixed(self):
        flattened = _event(EventType.ERROR, message="boom", name="x", issue_id="other").to_log_dict()

        assert flattened["detail_message"] == "boom"
        assert flattened["detail_name"] == "x"
        assert flattened["detail_issue_id"] == "other"
        assert flattened["issue_id"] == "issue-1"
        assert "message" not in flattened

    def test_issue_id_required(self):
        with pytest.raises(ValueError):
            FabricationEvent(event_type=EventType.ERROR, issue_id="")


class TestEmitters:
    def test_logging_emitter_levels(self, caplog):
        emitter = LoggingEventEmitter(logger_name="fabrication.test.events")

        with caplog.at_level(logging.INFO, logger="fabrication.test.events"):
            run_async(emitter.emit(_event(to_state="SPEC_READY")))
            run_async(emitter.emit(_event(EventType.TIMEOUT, operation="wait_for_run")))
            run_async(emitter.emit(_event(EventType.ERROR, stage="dispatch", message="boom")))

        levels = [record.levelno for record in caplog.records]
        assert levels == [logging.INFO, logging.WARNING, logging.ERROR]
        assert caplog.records[0].to_state == "SPEC_READY"
        assert caplog.records[2].detail_message == "boom"

    def test_composite_isolates_failing_sinks(self):
        recorder = ListEmitter()
        composite = CompositeEventEmitter([FailingEmitter(), recorder])

        run_async(composite.emit(_event()))

        assert len(recorder.events) == 1

    def test_composite_emitters_is_a_copy(self):
        composite = CompositeEventEmitter()
        composite.add_emitter(NullEventEmitter())
        composite.emitters.clear()
        assert len(composite.emitters) == 1

    def test_null_emitter_discards(self):
        run_async(NullEventEmitter().emit(_event()))

    def test_factory(self):
        assert isinstance(create_event_emitter(), LoggingEventEmitter)
        assert isinstance(create_event_emitter([EventSinkType.LOGGING]), LoggingEventEmitter)
        composite = create_event_emitter([EventSinkType.LOGGING, EventSinkType.METRICS])
        assert isinstance(composite, CompositeEventEmitter)
        assert {type(emitter) for emitter in composite.emitters} == {
            LoggingEventEmitter,
            MetricsEventEmitter,
        }


class TestMetrics:
    @pytest.fixture
    def registry(self):
        return CollectorRegistry()

    @pytest.fixture
    def emitter(self, registry):
        return MetricsEventEmitter(metrics=FabricationMetrics(registry))

    def _state_count(self, registry, state):
        return registry.get_sample_value("fabrication_issues_by_state", {"state": state})

    def test_creation_and_transitions_update_state_gauge(self, registry, emitter):
        run_async(emitter.emit(_event(from_state=None, to_state="CREATED")))
        run_async(emitter.emit(_event(from_state="CREATED", to_state="SPEC_READY")))

        assert self._state_count(registry, "CREATED") == 0
        assert self._state_count(registry, "SPEC_READY") == 1
        assert registry.get_sample_value(
            "fabrication_transitions_total",
            {"from_state": "CREATED", "to_state": "SPEC_READY"},
        ) == 1

    def test_state_gauge_never_negative(self, registry):
        metrics = FabricationMetrics(registry)
        metrics.update_state_count("HOLD", -1)
        metrics.update_state_count("NOT_A_STATE", +1)
        assert self._state_count(registry, "HOLD") == 0

    def test_run_events(self, registry, emitter):
        run_async(emitter.emit(_event(EventType.RUN_DISPATCHED, workflow_id="ci.yml", is_existing=False)))
        run_async(emitter.emit(_event(EventType.RUN_DISPATCHED, workflow_id="ci.yml", is_existing=True)))
        run_async(emitter.emit(_event(EventType.RUN_STATUS, status="RUNNING")))
        run_async(
            emitter.emit(_event(EventType.RUN_INGESTED, status="SUCCEEDED", duration_seconds=600))
        )

        for outcome in ("triggered", "existing"):
            assert registry.get_sample_value(
                "fabrication_dispatches_total",
                {"repository": "acme/widgets", "workflow_id": "ci.yml", "outcome": outcome},
            ) == 1
        assert registry.get_sample_value("fabrication_run_status_total", {"status": "RUNNING"}) == 1
        assert registry.get_sample_value(
            "fabrication_runs_ingested_total",
            {"repository": "acme/widgets", "status": "SUCCEEDED"},
        ) == 1
        assert registry.get_sample_value(
            "fabrication_run_duration_seconds_sum", {"repository": "acme/widgets"}
        ) == 600

    def test_errors_and_timeouts_counted(self, registry, emitter):
        run_async(emitter.emit(_event(EventType.ERROR, stage="dispatch", error_type="AccessDeniedError")))
        run_async(emitter.emit(_event(EventType.TIMEOUT, operation="wait_for_run")))

        assert registry.get_sample_value(
            "fabrication_errors_total",
            {"stage": "dispatch", "error_type": "AccessDeniedError"},
        ) == 1
        assert registry.get_sample_value(
            "fabrication_errors_total",
            {"stage": "wait_for_run", "error_type": "timeout"},
        ) == 1

    def test_generate_output(self, registry):
        FabricationMetrics(registry).record_error("mirror", "ExternalTransientError")
        output = generate_metrics_output(registry)
        assert b"fabrication_errors_total" in output
