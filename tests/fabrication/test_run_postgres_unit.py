"""Unit tests for the statements PostgresRunLedger sends to asyncpg.

A recording connection stands in for the pool, so the tests check the SQL
parameters without a database.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from src.fabrication.runs import RunRecord
from src.fabrication.runs.postgres import _RUN_COLUMNS, PostgresRunLedger


def run_async(coro):
    return asyncio.run(coro)


class RecordingConnection:
    def __init__(self, status: str = "UPDATE 1"):
        self.status = status
        self.calls = []

    async def execute(self, query, *args):
        self.calls.append((query, args))
        return self.status


class RecordingPool:
    def __init__(self, conn: RecordingConnection):
        self.conn = conn

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


class RecordingDatabase:
    def __init__(self, conn: RecordingConnection):
        self.pool = RecordingPool(conn)


def _record(**overrides) -> RunRecord:
    values = dict(
        id="record-1",
        correlation_key="I-1",
        workflow_id="ci.yml",
        owner="acme",
        repo="widgets",
        ref="main",
        inputs={"suite": "smoke"},
        correlation_token="token-1",
        version=3,
    )
    values.update(overrides)
    return RunRecord(**values)


def test_update_writes_inputs_and_outcome_claim():
    conn = RecordingConnection()
    ledger = PostgresRunLedger(RecordingDatabase(conn))
    claimed_at = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

    updated = run_async(ledger.update_with_version(_record(outcome_applied_at=claimed_at)))

    assert updated is True
    query, args = conn.calls[0]
    assert "inputs = $16::jsonb" in query
    assert "outcome_applied_at = $13" in query
    assert json.loads(args[15]) == {"suite": "smoke"}
    assert args[12] == claimed_at
    assert args[-2:] == (3, 2)


def test_update_reports_version_conflict():
    ledger = PostgresRunLedger(RecordingDatabase(RecordingConnection("UPDATE 0")))

    assert run_async(ledger.update_with_version(_record())) is False


def test_insert_parameters_follow_column_order():
    claimed_at = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
    record = _record(outcome_applied_at=claimed_at, external_run_id=77)
    columns = [column.strip() for column in _RUN_COLUMNS.split(",")]

    row = dict(zip(columns, PostgresRunLedger._record_params(record)))
    restored = PostgresRunLedger._row_to_record(row)

    assert len(columns) == len(PostgresRunLedger._record_params(record))
    assert restored == record
