"""PostgreSQL implementation of the RunLedger protocol.

Uniqueness on (correlation_key, workflow_id) is enforced by a table
constraint; insert_if_absent relies on INSERT ... ON CONFLICT DO NOTHING so
that two racing dispatchers cannot both reserve the same key. Updates are
compare-and-set on the version column.

The schema is defined in migrations/001_fabrication_core.sql.
"""

import json
import logging
from typing import Any, List, Optional, Tuple

from src.fabrication.errors import DatabaseError
from src.fabrication.runs.models import (
    DispatchState,
    IngestResult,
    RunRecord,
    RunStatus,
)
from src.fabrication.state.repository import PostgresPool, as_utc, rows_affected


logger = logging.getLogger(__name__)


_RUN_COLUMNS = """
    id,
    correlation_key,
    workflow_id,
    owner,
    repo,
    ref,
    inputs,
    correlation_token,
    dispatch_state,
    external_run_id,
    run_url,
    status,
    raw_status,
    raw_conclusion,
    dispatched_at,
    last_polled_at,
    external_updated_at,
    completed_at,
    outcome_applied_at,
    result,
    error,
    created_at,
    updated_at,
    version
"""


class PostgresRunLedger:
    """RunLedger backed by the run_records table."""

    def __init__(self, db: PostgresPool):
        self.db = db

    async def get(self, correlation_key: str, workflow_id: str) -> Optional[RunRecord]:
        return await self._fetch_one(
            "correlation_key = $1 AND workflow_id = $2",
            correlation_key,
            workflow_id,
        )

    async def get_by_id(self, record_id: str) -> Optional[RunRecord]:
        return await self._fetch_one("id = $1", record_id)

    async def get_by_external_run_id(self, external_run_id: int) -> Optional[RunRecord]:
        return await self._fetch_one("external_run_id = $1", external_run_id)

    async def list_by_correlation_key(self, correlation_key: str) -> List[RunRecord]:
        try:
            async with self.db.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {_RUN_COLUMNS} FROM run_records
                    WHERE correlation_key = $1
                    ORDER BY created_at ASC
                    """,
                    correlation_key,
                )
        except Exception as e:
            raise DatabaseError(
                f"Failed to list run records: {e}",
                original_error=e,
                correlation_key=correlation_key,
            ) from e
        return [self._row_to_record(row) for row in rows]

    async def insert_if_absent(self, record: RunRecord) -> Tuple[RunRecord, bool]:
        # A concurrent discard can remove the conflicting row between the
        # insert and the read, so the pair is attempted twice.
        for _ in range(2):
            try:
                async with self.db.pool.acquire() as conn:
                    inserted = await conn.fetchval(
                        f"""
                        INSERT INTO run_records ({_RUN_COLUMNS})
                        VALUES (
                            $1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10, $11, $12,
                            $13, $14, $15, $16, $17, $18, $19, $20::jsonb, $21, $22, $23, $24
                        )
                        ON CONFLICT (correlation_key, workflow_id) DO NOTHING
                        RETURNING id
                        """,
                        *self._record_params(record),
                    )
            except Exception as e:
                logger.error(
                    "Failed to insert run record",
                    extra={
                        "correlation_key": record.correlation_key,
                        "workflow_id": record.workflow_id,
                        "error": str(e),
                    },
                )
                raise DatabaseError(
                    f"Failed to insert run record: {e}",
                    original_error=e,
                    correlation_key=record.correlation_key,
                    workflow_id=record.workflow_id,
                ) from e

            if inserted is not None:
                return record, True

            existing = await self.get(record.correlation_key, record.workflow_id)
            if existing is not None:
                return existing, False

        raise DatabaseError(
            "Run record key kept changing during insert",
            correlation_key=record.correlation_key,
            workflow_id=record.workflow_id,
        )

    async def update_with_version(self, record: RunRecord) -> bool:
        try:
            async with self.db.pool.acquire() as conn:
                result = await conn.execute(
                    """
                    UPDATE run_records
                    SET
                        correlation_token = $2,
                        dispatch_state = $3,
                        external_run_id = $4,
                        run_url = $5,
                        status = $6,
                        raw_status = $7,
                        raw_conclusion = $8,
                        dispatched_at = $9,
                        last_polled_at = $10,
                        external_updated_at = $11,
                        completed_at = $12,
                        outcome_applied_at = $13,
                        result = $14::jsonb,
                        error = $15,
                        inputs = $16::jsonb,
                        updated_at = $17,
                        version = $18
                    WHERE id = $1 AND version = $19
                    """,
                    record.id,
                    record.correlation_token,
                    record.dispatch_state.value,
                    record.external_run_id,
                    record.run_url,
                    record.status.value,
                    record.raw_status,
                    record.raw_conclusion,
                    record.dispatched_at,
                    record.last_polled_at,
                    record.external_updated_at,
                    record.completed_at,
                    record.outcome_applied_at,
                    record.result.model_dump_json() if record.result else None,
                    record.error,
                    json.dumps(record.inputs),
                    record.updated_at,
                    record.version,
                    record.version - 1,
                )
        except Exception as e:
            logger.error(
                "Failed to update run record",
                extra={"run_record_id": record.id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to update run record: {e}",
                original_error=e,
                run_record_id=record.id,
            ) from e

        if rows_affected(result) == 0:
            logger.warning(
                "Version conflict during run record update",
                extra={
                    "run_record_id": record.id,
                    "expected_version": record.version - 1,
                },
            )
            return False
        return True

    async def discard(self, record_id: str, version: int) -> bool:
        try:
            async with self.db.pool.acquire() as conn:
                result = await conn.execute(
                    """
                    DELETE FROM run_records
                    WHERE id = $1 AND version = $2 AND dispatch_state = $3
                    """,
                    record_id,
                    version,
                    DispatchState.DISPATCHING.value,
                )
        except Exception as e:
            raise DatabaseError(
                f"Failed to discard run reservation: {e}",
                original_error=e,
                run_record_id=record_id,
            ) from e
        return rows_affected(result) > 0

    async def health_check(self) -> bool:
        return await self.db.health_check()

    async def _fetch_one(self, where: str, *args: Any) -> Optional[RunRecord]:
        try:
            async with self.db.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_RUN_COLUMNS} FROM run_records WHERE {where}",
                    *args,
                )
        except Exception as e:
            logger.error(
                "Failed to get run record",
                extra={"error": str(e)},
            )
            raise DatabaseError(
                f"Failed to get run record: {e}",
                original_error=e,
            ) from e
        if row is None:
            return None
        return self._row_to_record(row)

    @staticmethod
    def _record_params(record: RunRecord) -> List[Any]:
        return [
            record.id,
            record.correlation_key,
            record.workflow_id,
            record.owner,
            record.repo,
            record.ref,
            json.dumps(record.inputs),
            record.correlation_token,
            record.dispatch_state.value,
            record.external_run_id,
            record.run_url,
            record.status.value,
            record.raw_status,
            record.raw_conclusion,
            record.dispatched_at,
            record.last_polled_at,
            record.external_updated_at,
            record.completed_at,
            record.outcome_applied_at,
            record.result.model_dump_json() if record.result else None,
            record.error,
            record.created_at,
            record.updated_at,
            record.version,
        ]

    @staticmethod
    def _row_to_record(row: Any) -> RunRecord:
        inputs = row["inputs"]
        if isinstance(inputs, str):
            inputs = json.loads(inputs)

        result = None
        if row["result"] is not None:
            result = IngestResult.model_validate_json(row["result"])

        return RunRecord(
            id=row["id"],
            correlation_key=row["correlation_key"],
            workflow_id=row["workflow_id"],
            owner=row["owner"],
            repo=row["repo"],
            ref=row["ref"],
            inputs=inputs or {},
            correlation_token=row["correlation_token"],
            dispatch_state=DispatchState(row["dispatch_state"]),
            external_run_id=row["external_run_id"],
            run_url=row["run_url"],
            status=RunStatus(row["status"]),
            raw_status=row["raw_status"],
            raw_conclusion=row["raw_conclusion"],
            dispatched_at=as_utc(row["dispatched_at"]),
            last_polled_at=as_utc(row["last_polled_at"]),
            external_updated_at=as_utc(row["external_updated_at"]),
            completed_at=as_utc(row["completed_at"]),
            outcome_applied_at=as_utc(row["outcome_applied_at"]),
            result=result,
            error=row["error"],
            created_at=as_utc(row["created_at"]),
            updated_at=as_utc(row["updated_at"]),
            version=row["version"],
        )
