"""Run ledger: the single source of truth for dispatch idempotency.

The RunAdapter depends on the RunLedger protocol, never on a concrete
store. Implementations:
- InMemoryRunLedger: tests and local development
- PostgresRunLedger (postgres.py): production
"""

from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable

from src.fabrication.runs.models import DispatchState, RunRecord


@runtime_checkable
class RunLedger(Protocol):
    """Protocol for run record persistence.

    Uniqueness on (correlation_key, workflow_id) is enforced by the store
    at write time. No method retries internally.
    """

    async def get(self, correlation_key: str, workflow_id: str) -> Optional[RunRecord]:
        ...

    async def get_by_id(self, record_id: str) -> Optional[RunRecord]:
        ...

    async def get_by_external_run_id(self, external_run_id: int) -> Optional[RunRecord]:
        ...

    async def list_by_correlation_key(self, correlation_key: str) -> List[RunRecord]:
        ...

    async def insert_if_absent(self, record: RunRecord) -> Tuple[RunRecord, bool]:
        """Atomically insert a record unless its key is taken.

        Returns:
            ``(record, True)`` when inserted, otherwise the stored record for
            the same (correlation_key, workflow_id) and False.
        """
        ...

    async def update_with_version(self, record: RunRecord) -> bool:
        """Update a record if the stored version is ``record.version - 1``."""
        ...

    async def discard(self, record_id: str, version: int) -> bool:
        """Delete a DISPATCHING reservation at the given version.

        Records in any other dispatch state are never deleted.

        Returns:
            True if the reservation was removed.
        """
        ...


class InMemoryRunLedger:
    """Dictionary-backed RunLedger.

    No method awaits between reading and writing, so each call is atomic
    with respect to other coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self._records: Dict[str, RunRecord] = {}
        self._keys: Dict[Tuple[str, str], str] = {}

    async def get(self, correlation_key: str, workflow_id: str) -> Optional[RunRecord]:
        record_id = self._keys.get((correlation_key, workflow_id))
        if record_id is None:
            return None
        return self._records.get(record_id)

    async def get_by_id(self, record_id: str) -> Optional[RunRecord]:
        return self._records.get(record_id)

    async def get_by_external_run_id(self, external_run_id: int) -> Optional[RunRecord]:
        for record in self._records.values():
            if record.external_run_id == external_run_id:
                return record
        return None

    async def list_by_correlation_key(self, correlation_key: str) -> List[RunRecord]:
        records = [
            record
            for record in self._records.values()
            if record.correlation_key == correlation_key
        ]
        return sorted(records, key=lambda record: record.created_at)

    async def insert_if_absent(self, record: RunRecord) -> Tuple[RunRecord, bool]:
        key = (record.correlation_key, record.workflow_id)
        existing_id = self._keys.get(key)
        if existing_id is not None:
            return self._records[existing_id], False
        self._records[record.id] = record
        self._keys[key] = record.id
        return record, True

    async def update_with_version(self, record: RunRecord) -> bool:
        existing = self._records.get(record.id)
        if existing is None or existing.version != record.version - 1:
            return False
        self._records[record.id] = record
        return True

    async def discard(self, record_id: str, version: int) -> bool:
        existing = self._records.get(record_id)
        if (
            existing is None
            or existing.version != version
            or existing.dispatch_state != DispatchState.DISPATCHING
        ):
            return False
        del self._records[record_id]
        del self._keys[(existing.correlation_key, existing.workflow_id)]
        return True

    async def health_check(self) -> bool:
        return True

    def clear(self) -> None:
        self._records.clear()
        self._keys.clear()
