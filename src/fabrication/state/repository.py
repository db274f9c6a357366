"""PostgreSQL repository for issue persistence.

This module implements the IssueRepository protocol using asyncpg. It
provides:
- Connection pooling with a bounded command timeout
- Atomic transactions for issue updates
- Optimistic locking via the version column
- Transition history reconstruction from the issue_transitions table

The schema is defined in migrations/001_fabrication_core.sql.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import timezone
from typing import Any, AsyncIterator, List, Optional

import asyncpg

from src.fabrication.errors import DatabaseError
from src.fabrication.state.models import (
    Issue,
    IssueState,
    MirrorReference,
    StateTransition,
)


logger = logging.getLogger(__name__)


_ISSUE_COLUMNS = """
    id,
    canonical_id,
    title,
    body,
    owner,
    repo,
    state,
    mirror_owner,
    mirror_repo,
    mirror_artifact_id,
    mirror_artifact_url,
    created_at,
    updated_at,
    version
"""


class PostgresPool:
    """Shared asyncpg pool lifecycle used by the PostgreSQL stores.

    Both the issue repository and the run ledger borrow connections from
    one instance, so a single connect() at startup serves the whole process.
    command_timeout bounds every statement, in seconds.
    """

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
        command_timeout: float = 30.0,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout = command_timeout
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise DatabaseError(
                "PostgreSQL pool is not open; call connect() before using the store"
            )
        return self._pool

    async def connect(self) -> None:
        """Open the pool. A second call is a no-op."""
        if self._pool is not None:
            logger.debug("PostgreSQL pool already open")
            return

        try:
            logger.info(
                "Opening PostgreSQL pool",
                extra={
                    "min_pool_size": self.min_pool_size,
                    "max_pool_size": self.max_pool_size,
                },
            )
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout,
            )
            logger.info("PostgreSQL pool ready")
        except Exception as e:
            logger.error(
                "Failed to connect to PostgreSQL",
                extra={"error": str(e)},
            )
            raise DatabaseError(
                f"Failed to connect to PostgreSQL: {e}",
                original_error=e,
            ) from e

    async def disconnect(self) -> None:
        if self._pool is not None:
            logger.info("Closing PostgreSQL pool")
            await self._pool.close()
            self._pool = None

    async def __aenter__(self) -> "PostgresPool":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Yield a connection with an active transaction."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception as e:
            logger.warning(
                "Database health check failed",
                extra={"error": str(e)},
            )
            return False


def rows_affected(status: str) -> int:
    """Parse the row count from an asyncpg command status ("UPDATE 1")."""
    return int(status.split()[-1])


class PostgresIssueRepository:
    """PostgreSQL implementation of the IssueRepository protocol.

    Example:
        >>> async with PostgresPool("postgresql://...") as db:
        ...     repo = PostgresIssueRepository(db)
        ...     issue = await repo.get("c0ffee...")
    """

    def __init__(self, db: PostgresPool):
        self.db = db

    async def save(self, issue: Issue) -> None:
        """Insert a new issue and its initial transitions.

        Raises:
            DatabaseError: If the issue or canonical ID already exists, or
                the insert fails.
        """
        try:
            async with self.db.transaction() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO fabrication_issues ({_ISSUE_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
                    """,
                    *self._issue_params(issue),
                )
                await self._insert_transitions(conn, issue.id, issue.state_history)

            logger.info(
                "Saved issue",
                extra={
                    "issue_id": issue.id,
                    "canonical_id": issue.canonical_id,
                    "state": issue.state.value,
                },
            )
        except asyncpg.UniqueViolationError as e:
            raise DatabaseError(
                "Issue already exists",
                original_error=e,
                issue_id=issue.id,
                canonical_id=issue.canonical_id,
            ) from e
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(
                "Failed to save issue",
                extra={"issue_id": issue.id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to save issue: {e}",
                original_error=e,
                issue_id=issue.id,
            ) from e

    async def get(self, issue_id: str) -> Optional[Issue]:
        return await self._fetch_one("id", issue_id)

    async def get_by_canonical_id(self, canonical_id: str) -> Optional[Issue]:
        return await self._fetch_one("canonical_id", canonical_id)

    async def list_by_state(self, state: IssueState) -> List[Issue]:
        try:
            async with self.db.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT id FROM fabrication_issues
                    WHERE state = $1
                    ORDER BY created_at ASC
                    """,
                    state.value,
                )
        except Exception as e:
            raise DatabaseError(
                f"Failed to list issues by state: {e}",
                original_error=e,
                state=state.value,
            ) from e

        issues = []
        for row in rows:
            issue = await self.get(row["id"])
            if issue is not None:
                issues.append(issue)
        return issues

    async def update_with_version(self, issue: Issue) -> bool:
        """Update an issue if the stored version is ``issue.version - 1``.

        New transitions (those beyond the stored count) are appended in the
        same transaction.

        Returns:
            True if the update succeeded, False on a version conflict.
        """
        expected_version = issue.version - 1
        mirror = issue.mirror

        try:
            async with self.db.transaction() as conn:
                result = await conn.execute(
                    """
                    UPDATE fabrication_issues
                    SET
                        owner = $2,
                        repo = $3,
                        state = $4,
                        mirror_owner = $5,
                        mirror_repo = $6,
                        mirror_artifact_id = $7,
                        mirror_artifact_url = $8,
                        updated_at = $9,
                        version = $10
                    WHERE id = $1 AND version = $11
                    """,
                    issue.id,
                    issue.owner,
                    issue.repo,
                    issue.state.value,
                    mirror.owner if mirror else None,
                    mirror.repo if mirror else None,
                    mirror.artifact_id if mirror else None,
                    mirror.artifact_url if mirror else None,
                    issue.updated_at,
                    issue.version,
                    expected_version,
                )

                if rows_affected(result) == 0:
                    logger.warning(
                        "Version conflict during issue update",
                        extra={
                            "issue_id": issue.id,
                            "expected_version": expected_version,
                        },
                    )
                    return False

                existing_count = await conn.fetchval(
                    "SELECT COUNT(*) FROM issue_transitions WHERE issue_id = $1",
                    issue.id,
                )
                await self._insert_transitions(
                    conn, issue.id, issue.state_history[existing_count:]
                )
                return True

        except Exception as e:
            logger.error(
                "Failed to update issue",
                extra={"issue_id": issue.id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to update issue: {e}",
                original_error=e,
                issue_id=issue.id,
            ) from e

    async def health_check(self) -> bool:
        return await self.db.health_check()

    async def _fetch_one(self, column: str, value: str) -> Optional[Issue]:
        try:
            async with self.db.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_ISSUE_COLUMNS} FROM fabrication_issues WHERE {column} = $1",
                    value,
                )
                if row is None:
                    return None

                transition_rows = await conn.fetch(
                    """
                    SELECT from_state, to_state, actor, timestamp, details
                    FROM issue_transitions
                    WHERE issue_id = $1
                    ORDER BY timestamp ASC, id ASC
                    """,
                    row["id"],
                )
        except Exception as e:
            logger.error(
                "Failed to get issue",
                extra={column: value, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to get issue: {e}",
                original_error=e,
            ) from e

        return self._row_to_issue(row, transition_rows)

    @staticmethod
    async def _insert_transitions(
        conn: asyncpg.Connection,
        issue_id: str,
        transitions: List[StateTransition],
    ) -> None:
        for transition in transitions:
            await conn.execute(
                """
                INSERT INTO issue_transitions (
                    issue_id, from_state, to_state, actor, timestamp, details
                ) VALUES ($1, $2, $3, $4, $5, $6)
                """,
                issue_id,
                transition.from_state.value,
                transition.to_state.value,
                transition.actor,
                transition.timestamp,
                json.dumps(transition.details) if transition.details else None,
            )

    @staticmethod
    def _issue_params(issue: Issue) -> List[Any]:
        mirror = issue.mirror
        return [
            issue.id,
            issue.canonical_id,
            issue.title,
            issue.body,
            issue.owner,
            issue.repo,
            issue.state.value,
            mirror.owner if mirror else None,
            mirror.repo if mirror else None,
            mirror.artifact_id if mirror else None,
            mirror.artifact_url if mirror else None,
            issue.created_at,
            issue.updated_at,
            issue.version,
        ]

    @staticmethod
    def _row_to_issue(row: Any, transition_rows: List[Any]) -> Issue:
        history = [
            StateTransition(
                from_state=IssueState(tr["from_state"]),
                to_state=IssueState(tr["to_state"]),
                actor=tr["actor"],
                timestamp=as_utc(tr["timestamp"]),
                details=json.loads(tr["details"]) if tr["details"] else {},
            )
            for tr in transition_rows
        ]

        mirror = None
        if row["mirror_artifact_id"] is not None:
            mirror = MirrorReference(
                owner=row["mirror_owner"],
                repo=row["mirror_repo"],
                artifact_id=row["mirror_artifact_id"],
                artifact_url=row["mirror_artifact_url"],
            )

        return Issue(
            id=row["id"],
            canonical_id=row["canonical_id"],
            title=row["title"] or "",
            body=row["body"] or "",
            owner=row["owner"],
            repo=row["repo"],
            state=IssueState(row["state"]),
            mirror=mirror,
            state_history=history,
            created_at=as_utc(row["created_at"]),
            updated_at=as_utc(row["updated_at"]),
            version=row["version"],
        )


def as_utc(value: Any) -> Any:
    """Attach UTC to naive timestamps read from TIMESTAMP columns."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
