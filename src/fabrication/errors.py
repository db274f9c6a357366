"""Error taxonomy for the orchestration core.

Every error carries a ``context`` dictionary with the identifiers needed to
reproduce the failure (repository, canonical ID, correlation key, workflow,
external run ID, HTTP status code). Credentials never appear in the context.

Categories:
- Local: InvalidTransitionError, InputValidationError, IssueKilledError,
  TerminalIssueError, IssueNotActiveError, UnexpectedStateError,
  VersionConflictError
- Authorization: AccessDeniedError (propagated verbatim, never retried)
- External: ExternalTransientError (retryable) and ExternalPermanentError
- Lookup/persistence: IssueNotFoundError, RunRecordNotFoundError,
  RunLookupError, RunNotTerminalError, RunWaitTimeoutError,
  MirrorReferenceConflictError, DatabaseError

Duplicate detection is not an error; it is reported through result flags.
"""

from typing import Any, Dict, Optional


class FabricationError(Exception):
    """Base class for all orchestration core errors.

    Attributes:
        message: Human-readable error description.
        context: Identifiers describing where the error happened.
    """

    retryable = False

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context: Dict[str, Any] = {
            key: value for key, value in context.items() if value is not None
        }
        super().__init__(message)

    def add_context(self, **context: Any) -> "FabricationError":
        """Attach identifiers without overwriting ones already present."""
        for key, value in context.items():
            if value is not None:
                self.context.setdefault(key, value)
        return self

    @property
    def status_code(self) -> Optional[int]:
        return self.context.get("status_code")

    def __str__(self) -> str:
        if not self.context:
            return self.message
        rendered = ", ".join(
            f"{key}={value}" for key, value in sorted(self.context.items())
        )
        return f"{self.message} ({rendered})"


class InputValidationError(FabricationError):
    """Raised for malformed input, always before any external call."""


class InvalidTransitionError(FabricationError):
    """Raised when a state change violates the transition table.

    Attributes:
        from_state: The current state.
        to_state: The rejected target state.
    """

    def __init__(self, from_state: Any, to_state: Any, **context: Any):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid transition from {_value(from_state)} to {_value(to_state)}",
            **context,
        )


class TerminalIssueError(FabricationError):
    """Raised when an action targets an issue in a terminal state."""

    def __init__(
        self,
        state: Any,
        message: Optional[str] = None,
        **context: Any,
    ):
        self.state = state
        super().__init__(
            message
            or f"Cannot perform action on issue in terminal state {_value(state)}",
            **context,
        )


class IssueKilledError(TerminalIssueError):
    """Raised when any downstream action targets a KILLED issue."""

    def __init__(self, **context: Any):
        super().__init__(
            "KILLED",
            "Cannot perform action on KILLED issue. "
            "Re-activation requires explicit new intent.",
            **context,
        )


class IssueNotActiveError(FabricationError):
    """Raised when work is requested for an issue that is on HOLD or finished."""

    def __init__(self, state: Any, **context: Any):
        self.state = state
        super().__init__(
            f"Issue in state {_value(state)} is not eligible for dispatch",
            **context,
        )


class UnexpectedStateError(FabricationError):
    """Raised when a compare-and-set on the current state does not hold."""

    def __init__(self, expected: Any, actual: Any, **context: Any):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Expected state {_value(expected)}, found {_value(actual)}",
            **context,
        )


class VersionConflictError(FabricationError):
    """Raised when optimistic locking detects a concurrent update."""

    def __init__(
        self,
        entity_id: str,
        expected_version: int,
        **context: Any,
    ):
        self.entity_id = entity_id
        self.expected_version = expected_version
        super().__init__(
            f"Version conflict for {entity_id}: expected {expected_version}",
            **context,
        )


class IssueNotFoundError(FabricationError):
    """Raised when an issue record does not exist."""

    def __init__(self, issue_id: str):
        self.issue_id = issue_id
        super().__init__("Issue not found", issue_id=issue_id)


class MirrorReferenceConflictError(FabricationError):
    """Raised when an issue's mirror reference would point at a second artifact."""


class AccessDeniedError(FabricationError):
    """Raised when access to a repository is refused."""


class ExternalError(FabricationError):
    """Base class for failures reported by GitHub."""


class ExternalTransientError(ExternalError):
    """Network failure, timeout, rate limit or 5xx. Safe to retry reads."""

    retryable = True


class RateLimitError(ExternalTransientError):
    """Raised when the GitHub API rate limit is exceeded.

    Attributes:
        reset_at: Unix timestamp when the rate limit resets.
        retry_after: Seconds to wait before retrying.
    """

    def __init__(
        self,
        message: str,
        reset_at: Optional[int] = None,
        retry_after: Optional[int] = None,
        **context: Any,
    ):
        super().__init__(message, **context)
        self.reset_at = reset_at
        self.retry_after = retry_after


class ExternalPermanentError(ExternalError):
    """Not-found, unprocessable or malformed responses. Never retried."""


class NotFoundError(ExternalPermanentError):
    """Raised when GitHub reports that a repository, workflow or run is missing."""


class RunLookupError(ExternalTransientError):
    """Raised when a triggered workflow run never became visible."""


class RunRecordNotFoundError(FabricationError):
    """Raised when the run ledger has no record for a run."""


class RunNotTerminalError(FabricationError):
    """Raised when ingestion is requested for a run that has not finished."""


class RunWaitTimeoutError(FabricationError):
    """Raised when a run did not finish within the wait timeout."""


class DatabaseError(FabricationError):
    """Raised when a persistence operation fails.

    Attributes:
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
        **context: Any,
    ):
        self.original_error = original_error
        super().__init__(message, **context)


def _value(state: Any) -> str:
    return getattr(state, "value", str(state))
