from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from liveflow.logging import get_logger


class ErrorCode(Enum):
    """Standard error codes for liveflow operations.

    Each category has its own number range so a code identifies the kind of
    failure without inspecting the exception class.

    Attributes:
        CONFIG_*: Configuration errors (1xxx)
        VALIDATION_*: Pipeline definition and input validation errors (2xxx)
        GRAPH_*: Dependency graph errors (3xxx)
        EXECUTION_*: Runtime execution errors (4xxx)
        RESOURCE_*: Upstream availability errors (5xxx)
        DATA_*: Data quality, schema and checkpoint errors (6xxx)
        COMMIT_*: Storage commit errors (7xxx)
        RETRY_*: Transient/retryable errors (9xxx)
    """
    # Configuration errors (1xxx)
    CONFIG_ERROR = "CONFIG_001"
    CONFIG_INVALID = "CONFIG_002"

    # Validation errors (2xxx)
    VALIDATION_ERROR = "VALIDATION_001"
    INVALID_ARGUMENT = "VALIDATION_002"
    INVALID_IDENTIFIER = "VALIDATION_003"
    INVALID_EXPRESSION = "VALIDATION_004"
    DUPLICATE_TABLE = "VALIDATION_005"

    # Graph errors (3xxx)
    DEPENDENCY_CYCLE = "GRAPH_001"
    UNDEFINED_TABLE = "GRAPH_002"
    INVALID_STREAMING_READ = "GRAPH_003"

    # Execution errors (4xxx)
    EXECUTION_ERROR = "EXECUTION_001"
    TRANSFORMATION_ERROR = "EXECUTION_002"
    TIMEOUT_ERROR = "EXECUTION_003"
    RUN_CANCELLED = "EXECUTION_004"

    # Resource errors (5xxx)
    UPSTREAM_UNAVAILABLE = "RESOURCE_001"
    TABLE_NOT_FOUND = "RESOURCE_002"

    # Data errors (6xxx)
    DATA_QUALITY_ERROR = "DATA_001"
    SCHEMA_MISMATCH = "DATA_002"
    CHECKPOINT_GAP = "DATA_003"
    MALFORMED_RECORD = "DATA_004"

    # Commit errors (7xxx)
    COMMIT_ERROR = "COMMIT_001"
    COMMIT_CONFLICT = "COMMIT_002"

    # Retry/Transient errors (9xxx)
    RETRYABLE_ERROR = "RETRY_001"


class LiveFlowError(Exception):
    """Base exception for all liveflow errors.

    Attributes:
        message: Error message
        error_code: Error code from ErrorCode enum
        details: Additional error details
        cause: Optional underlying exception
        is_retryable: Whether the error is transient and can be retried
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.EXECUTION_ERROR,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        is_retryable: bool = False
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.cause = cause
        self.is_retryable = is_retryable

        get_logger(__name__).error(
            "error.raised",
            extra={
                "error_type": self.__class__.__name__,
                "error_code": error_code.value,
                "error_message": message,
                "details": self.details,
                "is_retryable": is_retryable,
            },
            exc_info=cause if cause is not None else None,
        )

    def __str__(self) -> str:
        msg = f"[{self.error_code.value}] {self.message}"
        if self.cause:
            msg = f"{msg} (caused by: {type(self.cause).__name__}: {str(self.cause)})"
        return msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code.value,
            "error_name": self.error_code.name,
            "details": self.details,
            "is_retryable": self.is_retryable
        }

    @classmethod
    def from_error_code(
        cls,
        error_code: ErrorCode,
        message: str,
        **kwargs
    ) -> "LiveFlowError":
        """Create exception from error code.

        Timeout and retry codes default to retryable unless the caller says
        otherwise.
        """
        if error_code in [
            ErrorCode.TIMEOUT_ERROR,
            ErrorCode.RETRYABLE_ERROR,
            ErrorCode.UPSTREAM_UNAVAILABLE,
            ErrorCode.COMMIT_CONFLICT,
        ]:
            kwargs.setdefault('is_retryable', True)

        return cls(message=message, error_code=error_code, **kwargs)


class PipelineDefinitionError(LiveFlowError):
    """Raised when a pipeline definition is invalid. Always fatal before a run."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message, error_code=error_code, details=details, cause=cause)


class CyclicDependencyError(PipelineDefinitionError):
    """Raised when the "reads from" graph contains a cycle."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(
            f"Cyclic dependency detected: {' -> '.join(self.cycle)}",
            error_code=ErrorCode.DEPENDENCY_CYCLE,
            details={"cycle": self.cycle},
        )


class UndefinedTableError(PipelineDefinitionError):
    """Raised when a table reads from a table that is not declared."""

    def __init__(self, table: str, missing: Sequence[str]):
        self.table = table
        self.missing = sorted(missing)
        super().__init__(
            f"Table '{table}' reads from undeclared table(s): {', '.join(self.missing)}",
            error_code=ErrorCode.UNDEFINED_TABLE,
            details={"table": table, "missing": self.missing},
        )


class CheckpointGapError(LiveFlowError):
    """Raised when a checkpoint position is no longer present upstream."""

    def __init__(
        self,
        table: str,
        upstream: str,
        position: Any,
        available: Any = None,
        message: Optional[str] = None,
    ):
        self.table = table
        self.upstream = upstream
        self.position = position
        super().__init__(
            message or (
                f"Checkpoint of '{table}' points at position {position} of '{upstream}', "
                f"which is no longer available"
            ),
            error_code=ErrorCode.CHECKPOINT_GAP,
            details={
                "table": table,
                "upstream": upstream,
                "position": position,
                "available": available,
            },
        )


class ConstraintViolationError(LiveFlowError):
    """Raised when a FAIL-policy expectation is violated; the whole batch is rejected."""

    def __init__(
        self,
        table: str,
        constraint: str,
        violations: int,
        rows_checked: int,
        sample_rows: List[Dict[str, Any]],
    ):
        self.table = table
        self.constraint = constraint
        self.violations = violations
        self.sample_rows = sample_rows
        super().__init__(
            f"Expectation '{constraint}' on table '{table}' failed for "
            f"{violations} of {rows_checked} row(s)",
            error_code=ErrorCode.DATA_QUALITY_ERROR,
            details={
                "table": table,
                "constraint": constraint,
                "violations": violations,
                "rows_checked": rows_checked,
                "sample_rows": sample_rows,
            },
        )


class SchemaMismatchError(LiveFlowError):
    """Raised before any write when columns a table relies on are missing or unexpected."""

    def __init__(
        self,
        table: str,
        source: str,
        missing_columns: Sequence[str] = (),
        unexpected_columns: Sequence[str] = (),
    ):
        self.table = table
        self.source = source
        self.missing_columns = sorted(missing_columns)
        self.unexpected_columns = sorted(unexpected_columns)
        parts = []
        if self.missing_columns:
            parts.append(f"missing column(s) {', '.join(self.missing_columns)}")
        if self.unexpected_columns:
            parts.append(f"unexpected column(s) {', '.join(self.unexpected_columns)}")
        super().__init__(
            f"Schema mismatch for table '{table}' on '{source}': {'; '.join(parts)}",
            error_code=ErrorCode.SCHEMA_MISMATCH,
            details={
                "table": table,
                "source": source,
                "missing_columns": self.missing_columns,
                "unexpected_columns": self.unexpected_columns,
            },
        )


class UpstreamUnavailableError(LiveFlowError):
    """Raised when a landing zone or reference source cannot be reached."""

    def __init__(self, source: str, message: str, cause: Optional[Exception] = None):
        self.source = source
        super().__init__(
            message,
            error_code=ErrorCode.UPSTREAM_UNAVAILABLE,
            details={"source": source},
            cause=cause,
            is_retryable=True,
        )


class CommitConflictError(LiveFlowError):
    """Raised when a commit is based on a table version that is no longer current."""

    def __init__(self, table: str, expected_version: int, actual_version: int):
        self.table = table
        super().__init__(
            f"Commit to '{table}' expected version {expected_version} "
            f"but found {actual_version}",
            error_code=ErrorCode.COMMIT_CONFLICT,
            details={
                "table": table,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
            is_retryable=True,
        )


class StageTimeoutError(LiveFlowError):
    """Raised for tables still running when their stage deadline passes."""

    def __init__(self, table: str, timeout_seconds: float):
        self.table = table
        super().__init__(
            f"Table '{table}' did not finish within {timeout_seconds}s",
            error_code=ErrorCode.TIMEOUT_ERROR,
            details={"table": table, "timeout_seconds": timeout_seconds},
        )


class RunCancelledError(LiveFlowError):
    """Raised when a commit is refused because its run was cancelled or timed out."""

    def __init__(self, table: str):
        self.table = table
        super().__init__(
            f"Commit to '{table}' aborted: run was cancelled",
            error_code=ErrorCode.RUN_CANCELLED,
            details={"table": table},
        )


# Helper functions for common error scenarios
def configuration_error(
    message: str,
    config_key: Optional[str] = None,
    **kwargs
) -> LiveFlowError:
    """Create a configuration error.

    Args:
        message: Error message
        config_key: Configuration key that caused the error
        **kwargs: Additional error details

    Returns:
        LiveFlowError with CONFIG_ERROR code
    """
    details = kwargs.get('details', {})
    if config_key:
        details["config_key"] = config_key

    return LiveFlowError(
        message=message,
        error_code=ErrorCode.CONFIG_ERROR,
        details=details,
        **{k: v for k, v in kwargs.items() if k != 'details'}
    )


def validation_error(
    message: str,
    field: Optional[str] = None,
    value: Any = None,
    **kwargs
) -> LiveFlowError:
    """Create a validation error.

    Args:
        message: Error message
        field: Field that failed validation
        value: Invalid value
        **kwargs: Additional error details

    Returns:
        LiveFlowError with VALIDATION_ERROR code
    """
    details = kwargs.get('details', {})
    if field:
        details["field"] = field
    if value is not None:
        details["value"] = str(value)

    return LiveFlowError(
        message=message,
        error_code=ErrorCode.VALIDATION_ERROR,
        details=details,
        **{k: v for k, v in kwargs.items() if k != 'details'}
    )
