"""
Exceptions for the differential sync engine.

Every failure raised by a store, the detector, the resolver or the executor
is a SyncError. Each subclass carries a classification that tells the caller
what to do with it:

    SyncError
    +-- StoreError
    |   +-- StoreConnectionError     transient: retry the same operation
    |   +-- ConstraintError          recoverable: split the batch
    +-- RecordValidationError        recoverable: fail the record
    +-- ConflictResolutionError      recoverable: fail the record
    +-- CheckpointError              fatal: stop the run
    +-- DetectionError               fatal for the entity type
    +-- DependencyCycleError         fatal before anything runs
    +-- SchemaError
    +-- RunNotFoundError
    +-- RunStateError

ErrorHandler.execute_with_retry retries TRANSIENT errors with jittered
exponential backoff and lets everything else propagate.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorSeverity(Enum):
    """
    How loudly an error is reported.

    CRITICAL threatens resumability (a checkpoint that could not be written),
    ERROR stops an entity or a run, WARNING stays isolated to a record or a
    retried batch, INFO is not a failure.
    """

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def should_alert(self) -> bool:
        """CRITICAL and ERROR notify the alert callback."""
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """Logging level used when the error is reported."""
        return _LOG_LEVELS[self]


_LOG_LEVELS = {
    ErrorSeverity.CRITICAL: logging.CRITICAL,
    ErrorSeverity.ERROR: logging.ERROR,
    ErrorSeverity.WARNING: logging.WARNING,
    ErrorSeverity.INFO: logging.INFO,
}


class ErrorRecoverability(Enum):
    """
    What the caller does after an error.

    RECOVERABLE errors are handled where they occur (the batch is split or
    the record is recorded as failed) and processing goes on. TRANSIENT
    errors are retried as-is. FATAL errors stop the entity or the run.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        return self is ErrorRecoverability.TRANSIENT

    @property
    def should_abort(self) -> bool:
        return self is ErrorRecoverability.FATAL


@dataclass(frozen=True)
class RetryConfig:
    """
    Backoff settings for retried operations.

    The delay before retry n (0-based) is base_delay_ms * exponential_base**n,
    plus up to jitter_factor of itself, never more than max_delay_ms.

    Attributes:
        max_attempts: Attempts in total, the first one included
        base_delay_ms: Delay before the first retry
        max_delay_ms: Upper bound of any delay
        exponential_base: Growth factor per retry
        jitter_factor: Fraction of the delay added at random (0.0-1.0)
    """

    max_attempts: int = 3
    base_delay_ms: float = 100.0
    max_delay_ms: float = 30_000.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1 (got {self.max_attempts})")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms cannot be negative (got {self.base_delay_ms})")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms cannot be lower than base_delay_ms")
        if self.exponential_base < 1.0:
            raise ValueError(f"exponential_base must be at least 1.0 (got {self.exponential_base})")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must lie in [0.0, 1.0] (got {self.jitter_factor})")

    def get_delay_ms(self, attempt: int) -> float:
        """Delay in milliseconds before retry number `attempt` (0-based)."""
        delay = self.base_delay_ms * self.exponential_base**attempt
        delay += delay * self.jitter_factor * random.random()  # nosec B311 - jitter only
        return min(delay, self.max_delay_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "exponential_base": self.exponential_base,
            "jitter_factor": self.jitter_factor,
        }


# Used for transient store failures when the caller passes no RetryConfig
TRANSIENT_RETRY_CONFIG = RetryConfig(max_attempts=5, base_delay_ms=100.0, max_delay_ms=30_000.0)


@dataclass(frozen=True)
class ErrorClassification:
    """
    Handling metadata shared by every instance of an error type.

    Attributes:
        severity: How loudly the error is reported
        recoverability: What the caller does next
        error_code: Stable code for programmatic handling (e.g. "CONSTRAINT_VIOLATION")
        category: Group of related errors
        suggested_action: Guidance for the operator
        retry_config: Backoff used when the error is retried
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    retry_config: RetryConfig | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.retry_config is not None:
            data["retry_config"] = self.retry_config.to_dict()
        return data


def _classification(
    error_code: str,
    category: str,
    suggested_action: str,
    *,
    severity: ErrorSeverity = ErrorSeverity.ERROR,
    recoverability: ErrorRecoverability = ErrorRecoverability.FATAL,
    retry_config: RetryConfig | None = None,
) -> ErrorClassification:
    return ErrorClassification(
        severity=severity,
        recoverability=recoverability,
        error_code=error_code,
        category=category,
        suggested_action=suggested_action,
        retry_config=retry_config,
    )


class SyncError(Exception):
    """
    Base exception of the differential sync engine.

    Attributes:
        message: What went wrong
        run_id: Run in which the error occurred
        entity_type: Entity type being processed
        record_id: Legacy key of the record involved
        suggested_action: Guidance overriding the classification's
    """

    _default_classification = _classification(
        "SYNC_ERROR", "general", "Review the sync logs and the run error summary"
    )

    def __init__(
        self,
        message: str,
        *,
        run_id: str | None = None,
        entity_type: str | None = None,
        record_id: Any = None,
        suggested_action: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.run_id = run_id
        self.entity_type = entity_type
        self.record_id = record_id
        self.suggested_action = suggested_action

    def __str__(self) -> str:
        context = [
            f"{name}={value}"
            for name, value in (
                ("run_id", self.run_id),
                ("entity_type", self.entity_type),
                ("record_id", self.record_id),
            )
            if value is not None and value != ""
        ]
        return " ".join([self.message, *context])

    @property
    def classification(self) -> ErrorClassification:
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability_type(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    @property
    def retryable(self) -> bool:
        """Whether running the same operation again may succeed."""
        return self.recoverability_type.should_retry

    @property
    def retry_config(self) -> RetryConfig | None:
        return self.classification.retry_config

    def to_dict(self) -> dict[str, Any]:
        """Error summary entry as stored on runs and execution results."""
        return {
            "message": self.message,
            "run_id": self.run_id,
            "entity_type": self.entity_type,
            "record_id": self.record_id,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


class StoreError(SyncError):
    """A record store failed; the enclosing transaction was rolled back."""

    _default_classification = _classification(
        "STORE_ERROR", "store", "Inspect the underlying database error"
    )


class StoreConnectionError(StoreError):
    """The store could not be reached, or the connection dropped mid-operation."""

    _default_classification = _classification(
        "STORE_CONNECTION",
        "connectivity",
        "Check database connectivity; the operation is retried automatically",
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        retry_config=TRANSIENT_RETRY_CONFIG,
    )


class ConstraintError(StoreError):
    """
    The destination rejected a write (unique, foreign key or check constraint).

    The batch transaction is rolled back as a whole. The executor then splits
    the batch until the offending record is alone and records it as failed.

    Attributes:
        table: Table targeted by the rejected statement
        constraint: Constraint name or column list
    """

    _default_classification = _classification(
        "CONSTRAINT_VIOLATION",
        "integrity",
        "Fix the conflicting destination row or the source record, then re-run detection",
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
    )

    def __init__(
        self,
        message: str,
        *,
        table: str | None = None,
        constraint: str | None = None,
        record_id: Any = None,
        entity_type: str | None = None,
    ) -> None:
        super().__init__(message, record_id=record_id, entity_type=entity_type)
        self.table = table
        self.constraint = constraint


class RecordValidationError(SyncError):
    """A source record does not have the shape its transformer expects."""

    _default_classification = _classification(
        "RECORD_VALIDATION",
        "validation",
        "Correct the source record or the entity transformer",
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
    )


class CheckpointError(SyncError):
    """
    Progress could not be persisted, or a checkpoint update was invalid
    (for instance a regressing records_processed).

    Attributes:
        checkpoint_id: Checkpoint involved
    """

    _default_classification = _classification(
        "CHECKPOINT_ERROR",
        "checkpoint",
        "Restore access to the checkpoint table, then resume the run",
        severity=ErrorSeverity.CRITICAL,
    )

    def __init__(
        self,
        message: str,
        *,
        checkpoint_id: str | None = None,
        run_id: str | None = None,
        entity_type: str | None = None,
    ) -> None:
        super().__init__(message, run_id=run_id, entity_type=entity_type)
        self.checkpoint_id = checkpoint_id


class ConflictResolutionError(SyncError):
    """A MODIFIED or DELETED change has no mapping, or the change type is unsupported."""

    _default_classification = _classification(
        "CONFLICT_RESOLUTION",
        "resolution",
        "Re-run detection for the entity to refresh the change set",
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
    )


class DetectionError(SyncError):
    """Change detection for one entity type could not complete. No partial result is returned."""

    _default_classification = _classification(
        "DETECTION_FAILED",
        "detection",
        "Check source connectivity and the entity descriptor, then re-run detection",
    )


class DependencyCycleError(SyncError):
    """
    The task dependencies form a cycle.

    Attributes:
        entity_types: Entity types that could not be ordered
    """

    _default_classification = _classification(
        "DEPENDENCY_CYCLE",
        "configuration",
        "Remove the circular dependency between the listed entity types",
    )

    def __init__(self, entity_types: Sequence[str]) -> None:
        self.entity_types = list(entity_types)
        super().__init__(f"Dependency cycle detected among: {', '.join(self.entity_types)}")


class SchemaError(SyncError):
    """Unknown entity type or invalid entity descriptor."""

    _default_classification = _classification(
        "SCHEMA_ERROR", "configuration", "Register the entity type with the schema provider"
    )


class RunNotFoundError(SyncError):
    """No run matches the given run id or checkpoint id."""

    _default_classification = _classification(
        "RUN_NOT_FOUND", "lookup", "Verify the run or checkpoint id"
    )

    def __init__(self, key: str) -> None:
        super().__init__(f"Run not found: {key}", run_id=key)


class RunStateError(SyncError):
    """
    The operation does not apply to the run in its current state, e.g.
    resuming a completed run or starting one leased by another executor.
    """

    _default_classification = _classification(
        "RUN_STATE_ERROR",
        "state",
        "Check the run status before retrying the operation",
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
    )


class ErrorHandler:
    """
    Runs store operations, retrying the transient failures.

    Example:
        >>> handler = ErrorHandler()
        >>> resolution = await handler.execute_with_retry(
        ...     lambda: resolver.resolve_batch("doctors", ids),
        ...     "resolve_batch",
        ...     run_id=run_id,
        ... )

    Args:
        alert_callback: Called with errors whose severity alerts
        metrics_callback: Called with every error and whether it is retryable
    """

    def __init__(
        self,
        alert_callback: Callable[[SyncError], None] | None = None,
        metrics_callback: Callable[[SyncError, bool], None] | None = None,
    ) -> None:
        self.alert_callback = alert_callback
        self.metrics_callback = metrics_callback

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
        *,
        run_id: str | None = None,
        retry_config: RetryConfig | None = None,
        on_retry: Callable[[int, Exception, float], None] | None = None,
    ) -> T:
        """
        Await `operation`, retrying it while it raises transient SyncErrors.

        Args:
            operation: Zero-argument coroutine factory
            operation_name: Name used in log records
            run_id: Run id used in log records
            retry_config: Backoff settings (default: the error's own)
            on_retry: Called before each retry with (retry index, error, delay_ms)

        Returns:
            Result of the first successful attempt

        Raises:
            SyncError: The first non-transient error, or the last transient
                one once the attempts are used up
        """
        attempt = 0
        while True:
            try:
                result = await operation()
            except SyncError as e:
                self._report(e, operation_name)
                if not e.retryable:
                    raise
                config = retry_config or e.retry_config or TRANSIENT_RETRY_CONFIG
                if attempt + 1 >= config.max_attempts:
                    logger.error(
                        "%s gave up after %d attempts (run %s): %s",
                        operation_name,
                        config.max_attempts,
                        run_id,
                        e.message,
                    )
                    raise
                delay_ms = config.get_delay_ms(attempt)
                logger.warning(
                    "%s failed (attempt %d of %d, run %s): %s; retrying in %.0fms",
                    operation_name,
                    attempt + 1,
                    config.max_attempts,
                    run_id,
                    e.message,
                    delay_ms,
                )
                if on_retry is not None:
                    on_retry(attempt, e, delay_ms)
                await asyncio.sleep(delay_ms / 1000)
                attempt += 1
            else:
                if attempt:
                    logger.info("%s succeeded after %d retries (run %s)", operation_name, attempt, run_id)
                return result

    def _report(self, error: SyncError, operation_name: str) -> None:
        classification = error.classification
        logger.log(
            classification.severity.log_level,
            "%s raised %s: %s",
            operation_name,
            classification.error_code,
            error.message,
        )
        # callbacks must never mask the error being handled
        if self.alert_callback is not None and classification.severity.should_alert:
            try:
                self.alert_callback(error)
            except Exception:
                logger.exception("Alert callback failed for %s", classification.error_code)
        if self.metrics_callback is not None:
            try:
                self.metrics_callback(error, error.retryable)
            except Exception:
                logger.exception("Metrics callback failed for %s", classification.error_code)


_UNKNOWN_CLASSIFICATION = _classification(
    "UNKNOWN_ERROR", "unknown", "Unexpected error; the traceback is in the logs"
)


def classify_exception(exc: BaseException) -> ErrorClassification:
    """Classification of any exception; non-sync exceptions are unknown and fatal."""
    if isinstance(exc, SyncError):
        return exc.classification
    return _UNKNOWN_CLASSIFICATION


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
    "TRANSIENT_RETRY_CONFIG",
    "SyncError",
    "StoreError",
    "StoreConnectionError",
    "ConstraintError",
    "RecordValidationError",
    "CheckpointError",
    "ConflictResolutionError",
    "DetectionError",
    "DependencyCycleError",
    "SchemaError",
    "RunNotFoundError",
    "RunStateError",
    "ErrorHandler",
    "classify_exception",
]
