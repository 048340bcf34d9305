"""
Configuration for the differential sync engine.

Every configuration class is an immutable (frozen) dataclass validated on
construction. Invalid values raise ValueError naming the offending field and
value, so misconfiguration surfaces before any store is touched.

Example:
    >>> config = ExecutionConfig(batch_size=500, parallel_entity_limit=2)
    >>> config.retry_config().max_attempts
    4
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from differential_sync.exceptions import RetryConfig


class ResolutionStrategy(Enum):
    """
    Conflict resolution policy.

    Values:
        SOURCE_WINS: Overwrite destination fields from the source (default)
        TARGET_WINS: Keep the destination row; the record is counted as skipped
        MANUAL: Queue the record for human review; never applied automatically
    """

    SOURCE_WINS = "source_wins"
    TARGET_WINS = "target_wins"
    MANUAL = "manual"


@dataclass(frozen=True)
class DetectionOptions:
    """
    Options for a change detection run.

    Attributes:
        include_deletes: Also report mapped records that left the active
            source set (default False)
        batch_size: Source rows per keyset page (default 1000, 1-10000)
        enable_content_hashing: Compare content hashes with mapping checksums.
            When False every mapped row changed after the baseline is
            reported as modified (default True).
        until_timestamp: Inclusive upper bound on the source timestamp
        max_records_to_analyze: Refuse to analyze more rows than this
            (None = unlimited)
    """

    include_deletes: bool = False
    batch_size: int = 1000
    enable_content_hashing: bool = True
    until_timestamp: datetime | None = None
    max_records_to_analyze: int | None = None

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not 1 <= self.batch_size <= 10_000:
            raise ValueError(f"batch_size must be between 1 and 10000, got {self.batch_size}")
        if self.max_records_to_analyze is not None and self.max_records_to_analyze < 1:
            raise ValueError(
                f"max_records_to_analyze must be >= 1, got {self.max_records_to_analyze}"
            )

    @property
    def detection_method(self) -> str:
        """'timestamp_with_hash' or 'timestamp_only'."""
        return "timestamp_with_hash" if self.enable_content_hashing else "timestamp_only"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON storage."""
        return {
            "include_deletes": self.include_deletes,
            "batch_size": self.batch_size,
            "enable_content_hashing": self.enable_content_hashing,
            "until_timestamp": self.until_timestamp.isoformat() if self.until_timestamp else None,
            "max_records_to_analyze": self.max_records_to_analyze,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DetectionOptions:
        """Create from dictionary."""
        until = data.get("until_timestamp")
        return cls(
            include_deletes=data.get("include_deletes", False),
            batch_size=data.get("batch_size", 1000),
            enable_content_hashing=data.get("enable_content_hashing", True),
            until_timestamp=datetime.fromisoformat(until) if isinstance(until, str) else until,
            max_records_to_analyze=data.get("max_records_to_analyze"),
        )


@dataclass(frozen=True)
class ExecutionConfig:
    """
    Configuration for executing a run.

    Attributes:
        batch_size: Records per destination transaction (default 1000, 1-5000)
        max_retry_attempts: Retries of a batch after a transient store error
            (default 3, 0-10)
        checkpoint_interval: Committed batches between checkpoint writes
            (default 10). A checkpoint is also written at every stop.
        parallel_entity_limit: Entities processed concurrently within a wave
            (default 3, 1-10)
        timeout_seconds: Wall-clock limit per run segment (None = no limit).
            On timeout in-flight batches finish and entities are paused.
        enable_validation: Sample completed entities after processing
        validation_sample_size: Keys sampled per entity (default 100)
        retry_base_delay_ms: Base backoff delay for batch retries
        retry_max_delay_ms: Maximum backoff delay for batch retries
        lease_ttl_seconds: How long a run lease stays valid without renewal
        max_recorded_failures: Per-entity cap on failures kept in the run record

    Example:
        >>> ExecutionConfig(batch_size=0)
        Traceback (most recent call last):
        ...
        ValueError: batch_size must be between 1 and 5000, got 0
    """

    batch_size: int = 1000
    max_retry_attempts: int = 3
    checkpoint_interval: int = 10
    parallel_entity_limit: int = 3
    timeout_seconds: float | None = None
    enable_validation: bool = False
    validation_sample_size: int = 100
    retry_base_delay_ms: float = 100.0
    retry_max_delay_ms: float = 5000.0
    lease_ttl_seconds: float = 300.0
    max_recorded_failures: int = 1000

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not 1 <= self.batch_size <= 5000:
            raise ValueError(f"batch_size must be between 1 and 5000, got {self.batch_size}")

        if not 0 <= self.max_retry_attempts <= 10:
            raise ValueError(
                f"max_retry_attempts must be between 0 and 10, got {self.max_retry_attempts}"
            )

        if self.checkpoint_interval < 1:
            raise ValueError(f"checkpoint_interval must be >= 1, got {self.checkpoint_interval}")

        if not 1 <= self.parallel_entity_limit <= 10:
            raise ValueError(
                f"parallel_entity_limit must be between 1 and 10, got {self.parallel_entity_limit}"
            )

        if self.timeout_seconds is not None and self.timeout_seconds < 1:
            raise ValueError(f"timeout_seconds must be >= 1, got {self.timeout_seconds}")

        if not 1 <= self.validation_sample_size <= 10_000:
            raise ValueError(
                f"validation_sample_size must be between 1 and 10000, "
                f"got {self.validation_sample_size}"
            )

        if self.retry_base_delay_ms < 0:
            raise ValueError(f"retry_base_delay_ms must be >= 0, got {self.retry_base_delay_ms}")

        if self.retry_max_delay_ms < self.retry_base_delay_ms:
            raise ValueError(
                f"retry_max_delay_ms ({self.retry_max_delay_ms}) must be >= "
                f"retry_base_delay_ms ({self.retry_base_delay_ms})"
            )

        if self.lease_ttl_seconds <= 0:
            raise ValueError(f"lease_ttl_seconds must be positive, got {self.lease_ttl_seconds}")

        if self.max_recorded_failures < 0:
            raise ValueError(
                f"max_recorded_failures must be >= 0, got {self.max_recorded_failures}"
            )

    def retry_config(self) -> RetryConfig:
        """
        Build the retry configuration for transient batch failures.

        Returns:
            RetryConfig allowing the initial attempt plus max_retry_attempts retries
        """
        return RetryConfig(
            max_attempts=self.max_retry_attempts + 1,
            base_delay_ms=self.retry_base_delay_ms,
            max_delay_ms=self.retry_max_delay_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON storage."""
        return {
            "batch_size": self.batch_size,
            "max_retry_attempts": self.max_retry_attempts,
            "checkpoint_interval": self.checkpoint_interval,
            "parallel_entity_limit": self.parallel_entity_limit,
            "timeout_seconds": self.timeout_seconds,
            "enable_validation": self.enable_validation,
            "validation_sample_size": self.validation_sample_size,
            "retry_base_delay_ms": self.retry_base_delay_ms,
            "retry_max_delay_ms": self.retry_max_delay_ms,
            "lease_ttl_seconds": self.lease_ttl_seconds,
            "max_recorded_failures": self.max_recorded_failures,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionConfig:
        """Create from dictionary."""
        return cls(
            batch_size=data.get("batch_size", 1000),
            max_retry_attempts=data.get("max_retry_attempts", 3),
            checkpoint_interval=data.get("checkpoint_interval", 10),
            parallel_entity_limit=data.get("parallel_entity_limit", 3),
            timeout_seconds=data.get("timeout_seconds"),
            enable_validation=data.get("enable_validation", False),
            validation_sample_size=data.get("validation_sample_size", 100),
            retry_base_delay_ms=data.get("retry_base_delay_ms", 100.0),
            retry_max_delay_ms=data.get("retry_max_delay_ms", 5000.0),
            lease_ttl_seconds=data.get("lease_ttl_seconds", 300.0),
            max_recorded_failures=data.get("max_recorded_failures", 1000),
        )


@dataclass(frozen=True)
class ResolutionOptions:
    """
    Options for applying a detection result with the ConflictResolver.

    Attributes:
        strategy: Conflict resolution policy (default SOURCE_WINS)
        batch_size: Records per destination transaction (default 100)
        dry_run: Classify records without writing anything
        create_backup: Snapshot affected destination rows before writing
        validate_after_resolution: Re-check mapping checksums afterwards
        max_retries: Retries of a chunk that failed entirely (default 3)
    """

    strategy: ResolutionStrategy = ResolutionStrategy.SOURCE_WINS
    batch_size: int = 100
    dry_run: bool = False
    create_backup: bool = False
    validate_after_resolution: bool = False
    max_retries: int = 3

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not 1 <= self.batch_size <= 5000:
            raise ValueError(f"batch_size must be between 1 and 5000, got {self.batch_size}")
        if not 0 <= self.max_retries <= 10:
            raise ValueError(f"max_retries must be between 0 and 10, got {self.max_retries}")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON storage."""
        return {
            "strategy": self.strategy.value,
            "batch_size": self.batch_size,
            "dry_run": self.dry_run,
            "create_backup": self.create_backup,
            "validate_after_resolution": self.validate_after_resolution,
            "max_retries": self.max_retries,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResolutionOptions:
        """Create from dictionary."""
        return cls(
            strategy=ResolutionStrategy(data.get("strategy", ResolutionStrategy.SOURCE_WINS.value)),
            batch_size=data.get("batch_size", 100),
            dry_run=data.get("dry_run", False),
            create_backup=data.get("create_backup", False),
            validate_after_resolution=data.get("validate_after_resolution", False),
            max_retries=data.get("max_retries", 3),
        )


@dataclass(frozen=True)
class ProgressConfig:
    """
    Configuration for progress tracking and alerting.

    Attributes:
        update_interval_seconds: Minimum time between published updates of
            one run (default 1.0, 0.1-30). Status changes always publish.
        retention_seconds: How long finished runs are kept (default 3600)
        performance_window_size: Batches in the moving throughput window,
            also the warm-up before throughput alerts (default 10)
        low_throughput_warning: Records/second below which a
            low_throughput alert is raised (default 10.0)
        stalled_progress_seconds: Seconds without progress before a
            stalled_progress alert (default 120)
        error_rate_warning: Failed/attempted ratio above which an
            error_rate alert is raised (default 0.05)
        eta_deviation_factor: Raise eta_deviation when the projected duration
            exceeds the estimate by this factor (default 1.5)
        alert_dedupe_seconds: Window in which repeated alerts of one type are
            suppressed (default 300)
        queue_size: Capacity of each subscriber queue (default 100)
    """

    update_interval_seconds: float = 1.0
    retention_seconds: float = 3600.0
    performance_window_size: int = 10
    low_throughput_warning: float = 10.0
    stalled_progress_seconds: float = 120.0
    error_rate_warning: float = 0.05
    eta_deviation_factor: float = 1.5
    alert_dedupe_seconds: float = 300.0
    queue_size: int = 100

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not 0.1 <= self.update_interval_seconds <= 30:
            raise ValueError(
                f"update_interval_seconds must be between 0.1 and 30, "
                f"got {self.update_interval_seconds}"
            )
        if self.retention_seconds < 0:
            raise ValueError(f"retention_seconds must be >= 0, got {self.retention_seconds}")
        if self.performance_window_size < 1:
            raise ValueError(
                f"performance_window_size must be >= 1, got {self.performance_window_size}"
            )
        if self.low_throughput_warning < 0:
            raise ValueError(
                f"low_throughput_warning must be >= 0, got {self.low_throughput_warning}"
            )
        if self.stalled_progress_seconds <= 0:
            raise ValueError(
                f"stalled_progress_seconds must be positive, got {self.stalled_progress_seconds}"
            )
        if not 0.0 <= self.error_rate_warning <= 1.0:
            raise ValueError(
                f"error_rate_warning must be between 0.0 and 1.0, got {self.error_rate_warning}"
            )
        if self.eta_deviation_factor < 1.0:
            raise ValueError(
                f"eta_deviation_factor must be >= 1.0, got {self.eta_deviation_factor}"
            )
        if self.alert_dedupe_seconds < 0:
            raise ValueError(f"alert_dedupe_seconds must be >= 0, got {self.alert_dedupe_seconds}")
        if self.queue_size < 1:
            raise ValueError(f"queue_size must be >= 1, got {self.queue_size}")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON storage."""
        return {
            "update_interval_seconds": self.update_interval_seconds,
            "retention_seconds": self.retention_seconds,
            "performance_window_size": self.performance_window_size,
            "low_throughput_warning": self.low_throughput_warning,
            "stalled_progress_seconds": self.stalled_progress_seconds,
            "error_rate_warning": self.error_rate_warning,
            "eta_deviation_factor": self.eta_deviation_factor,
            "alert_dedupe_seconds": self.alert_dedupe_seconds,
            "queue_size": self.queue_size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProgressConfig:
        """Create from dictionary."""
        defaults = cls()
        return cls(**{key: data.get(key, value) for key, value in defaults.to_dict().items()})


__all__ = [
    "ResolutionStrategy",
    "DetectionOptions",
    "ExecutionConfig",
    "ResolutionOptions",
    "ProgressConfig",
]
