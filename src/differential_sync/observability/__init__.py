"""
Observability utilities for differential sync.

Composition-based tracing and the standard attribute names shared by all
components.

Example:
    >>> from differential_sync.observability import create_tracer
    >>>
    >>> class MyComponent:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
    ...         self._enable_tracing = self._tracer.enabled
"""

from differential_sync.observability.attributes import (
    ATTR_BATCH_NUMBER,
    ATTR_BATCH_SIZE,
    ATTR_CHANGE_COUNT,
    ATTR_CHECKPOINT_ID,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DB_TABLE,
    ATTR_ENTITY_TYPE,
    ATTR_ERROR_TYPE,
    ATTR_RECORD_COUNT,
    ATTR_RECORDS_FAILED,
    ATTR_RECORDS_PROCESSED,
    ATTR_RUN_ID,
    ATTR_RUN_STATUS,
    ATTR_STRATEGY,
    ATTR_WAVE_INDEX,
    ATTR_WAVE_SIZE,
)
from differential_sync.observability.tracer import (
    MockTracer,
    RecordedSpan,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "RecordedSpan",
    "create_tracer",
    # Attributes
    "ATTR_BATCH_NUMBER",
    "ATTR_BATCH_SIZE",
    "ATTR_CHANGE_COUNT",
    "ATTR_CHECKPOINT_ID",
    "ATTR_DB_OPERATION",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_TABLE",
    "ATTR_ENTITY_TYPE",
    "ATTR_ERROR_TYPE",
    "ATTR_RECORD_COUNT",
    "ATTR_RECORDS_FAILED",
    "ATTR_RECORDS_PROCESSED",
    "ATTR_RUN_ID",
    "ATTR_RUN_STATUS",
    "ATTR_STRATEGY",
    "ATTR_WAVE_INDEX",
    "ATTR_WAVE_SIZE",
]
