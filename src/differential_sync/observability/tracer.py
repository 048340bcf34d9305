"""
Tracing seam shared by every component.

Components take a Tracer and open spans through it instead of calling
OpenTelemetry themselves. Production code gets OpenTelemetryTracer (or
NullTracer when tracing is switched off); tests pass a MockTracer and
assert on what it recorded.

Example:
    >>> class CheckpointManager:
    ...     def __init__(self, store, tracer: Tracer | None = None, enable_tracing: bool = True):
    ...         self._tracer = tracer or create_tracer(__name__, enable_tracing)
    ...
    ...     async def get(self, checkpoint_id: str):
    ...         with self._tracer.span("differential_sync.checkpoint.get", {ATTR_CHECKPOINT_ID: checkpoint_id}):
    ...             ...
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from opentelemetry import trace


@runtime_checkable
class Tracer(Protocol):
    """
    Opens spans for the components.

    The context manager yields an object with set_attribute(), or None when
    nothing is recorded. Callers guard late attributes with
    `if span is not None and tracer.enabled`.
    """

    def span(self, name: str, attributes: dict[str, Any] | None = None) -> AbstractContextManager[Any]: ...

    @property
    def enabled(self) -> bool: ...


class NullTracer:
    """Tracer used when tracing is disabled; spans are None."""

    @contextmanager
    def span(self, name: str, attributes: dict[str, Any] | None = None) -> Iterator[None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False


class OpenTelemetryTracer:
    """
    Tracer backed by the OpenTelemetry API.

    Spans go to the globally configured tracer provider. Without one the API
    hands out non-recording spans, so this is safe to use unconfigured.

    Args:
        tracer_name: Instrumentation scope name (usually the module's __name__)
    """

    def __init__(self, tracer_name: str) -> None:
        self._tracer = trace.get_tracer(tracer_name)

    def span(self, name: str, attributes: dict[str, Any] | None = None) -> AbstractContextManager[Any]:
        return self._tracer.start_as_current_span(name, attributes=attributes or {})

    @property
    def enabled(self) -> bool:
        return True


@dataclass
class RecordedSpan:
    """A span captured by MockTracer, with every attribute it received."""

    name: str
    attributes: dict[str, Any] = field(default_factory=dict)

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value


class MockTracer:
    """
    Tracer for tests; records spans in the order they were opened.

    Example:
        >>> tracer = MockTracer()
        >>> resolver = ConflictResolver(source, destination, schema, tracer=tracer)
        >>> await resolver.resolve_batch("doctors", [1, 2])
        >>> tracer.find("differential_sync.resolver.resolve_batch").attributes[ATTR_RECORDS_PROCESSED]
        2
    """

    def __init__(self) -> None:
        self.spans: list[RecordedSpan] = []

    @contextmanager
    def span(self, name: str, attributes: dict[str, Any] | None = None) -> Iterator[RecordedSpan]:
        recorded = RecordedSpan(name, dict(attributes or {}))
        self.spans.append(recorded)
        yield recorded

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        return [s.name for s in self.spans]

    def find(self, name: str) -> RecordedSpan:
        """
        Return the first span with the given name.

        Raises:
            LookupError: If no such span was recorded
        """
        for recorded in self.spans:
            if recorded.name == name:
                return recorded
        raise LookupError(f"No span named {name!r}; recorded: {self.span_names}")

    def clear(self) -> None:
        self.spans.clear()


def create_tracer(name: str, enable_tracing: bool = True) -> Tracer:
    """
    OpenTelemetryTracer when tracing is enabled, NullTracer otherwise.

    Args:
        name: Instrumentation scope name (usually the module's __name__)
        enable_tracing: Whether spans should be created
    """
    return OpenTelemetryTracer(name) if enable_tracing else NullTracer()


__all__ = [
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "RecordedSpan",
    "create_tracer",
]
