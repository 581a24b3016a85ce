"""
Tracers injected into consolidator components.

Backends, the state machine, the migrator and the unified store never call
OpenTelemetry themselves. Each takes an optional ``tracer`` argument and
falls back to ``create_tracer(__name__, enable_tracing)``, so tests can pass
a ``MockTracer`` and deployments can turn spans off component by component.

Example:
    >>> from consolidator.observability import MockTracer
    >>> from consolidator.backends import InMemoryRecordStore
    >>>
    >>> tracer = MockTracer()
    >>> target = InMemoryRecordStore(tracer=tracer)
    >>> await target.get_all("clients")
    []
    >>> tracer.span_names
    ['consolidator.memory_store.get_all']
"""

from __future__ import annotations

import contextlib
from collections.abc import Iterator
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from opentelemetry import trace

if TYPE_CHECKING:
    from opentelemetry.trace import Span, TracerProvider

SpanAttributes = dict[str, Any]


@runtime_checkable
class Tracer(Protocol):
    """
    What components need from a tracer.

    ``span`` opens a span around a block of work. ``enabled`` lets callers
    skip computing attributes that nobody will record.
    """

    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> AbstractContextManager[Span | None]:
        """
        Open a span for the duration of a ``with`` block.

        Args:
            name: Dotted span name, e.g. ``consolidator.migrator.migrate``
            attributes: Initial span attributes

        Returns:
            Context manager yielding the live span, or None when spans are
            not recorded
        """
        ...

    @property
    def enabled(self) -> bool:
        """Whether spans opened by this tracer are recorded anywhere."""
        ...


class NullTracer:
    """Tracer used when tracing is switched off. Every span is a no-op."""

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> Iterator[None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False


class OpenTelemetryTracer:
    """
    Tracer backed by the global OpenTelemetry tracer provider.

    Without an SDK provider installed by the application, the API returns
    non-recording spans and nothing is exported.

    Args:
        tracer_name: Instrumentation scope, normally the module ``__name__``
        tracer_provider: Provider to use instead of the global one
    """

    def __init__(
        self,
        tracer_name: str,
        tracer_provider: TracerProvider | None = None,
    ) -> None:
        self._tracer = trace.get_tracer(tracer_name, tracer_provider=tracer_provider)

    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> AbstractContextManager[Span | None]:
        return self._tracer.start_as_current_span(name, attributes=attributes or {})

    @property
    def enabled(self) -> bool:
        return True


class MockTracer:
    """
    Tracer that keeps every opened span in memory for test assertions.

    Spans are stored in opening order as ``(name, attributes)`` pairs.

    Example:
        >>> tracer = MockTracer()
        >>> with tracer.span("consolidator.migrator.migrate", {"k": "v"}):
        ...     pass
        >>> tracer.spans
        [('consolidator.migrator.migrate', {'k': 'v'})]
    """

    def __init__(self) -> None:
        self.spans: list[tuple[str, SpanAttributes | None]] = []

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> Iterator[None]:
        self.spans.append((name, attributes))
        yield None

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        return [name for name, _ in self.spans]

    def attributes_of(self, name: str) -> SpanAttributes | None:
        """
        Attributes of the most recent span called ``name``.

        Raises:
            KeyError: If no span with that name was opened.
        """
        for span_name, attributes in reversed(self.spans):
            if span_name == name:
                return attributes
        raise KeyError(name)

    def clear(self) -> None:
        self.spans.clear()


def create_tracer(name: str, enable_tracing: bool = True) -> Tracer:
    """
    Build the default tracer for a component.

    Args:
        name: Instrumentation scope, normally the module ``__name__``
        enable_tracing: False to get a NullTracer

    Returns:
        OpenTelemetryTracer when enabled, otherwise NullTracer
    """
    if enable_tracing:
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "MockTracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "SpanAttributes",
    "Tracer",
    "create_tracer",
]
