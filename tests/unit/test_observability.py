"""
Unit tests for the observability helpers.

Tests cover:
- NullTracer, MockTracer and OpenTelemetryTracer
- create_tracer
- Spans exported through the OpenTelemetry SDK
- fire_and_forget
"""

import logging
from collections.abc import Generator

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from consolidator.exceptions import InvalidTransitionError
from consolidator.models import MigrationMode
from consolidator.observability import (
    ATTR_MIGRATION_MODE,
    ATTR_MIGRATION_TARGET_MODE,
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
    fire_and_forget,
)
from consolidator.repositories import InMemoryMetadataRepository
from consolidator.state_machine import MigrationStateMachine


class TestTracers:
    """Tests for the tracer implementations."""

    def test_null_tracer(self) -> None:
        """Test that NullTracer yields None and is disabled."""
        tracer = NullTracer()

        with tracer.span("anything", {"k": "v"}) as span:
            assert span is None
        assert tracer.enabled is False

    def test_mock_tracer_records_spans(self) -> None:
        """Test MockTracer bookkeeping."""
        tracer = MockTracer()

        with tracer.span("outer", {"k": "v"}), tracer.span("inner"):
            pass

        assert tracer.spans == [("outer", {"k": "v"}), ("inner", None)]
        assert tracer.span_names == ["outer", "inner"]
        assert tracer.enabled is True

        tracer.clear()
        assert tracer.spans == []

    def test_mock_tracer_attributes_of_latest_span(self) -> None:
        """Test lookup of span attributes by name."""
        tracer = MockTracer()

        with tracer.span("consolidator.migrator.migrate_entity_type", {"t": "clients"}):
            pass
        with tracer.span("consolidator.migrator.migrate_entity_type", {"t": "cases"}):
            pass

        assert tracer.attributes_of("consolidator.migrator.migrate_entity_type") == {"t": "cases"}
        with pytest.raises(KeyError):
            tracer.attributes_of("consolidator.migrator.rollback")

    def test_opentelemetry_tracer_yields_span(self) -> None:
        """Test that the OpenTelemetry tracer works without a configured provider."""
        tracer = OpenTelemetryTracer(__name__)

        with tracer.span("consolidator.test", {"consolidator.entity.type": "clients"}) as span:
            assert span is not None
            span.set_attribute("consolidator.record.count", 1)
        assert tracer.enabled is True

    @pytest.mark.parametrize(
        ("enable_tracing", "expected"),
        [(True, OpenTelemetryTracer), (False, NullTracer)],
    )
    def test_create_tracer(self, enable_tracing: bool, expected: type) -> None:
        """Test the tracer factory."""
        tracer = create_tracer(__name__, enable_tracing)

        assert isinstance(tracer, expected)
        assert isinstance(tracer, Tracer)


@pytest.fixture
def span_exporter() -> InMemorySpanExporter:
    """Exporter collecting finished spans in memory."""
    return InMemorySpanExporter()


@pytest.fixture
def otel_tracer(span_exporter: InMemorySpanExporter) -> Generator[OpenTelemetryTracer, None, None]:
    """OpenTelemetryTracer on a private provider that exports to span_exporter."""
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    yield OpenTelemetryTracer(__name__, tracer_provider=provider)
    provider.shutdown()


class TestExportedSpans:
    """Tests for spans recorded by a real OpenTelemetry SDK."""

    @pytest.mark.asyncio
    async def test_state_machine_span_is_exported(
        self, otel_tracer: OpenTelemetryTracer, span_exporter: InMemorySpanExporter
    ) -> None:
        """Test that advance() exports a span with both modes."""
        machine = MigrationStateMachine(InMemoryMetadataRepository(), tracer=otel_tracer)

        await machine.advance(MigrationMode.TRANSITIONING)

        [span] = span_exporter.get_finished_spans()
        assert span.name == "consolidator.state_machine.advance"
        assert span.attributes is not None
        assert span.attributes[ATTR_MIGRATION_MODE] == "legacy"
        assert span.attributes[ATTR_MIGRATION_TARGET_MODE] == "transitioning"

    @pytest.mark.asyncio
    async def test_rejected_transition_marks_span_as_error(
        self, otel_tracer: OpenTelemetryTracer, span_exporter: InMemorySpanExporter
    ) -> None:
        """Test that an InvalidTransitionError is recorded on the span."""
        machine = MigrationStateMachine(InMemoryMetadataRepository(), tracer=otel_tracer)

        with pytest.raises(InvalidTransitionError):
            await machine.advance(MigrationMode.MODERN)

        [span] = span_exporter.get_finished_spans()
        assert span.status.status_code == StatusCode.ERROR
        assert [event.name for event in span.events] == ["exception"]


class TestFireAndForget:
    """Tests for fire_and_forget()."""

    @pytest.mark.asyncio
    async def test_success(self) -> None:
        """Test that a completed side effect returns True."""
        calls: list[str] = []

        async def side_effect() -> None:
            calls.append("ran")

        assert await fire_and_forget(side_effect(), "record something") is True
        assert calls == ["ran"]

    @pytest.mark.asyncio
    async def test_failure_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that failures are logged on the given logger and swallowed."""
        log = logging.getLogger("consolidator.tests.best_effort")

        async def side_effect() -> None:
            raise RuntimeError("disk full")

        with caplog.at_level(logging.WARNING, logger=log.name):
            result = await fire_and_forget(side_effect(), "append timeline entry", log=log)

        assert result is False
        [record] = caplog.records
        assert record.name == log.name
        assert record.getMessage() == "Failed to append timeline entry: disk full"
