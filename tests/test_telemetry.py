import pytest

from errors import invalid_input
import telemetry
from telemetry import trace_span


@trace_span("sync_op", attr_from_args=lambda value: {"op.value": value})
def double(value):
    """Double it."""
    return value * 2


@trace_span("async_op", static_attrs={"op.kind": "test"})
async def fail_async():
    raise invalid_input("missing rss url")


def test_sync_function_keeps_identity_and_result():
    assert double(21) == 42
    assert double.__name__ == "double"
    assert double.__doc__ == "Double it."


@pytest.mark.asyncio
async def test_async_failures_are_reraised_unchanged():
    with pytest.raises(Exception) as excinfo:
        await fail_async()

    assert excinfo.value.kind == "invalid_input"
    assert fail_async.__name__ == "fail_async"


def test_broken_attribute_extractor_does_not_break_call():
    @trace_span("tolerant", attr_from_args=lambda *a, **kw: 1 / 0)
    def ok():
        return "ok"

    assert ok() == "ok"


class RecordingInstrumentor:
    calls = 0

    def instrument(self):
        type(self).calls += 1


class BrokenInstrumentor:
    def instrument(self):
        raise RuntimeError("already instrumented")


def test_installed_instrumentations_are_enabled(monkeypatch):
    RecordingInstrumentor.calls = 0
    monkeypatch.setattr(telemetry, "AioHttpClientInstrumentor", RecordingInstrumentor)
    monkeypatch.setattr(telemetry, "LoggingInstrumentor", None)

    assert telemetry._instrument_libraries() == ["aiohttp-client"]
    assert RecordingInstrumentor.calls == 1


def test_failing_instrumentation_is_skipped(monkeypatch):
    RecordingInstrumentor.calls = 0
    monkeypatch.setattr(telemetry, "AioHttpClientInstrumentor", BrokenInstrumentor)
    monkeypatch.setattr(telemetry, "LoggingInstrumentor", RecordingInstrumentor)

    assert telemetry._instrument_libraries() == ["logging"]
    assert RecordingInstrumentor.calls == 1
