#!/usr/bin/env python3
"""
Telemetry setup using OpenTelemetry.

This module configures a tracer provider for the conversion pipeline and
provides the ``trace_span`` decorator used around conversions, fetches and
proxy dials. Spans are exported over OTLP/HTTP when an endpoint is configured
and the optional exporter package is installed; otherwise they stay in-process.
The aiohttp client and logging are instrumented when the optional
instrumentation packages are installed.

Environment variables:
  - OTEL_EXPORTER_OTLP_ENDPOINT (enables the OTLP/HTTP exporter)
  - OTEL_SERVICE_NAME (default: rss2json)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - DISABLE_TELEMETRY=true to fully disable

The module is safe to import multiple times; initialization is idempotent.
"""

from __future__ import annotations

import os
import atexit
import logging
import threading
from typing import Optional
import functools
import inspect

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

try:
    # OTLP exporter is optional; only used when an endpoint is configured
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter  # type: ignore
    _OTLP_AVAILABLE = True
    _OTLP_IMPORT_ERROR: Optional[str] = None
except ImportError as _imp_err:
    OTLPSpanExporter = None  # type: ignore
    _OTLP_AVAILABLE = False
    _OTLP_IMPORT_ERROR = repr(_imp_err)

try:
    # Library instrumentations are optional extras
    from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor  # type: ignore
except ImportError:
    AioHttpClientInstrumentor = None  # type: ignore

try:
    from opentelemetry.instrumentation.logging import LoggingInstrumentor  # type: ignore
except ImportError:
    LoggingInstrumentor = None  # type: ignore

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger("RSS2JSON.telemetry")


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Initialize OpenTelemetry tracing.

    Safe to call multiple times. If DISABLE_TELEMETRY=true, it's a no-op.
    """
    global _initialized, _provider
    if os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true":
        return
    if _initialized:
        return
    with _init_lock:
        if _initialized:
            return

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", "rss2json")
        env = os.environ.get("OTEL_ENVIRONMENT")
        attrs = {"service.name": svc}
        if env:
            attrs["deployment.environment"] = env
        resource = Resource.create(attrs)

        # If a provider was already set by external auto-instrumentation, reuse it
        existing = trace.get_tracer_provider()
        if isinstance(existing, TracerProvider):
            provider = existing
        else:
            provider = TracerProvider(resource=resource)

        endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
        if endpoint and _OTLP_AVAILABLE:
            try:
                provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))  # type: ignore
                _logger.info("Telemetry initialized: OTLP exporter enabled (service=%s)", svc)
            except Exception as e:
                _logger.warning("Telemetry init: failed to enable OTLP exporter; spans will not be exported: %s", e)
        else:
            _logger.debug("Telemetry initialized without exporter (service=%s); no spans will be exported", svc)
            if endpoint and not _OTLP_AVAILABLE:
                _logger.warning(
                    "OTLP exporter package unavailable; install 'opentelemetry-exporter-otlp-proto-http'. Import error: %s",
                    _OTLP_IMPORT_ERROR,
                )

        if not isinstance(existing, TracerProvider):
            trace.set_tracer_provider(provider)
        _provider = provider

        _instrument_libraries()

        _initialized = True

        def _shutdown():
            if _provider:
                _provider.shutdown()

        # Flush spans on interpreter exit for short-lived commands
        atexit.register(_shutdown)


def _instrument_libraries() -> list:
    """Instrument the aiohttp client and logging when their packages are installed."""
    enabled = []
    for name, instrumentor in (
        ("aiohttp-client", AioHttpClientInstrumentor),
        # Inject trace/span ids into log records without changing the format
        ("logging", LoggingInstrumentor),
    ):
        if instrumentor is None:
            _logger.debug("Instrumentation for %s not installed; skipping", name)
            continue
        try:
            instrumentor().instrument()
            enabled.append(name)
        except Exception as e:
            _logger.debug("Failed to instrument %s: %s", name, e)
    return enabled


def get_tracer(name: str = "rss2json"):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)


def _span_attributes(static_attrs, attr_from_args, args, kwargs) -> dict:
    attrs = dict(static_attrs or {})
    if callable(attr_from_args):
        try:
            attrs.update(attr_from_args(*args, **kwargs) or {})
        except Exception as e:
            # Attribute extraction must never break the traced call
            _logger.debug("Span attribute extraction failed: %s", e)
    return {k: v for k, v in attrs.items() if v is not None}


def _mark_failed(span, exc: Exception) -> None:
    span.record_exception(exc)
    span.set_status(Status(StatusCode.ERROR, str(exc)))
    kind = getattr(exc, "kind", None)
    if kind:
        span.set_attribute("rss2json.error.kind", kind)
    if getattr(exc, "timed_out", False):
        span.set_attribute("rss2json.error.timed_out", True)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[callable] = None,
):
    """Decorator that runs a function inside an OpenTelemetry span.

    Args:
        span_name: Span name (defaults to module.funcname)
        tracer_name: Tracer name (defaults to the first dotted part of the span name)
        static_attrs: Attributes set on every span
        attr_from_args: Callable receiving the call's (*args, **kwargs) and
                        returning extra attributes

    Failures are recorded on the span (with the conversion error kind when
    present) and re-raised. Works with sync and async functions.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = tracer_name or name.split(".")[0] or "rss2json"

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _async_wrapper(*args, **kwargs):
                attrs = _span_attributes(static_attrs, attr_from_args, args, kwargs)
                with get_tracer(tracer).start_as_current_span(
                    name, attributes=attrs, record_exception=False, set_status_on_exception=False
                ) as span:
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        _mark_failed(span, e)
                        raise

            return _async_wrapper

        @functools.wraps(func)
        def _sync_wrapper(*args, **kwargs):
            attrs = _span_attributes(static_attrs, attr_from_args, args, kwargs)
            with get_tracer(tracer).start_as_current_span(
                name, attributes=attrs, record_exception=False, set_status_on_exception=False
            ) as span:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    _mark_failed(span, e)
                    raise

        return _sync_wrapper

    return _decorator
