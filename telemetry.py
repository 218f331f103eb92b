#!/usr/bin/env python3
"""
Telemetry setup using OpenTelemetry.

Configures tracing for aiohttp client requests, sqlite calls and the
scheduler/fetch/scrape spans. Spans are exported to Azure Monitor when an
Application Insights connection string is provided; otherwise they stay
in-process.

Environment variables:
  - APPLICATIONINSIGHTS_CONNECTION_STRING or AZURE_MONITOR_CONNECTION_STRING
  - OTEL_SERVICE_NAME (default: feed-monitor)
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
import asyncio

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

try:
    # Azure Monitor exporter is optional; only used when connection string is present
    from azure.monitor.opentelemetry.exporter import (
        AzureMonitorTraceExporter,
        AzureMonitorLogExporter,
    )  # type: ignore
    _AZURE_AVAILABLE = True
    _AZURE_IMPORT_ERROR: Optional[str] = None
except Exception as _imp_err:
    AzureMonitorTraceExporter = None  # type: ignore
    AzureMonitorLogExporter = None  # type: ignore
    _AZURE_AVAILABLE = False
    _AZURE_IMPORT_ERROR = repr(_imp_err)

DEFAULT_SERVICE_NAME = "feed-monitor"

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger(__name__)


def telemetry_disabled() -> bool:
    return os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true"


def _resolve_connection_string() -> tuple[Optional[str], str]:
    """Return (connection string, source label), accepting legacy instrumentation key vars."""
    conn = os.environ.get("APPLICATIONINSIGHTS_CONNECTION_STRING") or os.environ.get(
        "AZURE_MONITOR_CONNECTION_STRING"
    )
    if conn:
        return conn, "connection_string"
    ikey = (
        os.environ.get("APPLICATIONINSIGHTS_INSTRUMENTATIONKEY")
        or os.environ.get("APPINSIGHTS_INSTRUMENTATIONKEY")
    )
    if ikey:
        return f"InstrumentationKey={ikey}", "instrumentation_key"
    return None, "none"


def _attach_log_export(resource: Resource, conn: str) -> None:
    """Ship stdlib log records to Azure Monitor alongside spans."""
    from opentelemetry.sdk._logs import (
        LoggerProvider,
        BatchLogRecordProcessor,
        LoggingHandler,
    )
    from opentelemetry._logs import set_logger_provider

    lp = LoggerProvider(resource=resource)
    exporter = AzureMonitorLogExporter.from_connection_string(conn)  # type: ignore
    lp.add_log_record_processor(BatchLogRecordProcessor(exporter))
    set_logger_provider(lp)

    handler = LoggingHandler(level=logging.NOTSET, logger_provider=lp)
    root_logger = logging.getLogger()
    if not any(isinstance(h, LoggingHandler) for h in root_logger.handlers):
        root_logger.addHandler(handler)


def _instrument_libraries() -> None:
    for instrumentor in (AioHttpClientInstrumentor(), LoggingInstrumentor(), SQLite3Instrumentor()):
        try:
            instrumentor.instrument()
        except Exception as e:
            _logger.debug("Telemetry: could not enable %s: %s", type(instrumentor).__name__, e)


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Initialize OpenTelemetry tracing and instrumentation.

    Safe to call multiple times. If DISABLE_TELEMETRY=true, it's a no-op.
    """
    global _initialized, _provider
    if telemetry_disabled() or _initialized:
        return
    with _init_lock:
        if _initialized:
            return

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", DEFAULT_SERVICE_NAME)
        env = os.environ.get("OTEL_ENVIRONMENT")
        attrs = {"service.name": svc}
        if env:
            attrs["deployment.environment"] = env
        resource = Resource.create(attrs)

        # Reuse a provider installed by external auto-instrumentation
        existing = trace.get_tracer_provider()
        provider = existing if isinstance(existing, TracerProvider) else TracerProvider(resource=resource)

        conn, conn_source = _resolve_connection_string()
        azure_enabled = False
        if conn and _AZURE_AVAILABLE:
            try:
                exporter = AzureMonitorTraceExporter.from_connection_string(conn)  # type: ignore
                provider.add_span_processor(BatchSpanProcessor(exporter))
                azure_enabled = True
                _logger.info("Telemetry initialized: Azure Monitor exporter enabled (service=%s, source=%s)",
                             svc, conn_source)
            except Exception as e:
                _logger.warning("Telemetry init: failed to enable Azure exporter (%s); spans will not be exported", e)
        else:
            _logger.info("Telemetry initialized without exporter (service=%s, source=%s)", svc, conn_source)
            if conn and _AZURE_IMPORT_ERROR:
                _logger.warning(
                    "Azure exporter package unavailable; install 'azure-monitor-opentelemetry-exporter'. Import error: %s",
                    _AZURE_IMPORT_ERROR,
                )

        if not isinstance(existing, TracerProvider):
            trace.set_tracer_provider(provider)
        _provider = provider

        _instrument_libraries()

        if azure_enabled:
            try:
                _attach_log_export(resource, conn)
            except Exception as e:
                _logger.warning("Telemetry init: log export unavailable: %s", e)

        # Flush spans on interpreter exit for short-lived commands
        atexit.register(shutdown_telemetry)
        _initialized = True


def shutdown_telemetry() -> None:
    """Flush and stop the tracer provider installed by init_telemetry()."""
    if _provider is None:
        return
    try:
        _provider.shutdown()
    except Exception as e:
        _logger.debug("Telemetry shutdown failed: %s", e)


def get_tracer(name: str = DEFAULT_SERVICE_NAME):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[callable] = None,
):
    """Decorator to wrap a function call in an OpenTelemetry span.

    Args:
        span_name: Name of the span (defaults to module.funcname)
        tracer_name: Tracer name (defaults to the first dotted part of span_name)
        static_attrs: Dict of attributes to set on the span
        attr_from_args: Callable taking (*args, **kwargs) and returning a dict
                        of attributes to set on the span

    Works with sync and async functions. Exceptions are recorded on the span
    and re-raised unchanged.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tname = tracer_name or name.split(".")[0] or DEFAULT_SERVICE_NAME
        tracer = get_tracer(tname)

        def _set_attrs(span, args, kwargs):
            if not span:
                return
            try:
                if static_attrs:
                    for k, v in static_attrs.items():
                        span.set_attribute(k, v)
                if callable(attr_from_args):
                    dyn = attr_from_args(*args, **kwargs) or {}
                    for k, v in dyn.items():
                        span.set_attribute(k, v)
            except Exception:
                # Attribute extraction must never break the wrapped call
                pass

        def _record_error(span, error):
            if span:
                span.record_exception(error)
                span.set_status(Status(StatusCode.ERROR))

        if asyncio.iscoroutinefunction(func):

            async def _aw(*args, **kwargs):
                with tracer.start_as_current_span(name) as span:
                    _set_attrs(span, args, kwargs)
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        _record_error(span, e)
                        raise

            wrapper = _aw
        else:

            def _w(*args, **kwargs):
                with tracer.start_as_current_span(name) as span:
                    _set_attrs(span, args, kwargs)
                    try:
                        return func(*args, **kwargs)
                    except Exception as e:
                        _record_error(span, e)
                        raise

            wrapper = _w

        wrapper.__name__ = func.__name__
        wrapper.__doc__ = func.__doc__
        wrapper.__qualname__ = getattr(func, "__qualname__", func.__name__)
        wrapper.__wrapped__ = func
        return wrapper

    return _decorator
