#!/usr/bin/env python3
"""
OpenTelemetry tracing for the poller.

Every scrape/enrich cycle, API call and item store operation runs inside a
span (see ``trace_span``). aiohttp, logging and sqlite3 are instrumented once
``init_telemetry()`` has been called by the entry point.

Spans are exported to:
  - Azure Monitor, when APPLICATIONINSIGHTS_CONNECTION_STRING (or
    AZURE_MONITOR_CONNECTION_STRING) is set and the ``azure`` extra is installed
  - stdout, when OTEL_CONSOLE_EXPORT=true

Other settings: OTEL_SERVICE_NAME, OTEL_ENVIRONMENT (deployment.environment),
DISABLE_TELEMETRY=true turns initialization into a no-op. Without
initialization the decorators still work against the no-op tracer.
"""

from __future__ import annotations

import os
import atexit
import logging
import threading
from typing import Callable, Dict, Optional
import inspect
import functools

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

try:
    # Installed through the optional "azure" extra
    from azure.monitor.opentelemetry.exporter import AzureMonitorTraceExporter  # type: ignore
    _AZURE_AVAILABLE = True
except ImportError:
    AzureMonitorTraceExporter = None  # type: ignore
    _AZURE_AVAILABLE = False

DEFAULT_SERVICE_NAME = "geo-poller"

_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger(__name__)


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "false").strip().lower() in ("1", "true", "yes")


def _azure_connection_string() -> Optional[str]:
    return os.environ.get("APPLICATIONINSIGHTS_CONNECTION_STRING") or os.environ.get("AZURE_MONITOR_CONNECTION_STRING")


def _add_exporters(provider: TracerProvider, service: str) -> None:
    exporters = 0
    conn = _azure_connection_string()
    if conn and _AZURE_AVAILABLE:
        try:
            provider.add_span_processor(BatchSpanProcessor(AzureMonitorTraceExporter.from_connection_string(conn)))
            exporters += 1
        except ValueError as e:
            _logger.warning("Invalid Azure Monitor connection string (%s); not exporting to Azure", e)
    elif conn:
        _logger.warning("Azure Monitor connection string set but 'azure-monitor-opentelemetry-exporter' is not installed")

    if _env_flag("OTEL_CONSOLE_EXPORT"):
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        exporters += 1

    _logger.info("Telemetry initialized for %s with %d exporter(s)", service, exporters)


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Install the tracer provider and instrumentations. Idempotent."""
    global _initialized, _provider
    if _env_flag("DISABLE_TELEMETRY") or _initialized:
        return
    with _lock:
        if _initialized:
            return

        service = service_name or os.environ.get("OTEL_SERVICE_NAME", DEFAULT_SERVICE_NAME)
        resource_attrs = {"service.name": service}
        environment = os.environ.get("OTEL_ENVIRONMENT")
        if environment:
            resource_attrs["deployment.environment"] = environment

        # Keep a provider that auto-instrumentation may already have installed
        current = trace.get_tracer_provider()
        if isinstance(current, TracerProvider):
            _provider = current
        else:
            _provider = TracerProvider(resource=Resource.create(resource_attrs))
            trace.set_tracer_provider(_provider)

        _add_exporters(_provider, service)

        AioHttpClientInstrumentor().instrument()
        # Adds otelTraceID / otelSpanID to log records
        LoggingInstrumentor().instrument()
        SQLite3Instrumentor().instrument()

        _initialized = True
        atexit.register(_shutdown)


def _shutdown() -> None:
    if _provider is not None:
        _provider.shutdown()


def get_tracer(name: str = DEFAULT_SERVICE_NAME):
    return trace.get_tracer(name)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: Dict[str, object] | None = None,
    attr_from_args: Optional[Callable[..., Dict[str, object]]] = None,
):
    """Run the decorated sync or async function inside a span.

    ``attr_from_args`` receives the call's arguments and returns extra span
    attributes; errors while computing attributes are ignored. Exceptions from
    the function are recorded on the span and re-raised.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or DEFAULT_SERVICE_NAME)

        def _annotate(span, args, kwargs):
            try:
                attrs = dict(static_attrs or {})
                if attr_from_args is not None:
                    attrs.update(attr_from_args(*args, **kwargs) or {})
                for key, value in attrs.items():
                    span.set_attribute(key, value)
            except (TypeError, ValueError, AttributeError):
                pass

        def _fail(span, exc):
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _async_wrapper(*args, **kwargs):
                with tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
                    _annotate(span, args, kwargs)
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        _fail(span, e)
                        raise

            return _async_wrapper

        @functools.wraps(func)
        def _sync_wrapper(*args, **kwargs):
            with tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
                _annotate(span, args, kwargs)
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    _fail(span, e)
                    raise

        return _sync_wrapper

    return _decorator
