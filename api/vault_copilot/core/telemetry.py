"""
Tracing for the chat core.

Spans cover model calls, embeddings, retrieval, chain builds and chat turns.
They are exported to Application Insights when a connection string is set
and printed to stdout when console export is on; otherwise they are dropped.
"""

import logging

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)

logger = logging.getLogger(__name__)

SERVICE_NAME = "vault-copilot"
SERVICE_VERSION = "0.1.0"

_tracer: trace.Tracer | None = None
_provider: TracerProvider | None = None


def setup_telemetry(connection_string: str, console: bool = False) -> None:
    """
    Install the tracer provider for this process.

    Args:
        connection_string: Application Insights connection string; empty
                           disables export to Azure Monitor.
        console: Also print finished spans, for debugging the plugin locally.
    """
    global _tracer, _provider

    if _provider is not None:
        logger.debug("Telemetry already configured.")
        return

    resource = Resource.create(
        {"service.name": SERVICE_NAME, "service.version": SERVICE_VERSION}
    )
    provider = TracerProvider(resource=resource)

    if connection_string:
        try:
            from azure.monitor.opentelemetry.exporter import (
                AzureMonitorTraceExporter,
            )
        except ImportError:
            logger.warning(
                "azure-monitor-opentelemetry-exporter not installed "
                "(pip install vault-copilot[telemetry]); spans will not be exported."
            )
        else:
            exporter = AzureMonitorTraceExporter(connection_string=connection_string)
            provider.add_span_processor(BatchSpanProcessor(exporter))
            logger.info("Application Insights trace export enabled.")

    if console:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        logger.info("Console trace export enabled.")

    trace.set_tracer_provider(provider)
    _provider = provider
    _tracer = trace.get_tracer(SERVICE_NAME, SERVICE_VERSION)


def shutdown_telemetry() -> None:
    """Flush pending spans and release the exporters."""
    global _provider
    if _provider is not None:
        _provider.shutdown()
        _provider = None


def get_tracer() -> trace.Tracer:
    """Return the application tracer; a no-op tracer until setup_telemetry runs."""
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer(SERVICE_NAME, SERVICE_VERSION)
    return _tracer
