# ==== OPENTELEMETRY TRACING CONFIGURATION ==== #

"""
OpenTelemetry tracing for the receivables ledger.

Spans wrap every ledger operation. Export happens over OTLP only when an
endpoint is configured, so local runs and tests use the no-op provider.
"""

from typing import Dict

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from app.settings import settings


_tracing_enabled = False


# ==== TRACING INITIALIZATION ==== #

def init_tracing(service_name: str) -> bool:
    """
    Initialize OpenTelemetry tracing.

    Args:
        service_name (str): Fallback service name when ``OTEL_SERVICE_NAME``
            is not set

    Returns:
        bool: True when an exporter was installed
    """
    global _tracing_enabled

    endpoint = settings.OTEL_EXPORTER_OTLP_ENDPOINT
    if not endpoint:
        return False

    # --► RESOURCE AND PROVIDER
    resource_attrs = parse_key_values(settings.OTEL_RESOURCE_ATTRIBUTES)
    resource_attrs["service.name"] = settings.OTEL_SERVICE_NAME or service_name
    provider = TracerProvider(resource=Resource.create(resource_attrs))

    # --► OTLP EXPORTER
    exporter = OTLPSpanExporter(
        endpoint=endpoint,
        headers=parse_key_values(settings.OTEL_EXPORTER_OTLP_HEADERS)
    )
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    try:
        SQLAlchemyInstrumentor().instrument()
        RedisInstrumentor().instrument()
        HTTPXClientInstrumentor().instrument()
    except Exception as e:
        from loguru import logger
        logger.warning(f"Failed to setup auto-instrumentation: {e}")

    _tracing_enabled = True
    return True


def instrument_app(app) -> None:
    """Attach FastAPI request spans once tracing is enabled."""
    if _tracing_enabled:
        FastAPIInstrumentor.instrument_app(app, excluded_urls="healthz,readyz,metrics")


def parse_key_values(raw: str | None) -> Dict[str, str]:
    """Parse ``key=value`` pairs separated by commas.

    Args:
        raw: Raw environment value, e.g. ``"a=1, b=2"``

    Returns:
        Dictionary of parsed pairs; malformed parts are ignored
    """
    parsed: Dict[str, str] = {}
    if not raw:
        return parsed

    for part in filter(None, map(str.strip, raw.split(","))):
        if "=" in part:
            key, value = part.split("=", 1)
            parsed[key.strip()] = value.strip()

    return parsed


def get_tracer(name: str) -> trace.Tracer:
    """Get a tracer instance for the given module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Tracer instance
    """
    return trace.get_tracer(name)
