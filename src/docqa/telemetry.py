"""Tracing for the orchestrator.

``OBSERVABILITY`` selects the exporter:

- ``logfire`` - Pydantic Logfire (``LOGFIRE_TOKEN``); also traces the
  OpenAI embeddings client
- ``otel``    - OpenTelemetry SDK with an OTLP/HTTP span exporter
- ``off``     - nothing is installed (default)

Both active modes need the ``observability`` extra.  Health probes are
never traced, and agent spans do not carry prompt or answer text.
"""

from __future__ import annotations

from enum import StrEnum

from fastapi import FastAPI
from loguru import logger

from docqa import __version__
from docqa.config import Settings

_UNTRACED_ROUTES = "health"


class TelemetryMode(StrEnum):
    OFF = "off"
    LOGFIRE = "logfire"
    OTEL = "otel"


def telemetry_mode(settings: Settings) -> TelemetryMode:
    try:
        return TelemetryMode(settings.observability.strip().lower())
    except ValueError:
        logger.warning("Unknown observability mode '{}', tracing disabled", settings.observability)
        return TelemetryMode.OFF


def setup_telemetry(app: FastAPI, settings: Settings) -> TelemetryMode:
    """Install the exporter for *settings* and instrument *app*; returns the active mode."""
    mode = telemetry_mode(settings)
    match mode:
        case TelemetryMode.LOGFIRE:
            _setup_logfire(app, settings)
        case TelemetryMode.OTEL:
            _setup_otel(app, settings)
        case _:
            logger.info("Tracing disabled (OBSERVABILITY={})", settings.observability)
    app.state.telemetry_mode = mode
    return mode


def _setup_logfire(app: FastAPI, settings: Settings) -> None:
    import logfire

    logfire.configure(
        service_name=settings.otel_service_name,
        service_version=__version__,
        send_to_logfire="if-token-present",
    )
    logfire.instrument_fastapi(app, excluded_urls=_UNTRACED_ROUTES)
    logfire.instrument_openai()
    logger.info("Logfire tracing on | service={}", settings.otel_service_name)


def _setup_otel(app: FastAPI, settings: Settings) -> None:
    from opentelemetry import trace
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    endpoint = f"{settings.otel_exporter_otlp_endpoint.rstrip('/')}/v1/traces"
    provider = TracerProvider(
        resource=Resource.create({"service.name": settings.otel_service_name, "service.version": __version__})
    )
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    if settings.otel_console_exporter:
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor

        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app, excluded_urls=_UNTRACED_ROUTES)
    logger.info("OpenTelemetry tracing on | service={} endpoint={}", settings.otel_service_name, endpoint)


def get_instrumentation_settings(settings: Settings):
    """``InstrumentationSettings`` for the generation agents, or ``None`` when tracing is off.

    Prompts carry user questions and document excerpts, so span content is
    excluded; model name, token usage and latency are still recorded.
    """
    if telemetry_mode(settings) is TelemetryMode.OFF:
        return None

    from pydantic_ai.models.instrumented import InstrumentationSettings

    return InstrumentationSettings(include_content=False)
