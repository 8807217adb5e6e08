"""Logging and tracing setup for the helpdesk API."""

from __future__ import annotations

import logging
from logging.config import dictConfig

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from helpdesk.core.config import Settings

_TRACER_INITIALISED = False


def parse_headers(header_string: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` OTLP header strings."""

    headers: dict[str, str] = {}
    for item in (header_string or "").split(","):
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            continue
        headers[key.strip()] = value.strip()
    return headers


def _level(name: str) -> int:
    return getattr(logging, name.upper(), logging.INFO)


def component_levels(settings: Settings) -> dict[str, int]:
    """Per-logger levels for the noisy parts of the engine.

    Event fan-out logs per subscriber and the SLA sweeper logs per cycle; both
    take their level from their own setting.
    """

    event_level = _level(settings.event_log_level)
    return {
        "helpdesk": _level(settings.log_level),
        "helpdesk.events": event_level,
        "helpdesk.api.routes.events": event_level,
        "helpdesk.tickets.sweeper": _level(settings.sweeper_log_level),
        "asyncpg": _level(settings.asyncpg_log_level),
    }


def configure_logging(settings: Settings) -> logging.Logger:
    level = _level(settings.log_level)
    # The handler stays at NOTSET so a component may log below the root level.
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": settings.log_format}},
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                }
            },
            "loggers": {
                name: {"level": component_level}
                for name, component_level in component_levels(settings).items()
            },
            "root": {"handlers": ["default"], "level": level},
        }
    )

    return logging.getLogger("helpdesk")


def init_tracer(settings: Settings) -> TracerProvider | None:
    """Install an OTLP-exporting tracer provider when tracing is enabled."""

    global _TRACER_INITIALISED

    if _TRACER_INITIALISED or not settings.otel_enabled:
        return None

    provider = TracerProvider(resource=Resource(attributes={"service.name": settings.otel_service_name}))

    exporter_kwargs: dict[str, object] = {}
    if settings.otel_exporter_otlp_endpoint:
        exporter_kwargs["endpoint"] = settings.otel_exporter_otlp_endpoint
    headers = parse_headers(settings.otel_exporter_otlp_headers)
    if headers:
        exporter_kwargs["headers"] = headers

    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**exporter_kwargs)))
    trace.set_tracer_provider(provider)
    _TRACER_INITIALISED = True
    return provider


def shutdown_tracer(provider: TracerProvider | None) -> None:
    global _TRACER_INITIALISED

    if provider is None:
        return
    provider.shutdown()
    _TRACER_INITIALISED = False
