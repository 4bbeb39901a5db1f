"""
Logging and OpenTelemetry setup for the SelfHeal monitor.

- Root logging: level from MONITOR_LOG_LEVEL, pipe-separated format.
- Traces: OTLP gRPC exporter to the collector.
- Instruments FastAPI and logging (trace ids in log records).
"""

from __future__ import annotations

import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from ..config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging() -> None:
    logging.basicConfig(level=settings.LOG_LEVEL, format=LOG_FORMAT)


def setup_otel(app: FastAPI) -> None:
    """
    Configure OpenTelemetry for the monitor.

    Reads OTLP endpoint from:
      - OTEL_EXPORTER_OTLP_ENDPOINT (default: http://selfheal-otelcol:4317)
    """
    resource = Resource.create(
        {
            "service.name": os.getenv("OTEL_SERVICE_NAME", "selfheal-monitor"),
            "service.namespace": settings.K8S_NAMESPACE,
            "deployment.environment": os.getenv("SELFHEAL_ENV", "dev"),
            "service.version": "0.1.0",
            "selfheal.component": "monitor",
        }
    )

    provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(provider)
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.OTEL_ENDPOINT, insecure=True))
    )

    FastAPIInstrumentor().instrument_app(app)
    LoggingInstrumentor().instrument(set_logging_format=True)

    setup_logging()
