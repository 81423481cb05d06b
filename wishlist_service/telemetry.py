"""OpenTelemetry configuration for the wishlist service."""

import sys

from fastapi import FastAPI
from opentelemetry import metrics, trace
from opentelemetry.exporter.prometheus import PrometheusMetricReader
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from prometheus_client import start_http_server

from .config import settings
from .infrastructure.database.database import get_main_engine
from .logging_config import get_logger

logger = get_logger(__name__)

METRICS_PORTS = (8080, 8081)


def setup_telemetry(app: FastAPI) -> bool:
    """Configure tracing and a Prometheus metrics endpoint.

    Opt-in via ENABLE_TELEMETRY; never enabled under pytest. A failure here
    is logged and the service keeps running without telemetry.

    Returns:
        True if instrumentation was installed
    """
    if not settings.enable_telemetry:
        return False

    if "pytest" in sys.modules:
        logger.info("Skipping OpenTelemetry setup during tests")
        return False

    try:
        prometheus_reader = PrometheusMetricReader()
        metrics.set_meter_provider(MeterProvider(metric_readers=[prometheus_reader]))
        _start_metrics_server()

        tracer_provider = TracerProvider()
        # Console exporter until an OTLP collector is deployed
        tracer_provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        trace.set_tracer_provider(tracer_provider)

        FastAPIInstrumentor.instrument_app(app)
        logger.info("FastAPI instrumentation enabled")

        SQLAlchemyInstrumentor().instrument(engine=get_main_engine())
        logger.info("SQLAlchemy instrumentation enabled")
    except Exception as e:
        logger.error("Failed to setup OpenTelemetry", error=str(e), exc_info=True)
        return False

    logger.info("OpenTelemetry tracing and metrics setup completed")
    return True


def _start_metrics_server() -> None:
    for port in METRICS_PORTS:
        try:
            start_http_server(port)
        except OSError:
            logger.warning("Metrics port busy", port=port)
            continue
        logger.info("Prometheus metrics server started", port=port)
        return
    raise OSError(f"No free metrics port in {METRICS_PORTS}")
