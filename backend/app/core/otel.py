"""OpenTelemetry export (traces, metrics, logs) when an OTLP endpoint is configured"""
import logging

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from app.core.config import settings

logger = logging.getLogger(__name__)


def _resource() -> Resource:
    return Resource.create({
        "service.name": settings.OTEL_SERVICE_NAME,
        "service.version": "1.0.0",
        "deployment.environment": settings.OTEL_ENVIRONMENT
    })


def initialize_otel() -> bool:
    """Install trace and metric providers exporting over OTLP/gRPC"""
    if not settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        return False

    try:
        resource = _resource()

        trace_provider = TracerProvider(resource=resource)
        trace_provider.add_span_processor(BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT, insecure=True)
        ))
        trace.set_tracer_provider(trace_provider)

        metric_reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT, insecure=True),
            export_interval_millis=15000,
            export_timeout_millis=30000
        )
        metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[metric_reader]))
        return True
    except Exception as e:
        logger.warning(f"Failed to initialize OpenTelemetry: {e}")
        return False


def setup_otel_logging() -> bool:
    """Forward stdlib log records to the OTLP log exporter"""
    if not settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        return False

    try:
        from opentelemetry._logs import set_logger_provider
        from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
        from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
        from opentelemetry.sdk._logs.export import BatchLogRecordProcessor

        logger_provider = LoggerProvider(resource=_resource())
        set_logger_provider(logger_provider)
        logger_provider.add_log_record_processor(BatchLogRecordProcessor(
            OTLPLogExporter(endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT, insecure=True),
            max_queue_size=2048,
            export_timeout_millis=30000,
            schedule_delay_millis=5000
        ))
        logging.getLogger().addHandler(LoggingHandler(level=logging.NOTSET, logger_provider=logger_provider))
        return True
    except Exception as e:
        logger.warning(f"Failed to setup OTEL logging: {e}")
        return False


def instrument_app(app) -> None:
    """Instrument FastAPI routes and outgoing httpx calls (must run before startup)"""
    try:
        FastAPIInstrumentor.instrument_app(app)
        HTTPXClientInstrumentor().instrument()
    except Exception as e:
        logger.warning(f"Failed to instrument application: {e}")


def setup_otel(engine) -> bool:
    """Initialize exporters and instrument the SQLAlchemy engine

    Returns:
        bool: True if telemetry export is active
    """
    if not initialize_otel():
        logger.info("OpenTelemetry not configured - running without distributed tracing")
        return False

    if setup_otel_logging():
        logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
    else:
        logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")

    try:
        SQLAlchemyInstrumentor().instrument(engine=engine)
    except Exception as e:
        logger.warning(f"Failed to instrument SQLAlchemy: {e}")
    return True
