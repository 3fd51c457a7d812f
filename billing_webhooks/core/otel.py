"""OpenTelemetry setup for the webhook service

Exporters are only installed when OTEL_EXPORTER_OTLP_ENDPOINT is set. Without
one, ``tracer`` hands out no-op spans and the service runs untraced.
"""
import logging

from opentelemetry import metrics, trace
from opentelemetry._logs import set_logger_provider
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from billing_webhooks.core.config import settings

logger = logging.getLogger(__name__)

SERVICE_VERSION = "1.0.0"

# Health checks and scrapes would drown the webhook traces
EXCLUDED_URLS = "health,metrics"

# Resolves through the global provider, so spans start exporting once
# initialize_otel() has run
tracer = trace.get_tracer("billing_webhooks.webhook")


def _resource() -> Resource:
    return Resource.create({
        "service.name": settings.OTEL_SERVICE_NAME,
        "service.version": SERVICE_VERSION,
        "deployment.environment": settings.OTEL_ENVIRONMENT,
    })


def _exporter_options() -> dict:
    return {"endpoint": settings.OTEL_EXPORTER_OTLP_ENDPOINT, "insecure": True}


def initialize_otel() -> bool:
    """Install trace and metric providers exporting over OTLP

    Returns False when no collector is configured or setup fails; the
    service keeps running either way.
    """
    if not settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        return False

    try:
        resource = _resource()

        trace_provider = TracerProvider(resource=resource)
        trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**_exporter_options())))
        trace.set_tracer_provider(trace_provider)

        metric_reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(**_exporter_options()),
            export_interval_millis=5000,
            export_timeout_millis=30000
        )
        metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[metric_reader]))

        logger.info(f"OpenTelemetry exporting {settings.OTEL_SERVICE_NAME} to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        return True
    except Exception as e:
        logger.warning(f"Failed to initialize OpenTelemetry: {e}")
        return False


def setup_otel_logging() -> bool:
    """Ship log records (webhook lifecycle lines included) to the collector"""
    if not settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        return False

    try:
        logger_provider = LoggerProvider(resource=_resource())
        set_logger_provider(logger_provider)
        logger_provider.add_log_record_processor(BatchLogRecordProcessor(
            OTLPLogExporter(**_exporter_options()),
            max_queue_size=2048,
            export_timeout_millis=30000,
            schedule_delay_millis=5000
        ))
        logging.getLogger().addHandler(LoggingHandler(level=logging.NOTSET, logger_provider=logger_provider))
        return True
    except Exception as e:
        logger.warning(f"Failed to setup OTEL logging: {e}")
        return False


def instrument_fastapi(app):
    FastAPIInstrumentor.instrument_app(app, excluded_urls=EXCLUDED_URLS)


def instrument_httpx():
    """Trace outgoing Slack alerts"""
    HTTPXClientInstrumentor().instrument()


def instrument_sqlalchemy(engine):
    """Trace ledger and reconciliation queries"""
    try:
        SQLAlchemyInstrumentor().instrument(engine=engine)
        logger.info("SQLAlchemy instrumentation enabled")
    except Exception as e:
        logger.warning(f"Failed to instrument SQLAlchemy: {e}")
