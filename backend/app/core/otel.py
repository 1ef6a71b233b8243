"""OpenTelemetry export for traces, metrics and logs

Everything here is a no-op unless OTEL_EXPORTER_OTLP_ENDPOINT is set; the
pipeline always asks for a tracer and gets the API's no-op one when export is off.
"""
import logging
from contextlib import contextmanager

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
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
        "deployment.environment": settings.OTEL_ENVIRONMENT,
    })


def _exporter_options() -> dict:
    # The collector runs as a sidecar, so plaintext gRPC
    return {"endpoint": settings.OTEL_EXPORTER_OTLP_ENDPOINT, "insecure": True}


def initialize_otel() -> bool:
    """Install trace and metric providers. Returns True when export is active."""
    if not settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        return False

    try:
        resource = _resource()

        tracer_provider = TracerProvider(resource=resource)
        tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**_exporter_options())))
        trace.set_tracer_provider(tracer_provider)

        reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(**_exporter_options()),
            export_interval_millis=5000,
            export_timeout_millis=30000,
        )
        metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    except Exception as e:
        logger.warning(f"Failed to initialize OpenTelemetry: {e}")
        return False
    return True


def setup_otel_logging() -> bool:
    """Forward stdlib log records to the collector as well"""
    if not settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        return False

    try:
        from opentelemetry._logs import set_logger_provider
        from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
        from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
        from opentelemetry.sdk._logs.export import BatchLogRecordProcessor

        provider = LoggerProvider(resource=_resource())
        provider.add_log_record_processor(BatchLogRecordProcessor(OTLPLogExporter(**_exporter_options())))
        set_logger_provider(provider)
        logging.getLogger().addHandler(LoggingHandler(level=logging.NOTSET, logger_provider=provider))
    except Exception as e:
        logger.warning(f"Failed to setup OTEL logging: {e}")
        return False
    return True


def instrument_fastapi(app):
    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")


def instrument_sqlalchemy(engine):
    try:
        SQLAlchemyInstrumentor().instrument(engine=engine)
        logger.info("SQLAlchemy instrumentation enabled")
    except Exception as e:
        logger.warning(f"Failed to instrument SQLAlchemy: {e}")


def get_tracer(name: str):
    return trace.get_tracer(name)


@contextmanager
def event_span(tracer, event):
    """Span around the processing of one webhook event, tagged with its Stripe identity"""
    with tracer.start_as_current_span("webhook.process") as span:
        span.set_attribute("stripe.event_id", event.id or "")
        span.set_attribute("stripe.event_type", event.type)
        span.set_attribute("stripe.account", event.account or "platform")
        yield span
