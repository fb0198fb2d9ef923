# telemetry.py — OpenTelemetry instrumentation for the Rocks tracker
"""
Configures distributed tracing for inbound requests, SQL and outbound
webhook calls. Exports to an OTLP collector when OTEL_EXPORTER_OTLP_ENDPOINT
is set, otherwise does nothing.
"""
import os
import logging

logger = logging.getLogger("rocks.telemetry")

SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "rocks-api")
SERVICE_VERSION = "1.4.0"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")


def setup_telemetry(app=None):
    """Initialise tracing and instrument FastAPI, SQLAlchemy and HTTPX.

    The OTel packages are an optional extra; without them, or without an
    endpoint, this returns None and the service runs untraced.
    """
    if not OTLP_ENDPOINT:
        logger.info("OpenTelemetry disabled (OTEL_EXPORTER_OTLP_ENDPOINT not set)")
        return None

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.sdk.resources import Resource, SERVICE_NAME as RES_SVC_NAME
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
    except ImportError:
        logger.warning("OTEL_EXPORTER_OTLP_ENDPOINT set but the telemetry extra is not installed")
        return None

    try:
        resource = Resource.create({
            RES_SVC_NAME: SERVICE_NAME,
            "service.version": SERVICE_VERSION,
            "deployment.environment": ENVIRONMENT,
        })
        provider = TracerProvider(resource=resource)
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=OTLP_ENDPOINT, insecure=True)))
        trace.set_tracer_provider(provider)

        if app is not None:
            FastAPIInstrumentor.instrument_app(app, excluded_urls="health", tracer_provider=provider)
        SQLAlchemyInstrumentor().instrument(tracer_provider=provider)
        # Alert webhooks go out through httpx
        HTTPXClientInstrumentor().instrument(tracer_provider=provider)

        logger.info(f"OpenTelemetry initialised → {OTLP_ENDPOINT}")
        return provider
    except Exception as e:
        logger.error(f"OpenTelemetry setup failed: {e}")
        return None
