"""
OpenTelemetry initialization for the LockTrader service.

Sets up OTLP export of traces and logs when an endpoint is configured.
Without an endpoint the API tracer stays a no-op, so instrumented code
(OrderExecutor spans) runs unchanged in tests.
"""

import logging
import os
from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

# Global logger provider for attaching handlers
_global_logger_provider = None
_otlp_logging_handler = None


def _parse_headers() -> dict[str, str] | None:
    """Parse OTEL_EXPORTER_OTLP_HEADERS as "key1=value1,key2=value2" """
    headers_env = os.getenv("OTEL_EXPORTER_OTLP_HEADERS")
    if not headers_env:
        return None
    pairs = [h.split("=", 1) for h in headers_env.split(",") if "=" in h]
    return {k.strip(): v.strip() for k, v in pairs}


def setup_telemetry(
    service_name: str = "locktrader",
    service_version: Optional[str] = None,
    otlp_endpoint: Optional[str] = None,
    enable_traces: bool = True,
    enable_logs: bool = True,
) -> bool:
    """
    Set up OpenTelemetry instrumentation.

    Args:
        service_name: Name of the service
        service_version: Version of the service
        otlp_endpoint: OTLP endpoint URL
        enable_traces: Whether to export traces
        enable_logs: Whether to export logs

    Returns:
        True when at least one exporter was installed
    """
    global _global_logger_provider

    if os.getenv("ENABLE_OTEL", "true").lower() not in ("true", "1", "yes"):
        return False

    service_version = service_version or os.getenv("OTEL_SERVICE_VERSION", "1.0.0")
    otlp_endpoint = otlp_endpoint or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not otlp_endpoint:
        print(f"ℹ️  No OTLP endpoint configured, telemetry export disabled for {service_name}")
        return False

    resource_attributes = {
        "service.name": service_name,
        "service.version": service_version,
        "service.instance.id": os.getenv("HOSTNAME", "unknown"),
        "deployment.environment": os.getenv("ENVIRONMENT", "production"),
    }

    # Add custom resource attributes if provided
    custom_attributes = os.getenv("OTEL_RESOURCE_ATTRIBUTES")
    if custom_attributes:
        for attr in custom_attributes.split(","):
            if "=" in attr:
                key, value = attr.split("=", 1)
                resource_attributes[key.strip()] = value.strip()

    resource = Resource.create(resource_attributes)
    headers = _parse_headers()
    installed = False

    if enable_traces:
        try:
            tracer_provider = TracerProvider(resource=resource)
            tracer_provider.add_span_processor(
                BatchSpanProcessor(
                    OTLPSpanExporter(endpoint=otlp_endpoint, headers=headers)
                )
            )
            trace.set_tracer_provider(tracer_provider)
            installed = True
            print(f"✅ OpenTelemetry tracing enabled for {service_name}")
        except Exception as e:
            print(f"⚠️  Failed to set up OpenTelemetry tracing: {e}")

    if enable_logs:
        try:
            logger_provider = LoggerProvider(resource=resource)
            logger_provider.add_log_record_processor(
                BatchLogRecordProcessor(
                    OTLPLogExporter(endpoint=otlp_endpoint, headers=headers)
                )
            )
            _global_logger_provider = logger_provider
            installed = True
            print(f"✅ OpenTelemetry logging export configured for {service_name}")
        except Exception as e:
            print(f"⚠️  Failed to set up OpenTelemetry logging export: {e}")

    return installed


def instrument_fastapi_app(app) -> None:
    """
    Instrument a FastAPI application.

    Args:
        app: FastAPI application instance
    """
    try:
        FastAPIInstrumentor.instrument_app(app)
        print("✅ FastAPI application instrumented")
    except Exception as e:
        print(f"⚠️  Failed to instrument FastAPI application: {e}")


def attach_logging_handler() -> bool:
    """
    Attach the OTLP logging handler to the root logger.

    Call after logging is configured (in the lifespan startup), otherwise a
    later basicConfig() can drop the handler.
    """
    global _otlp_logging_handler

    if _global_logger_provider is None:
        return False

    root_logger = logging.getLogger()
    if _otlp_logging_handler is not None and _otlp_logging_handler in root_logger.handlers:
        return True

    handler = LoggingHandler(level=logging.NOTSET, logger_provider=_global_logger_provider)
    root_logger.addHandler(handler)
    _otlp_logging_handler = handler
    print("✅ OTLP logging handler attached")
    return True


def get_tracer(name: str = None) -> trace.Tracer:
    """
    Get a tracer instance.

    Args:
        name: Tracer name

    Returns:
        Tracer instance
    """
    return trace.get_tracer(name or "locktrader")
