"""OpenTelemetry wiring for the backfill, audit and replay scripts.

Spans and instruments are created at import time through the global API in
the modules that use them (``eod.fetch_close``, ``eod.backfill_unit``,
``eod.provider.attempts``). Until :func:`setup_telemetry` installs SDK
providers those calls are no-ops, so library code never checks whether
telemetry is on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

from opentelemetry import metrics, trace
from opentelemetry._logs import set_logger_provider
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk._logs import LoggerProvider
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.semconv.resource import ResourceAttributes
from sqlalchemy.ext.asyncio import AsyncEngine

from eod_portfolio.config import AppSettings

logger = logging.getLogger(__name__)

# Workers are short-lived; export often enough that a sweep's counters land.
_METRIC_EXPORT_INTERVAL_MS = 5000


@dataclass
class TelemetryHandles:
    tracer_provider: TracerProvider
    meter_provider: MeterProvider
    logger_provider: LoggerProvider

    def shutdown(self) -> None:
        self.tracer_provider.shutdown()
        self.meter_provider.shutdown()
        self.logger_provider.shutdown()


_handles: TelemetryHandles | None = None


async def _vendor_request_hook(span, request) -> None:
    """Tag outbound provider calls with the vendor host so traces group by vendor."""

    if span is None or not span.is_recording():
        return
    host = urlsplit(str(request.url)).hostname
    if host:
        span.set_attribute("eod.vendor_host", host)


def _resource(settings: AppSettings) -> Resource:
    return Resource.create(
        {
            ResourceAttributes.SERVICE_NAME: settings.telemetry_service_name or settings.app_name,
            ResourceAttributes.SERVICE_NAMESPACE: "eod-portfolio",
            "eod.provider_order": ",".join(settings.provider_order),
            "eod.timezone": settings.timezone,
        }
    )


def _exporter_kwargs(settings: AppSettings) -> dict[str, Any]:
    kwargs: dict[str, Any] = {"insecure": settings.telemetry_otlp_insecure}
    if settings.telemetry_otlp_endpoint:
        kwargs["endpoint"] = settings.telemetry_otlp_endpoint
    return kwargs


def setup_telemetry(settings: AppSettings, engine: AsyncEngine | None = None) -> TelemetryHandles | None:
    """Install OTLP trace, metric and log pipelines once per process.

    Returns the provider handles so a script can flush them on exit, or
    ``None`` when telemetry is disabled.
    """

    global _handles  # noqa: PLW0603

    if _handles is not None:
        return _handles
    if not settings.telemetry_enabled:
        logger.info("Telemetry disabled via configuration")
        return None

    resource = _resource(settings)
    exporter_kwargs = _exporter_kwargs(settings)

    tracer_provider = TracerProvider(
        resource=resource,
        sampler=ParentBased(TraceIdRatioBased(settings.telemetry_sample_ratio)),
    )
    tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**exporter_kwargs)))
    trace.set_tracer_provider(tracer_provider)

    meter_provider = MeterProvider(
        resource=resource,
        metric_readers=[
            PeriodicExportingMetricReader(
                OTLPMetricExporter(**exporter_kwargs),
                export_interval_millis=_METRIC_EXPORT_INTERVAL_MS,
            )
        ],
    )
    metrics.set_meter_provider(meter_provider)

    logger_provider = LoggerProvider(resource=resource)
    logger_provider.add_log_record_processor(BatchLogRecordProcessor(OTLPLogExporter(**exporter_kwargs)))
    set_logger_provider(logger_provider)
    LoggingInstrumentor().instrument(set_logging_format=False)

    HTTPXClientInstrumentor().instrument(
        tracer_provider=tracer_provider,
        async_request_hook=_vendor_request_hook,
    )
    if engine is not None:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine, tracer_provider=tracer_provider)

    _handles = TelemetryHandles(tracer_provider, meter_provider, logger_provider)
    logger.info("Telemetry exporting to %s", settings.telemetry_otlp_endpoint or "the default OTLP endpoint")
    return _handles


def shutdown_telemetry() -> None:
    """Flush and stop exporters; safe to call when telemetry never started."""

    global _handles  # noqa: PLW0603

    if _handles is None:
        return
    _handles.shutdown()
    _handles = None


__all__ = ["TelemetryHandles", "setup_telemetry", "shutdown_telemetry"]
