"""Best-effort telemetry for hierarchy operations."""

from account_hierarchy.core.services.telemetry.sink import (
    TelemetryEvent,
    TelemetrySink,
    NullTelemetrySink,
    HttpTelemetrySink,
    get_telemetry_sink,
)

__all__ = [
    "TelemetryEvent",
    "TelemetrySink",
    "NullTelemetrySink",
    "HttpTelemetrySink",
    "get_telemetry_sink",
]
