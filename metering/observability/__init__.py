"""
Observability module - Logging, Metrics, Tracing and audit events.
"""

from metering.observability.events import (
    MeteringEvent,
    MeteringEventSink,
    StructlogEventSink,
    default_event_sink,
)
from metering.observability.logging import get_logger, log_context, setup_logging
from metering.observability.metrics import metrics
from metering.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "MeteringEvent",
    "MeteringEventSink",
    "StructlogEventSink",
    "default_event_sink",
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
