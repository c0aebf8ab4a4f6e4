"""
Metering Events - Audit/diagnostic signals injected into the core services.

Services never log audit signals through a module global: they receive a
MeteringEventSink. The default sink writes structlog events and Prometheus counters.
"""

from enum import Enum
from typing import Any, Protocol

import structlog

from metering.observability.metrics import metrics

logger = structlog.get_logger("metering.events")


class MeteringEvent(str, Enum):
    """Audit event names."""

    USAGE_CONSUMED = "usage_consumed"
    USAGE_DENIED = "usage_denied"
    USAGE_REPLAYED = "usage_replayed"
    CREDITS_GRANTED = "credits_granted"
    CREDITS_CONSUMED = "credits_consumed"
    CREDITS_EXPIRED = "credits_expired"
    ACCESS_DECIDED = "access_decided"
    CATALOG_LOOKUP_FAILED = "catalog_lookup_failed"


_WARNING_EVENTS = frozenset({MeteringEvent.CATALOG_LOOKUP_FAILED})
_LEDGER_ENTRY_TYPES = {
    MeteringEvent.CREDITS_GRANTED: "GRANT",
    MeteringEvent.CREDITS_CONSUMED: "CONSUME",
    MeteringEvent.CREDITS_EXPIRED: "EXPIRE",
}


class MeteringEventSink(Protocol):
    """Receives audit events from the metering core."""

    def emit(self, event: MeteringEvent, **fields: Any) -> None: ...


class StructlogEventSink:
    """Default sink: one structured log line per event, plus counters."""

    def __init__(self, bound_logger: Any = None) -> None:
        self._logger = bound_logger or logger

    def emit(self, event: MeteringEvent, **fields: Any) -> None:
        clean = {key: _loggable(value) for key, value in fields.items() if value is not None}
        if event in _WARNING_EVENTS:
            self._logger.warning(event.value, **clean)
        else:
            self._logger.info(event.value, **clean)

        entry_type = _LEDGER_ENTRY_TYPES.get(event)
        if entry_type is not None:
            metrics.record_ledger_entry(entry_type)
        elif event == MeteringEvent.ACCESS_DECIDED:
            metrics.record_access_decision(bool(fields.get("allowed")), clean.get("reason"))


def _loggable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


default_event_sink = StructlogEventSink()
