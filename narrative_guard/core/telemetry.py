"""
Telemetry events and sinks.

The router pushes structured events here and never waits on, or fails
because of, what a sink does with them.
"""

import json
import logging
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttemptCompleted:
    """One provider attempt, or a request-level budget rejection, has ended."""
    request_id: str
    user_id: str
    provider_name: Optional[str]
    status: str
    latency_ms: Optional[float]
    tokens_in: int = 0
    tokens_out: int = 0
    cost_amount: Decimal = Decimal(0)
    quality_issues: Tuple[str, ...] = ()
    error: Optional[str] = None

    event_type = "AttemptCompleted"


@dataclass(frozen=True)
class BudgetAlertRaised:
    """Spend for a policy scope crossed an advisory threshold."""
    policy_name: str
    scope: str
    threshold: Decimal
    spent: Decimal
    limit_amount: Decimal

    event_type = "BudgetAlertRaised"


@dataclass(frozen=True)
class RequestExhausted:
    """Every eligible provider failed for a request."""
    request_id: str
    user_id: str
    attempt_statuses: Tuple[Tuple[Optional[str], str], ...]
    skipped_providers: Tuple[str, ...] = ()

    event_type = "RequestExhausted"


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


def event_to_dict(event: Any) -> Dict[str, Any]:
    """Flatten an event into a dict with its type name."""
    data = asdict(event)
    data["event_type"] = event.event_type
    return data


class TelemetryEmitter(Protocol):
    def emit(self, event: Any) -> None:
        ...


class LoggingTelemetryEmitter:
    """Writes each event as one JSON line to a logger."""

    def __init__(self, logger_name: str = "narrative_guard.telemetry", level: int = logging.INFO):
        self._logger = logging.getLogger(logger_name)
        self._level = level

    def emit(self, event: Any) -> None:
        self._logger.log(self._level, json.dumps(event_to_dict(event), default=_jsonable, sort_keys=True))


class BufferedTelemetryEmitter:
    """Keeps the most recent events in memory for a poller to drain."""

    def __init__(self, max_events: int = 10000):
        self._events: Deque[Any] = deque(maxlen=max_events)

    def emit(self, event: Any) -> None:
        self._events.append(event)

    @property
    def events(self) -> List[Any]:
        return list(self._events)

    def drain(self) -> List[Any]:
        """Return buffered events and clear the buffer."""
        drained = []
        while self._events:
            drained.append(self._events.popleft())
        return drained


def emit_safely(emitter: Optional[TelemetryEmitter], event: Any) -> None:
    """Emit an event, logging and discarding any sink failure."""
    if emitter is None:
        return
    try:
        emitter.emit(event)
    except Exception:
        logger.exception("Telemetry emitter failed for %s", getattr(event, "event_type", event))
