"""
Notifications emitted by the aggregator.

Each event carries the identifiers (period id, station id, request id) an
external observer needs to rebuild a forecast's lifecycle without reading
aggregator state.
"""

import logging
from collections import deque
from dataclasses import dataclass, asdict
from typing import Any, Callable, Deque, Dict, List, Optional

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    """Base class for notifications."""

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event"] = self.name
        return data


@dataclass(frozen=True)
class StationRegistered(Event):
    station_id: int
    address: str
    location: str


@dataclass(frozen=True)
class StationDeactivated(Event):
    station_id: int


@dataclass(frozen=True)
class TimeWindowToggled(Event):
    enabled: bool


@dataclass(frozen=True)
class ContributionSubmitted(Event):
    station_id: int
    period_id: int
    timestamp: int


@dataclass(frozen=True)
class ForecastRequested(Event):
    period_id: int
    request_id: int
    participant_count: int


@dataclass(frozen=True)
class ForecastCompleted(Event):
    period_id: int
    request_id: int
    participant_count: int
    timestamp: int


@dataclass(frozen=True)
class ForecastFailed(Event):
    period_id: int
    request_id: int
    reason: str


@dataclass(frozen=True)
class ForecastTimedOut(Event):
    period_id: int
    request_id: int
    issued_at: int
    timestamp: int


@dataclass(frozen=True)
class RefundIssued(Event):
    period_id: int
    request_id: int
    participant_count: int
    reason: str


@dataclass(frozen=True)
class SecurityAlert(Event):
    request_id: int
    reason: str
    period_id: Optional[int] = None


@dataclass(frozen=True)
class PeriodAdvanced(Event):
    previous_period_id: int
    period_id: int


Listener = Callable[[Event], None]


class EventBus:
    """
    Fans events out to registered listeners and keeps a local log.

    Listener failures are logged and do not affect the emitting operation.
    The log keeps only the most recent max_events entries; long-running
    processes should rely on listeners for a complete record.
    """

    DEFAULT_MAX_EVENTS = 10000

    def __init__(self, max_events: int = DEFAULT_MAX_EVENTS):
        """
        Initialize event bus.

        Args:
            max_events: Size of the local event log
        """
        if max_events < 1:
            raise ValueError("max_events must be positive")
        self._listeners: List[Listener] = []
        self._events: Deque[Event] = deque(maxlen=max_events)

    def subscribe(self, listener: Listener) -> None:
        """Register a listener called with every emitted event."""
        self._listeners.append(listener)

    def emit(self, event: Event) -> None:
        """Record an event and deliver it to listeners."""
        self._events.append(event)
        logger.info(f"{event.name}: {event.to_dict()}")
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed on {event.name}: {e}")

    def get_events(self, event_type: Optional[type] = None) -> List[Event]:
        """Get logged events, optionally filtered by type."""
        if event_type is None:
            return list(self._events)
        return [e for e in self._events if isinstance(e, event_type)]

    def clear(self) -> None:
        """Clear the local event log."""
        self._events.clear()
