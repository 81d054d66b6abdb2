"""
Application state for the aggregator.

All mutable protocol state lives in one AggregatorState instance that is
passed to each component; tests build a fresh one per case. Stations and
forecast records are held in arenas indexed by integer id.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from .encryption import EncryptedValue
from .errors import ReentrancyError

FIELD_NAMES = ("temperature", "humidity", "pressure", "wind_speed")


class ForecastStatus(Enum):
    """Lifecycle of a forecast period."""
    PENDING = "pending"
    AGGREGATING = "aggregating"
    DECRYPTION_REQUESTED = "decryption_requested"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ForecastStatus.COMPLETED,
    ForecastStatus.FAILED,
    ForecastStatus.TIMED_OUT,
})

# Allowed forward transitions
_TRANSITIONS = {
    ForecastStatus.PENDING: {ForecastStatus.AGGREGATING},
    ForecastStatus.AGGREGATING: {ForecastStatus.DECRYPTION_REQUESTED},
    ForecastStatus.DECRYPTION_REQUESTED: set(TERMINAL_STATUSES),
}


@dataclass
class Station:
    """A registered weather station."""
    station_id: int
    address: str
    location: str
    is_active: bool = True
    submission_count: int = 0
    last_submission_time: int = 0


@dataclass(frozen=True)
class Contribution:
    """One station's encrypted readings for one period."""
    station_id: int
    period_id: int
    temperature: EncryptedValue
    humidity: EncryptedValue
    pressure: EncryptedValue
    wind_speed: EncryptedValue
    timestamp: int
    submitted: bool = True

    @property
    def handles(self) -> Tuple[EncryptedValue, ...]:
        return (self.temperature, self.humidity, self.pressure, self.wind_speed)


@dataclass(frozen=True)
class PendingRequest:
    """An in-flight decryption request and the data needed to resolve it."""
    period_id: int
    request_id: int
    issued_at: int
    participant_count: int
    seed: int
    handle_ids: Tuple[str, ...] = ()

    def deadline(self, timeout: int) -> int:
        return self.issued_at + timeout

    def is_expired(self, now: int, timeout: int) -> bool:
        return now > self.deadline(timeout)


@dataclass
class ForecastRecord:
    """Result and status of one aggregation period."""
    period_id: int
    status: ForecastStatus = ForecastStatus.PENDING
    temperature: int = 0
    humidity: int = 0
    pressure: int = 0
    wind_speed: int = 0
    timestamp: int = 0
    participant_count: int = 0
    request_id: Optional[int] = None
    failure_reason: Optional[str] = None

    @property
    def is_generated(self) -> bool:
        return self.status == ForecastStatus.COMPLETED

    def values(self) -> Tuple[int, int, int, int]:
        return (self.temperature, self.humidity, self.pressure, self.wind_speed)

    def transition(self, new_status: ForecastStatus) -> None:
        """
        Move to a new status, enforcing forward-only transitions.

        Raises:
            ValueError: If the transition is not allowed
        """
        allowed = _TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise ValueError(
                f"Illegal forecast transition {self.status.value} -> {new_status.value}"
            )
        self.status = new_status


class ReentrancyGuard:
    """Blocks a guarded entry point from running inside another one."""

    def __init__(self):
        self._entered = False

    @property
    def locked(self) -> bool:
        return self._entered

    @contextmanager
    def acquire(self):
        if self._entered:
            raise ReentrancyError("Reentrant call")
        self._entered = True
        try:
            yield
        finally:
            self._entered = False


@dataclass
class AggregatorState:
    """Shared mutable state of one aggregator instance."""
    owner: str
    time_window_enabled: bool = True
    current_forecast_id: int = 0
    stations: List[Station] = field(default_factory=list)
    station_index: Dict[str, int] = field(default_factory=dict)
    contributions: Dict[Tuple[int, int], Contribution] = field(default_factory=dict)
    forecasts: List[ForecastRecord] = field(default_factory=list)
    pending_requests: Dict[int, PendingRequest] = field(default_factory=dict)
    request_periods: Dict[int, int] = field(default_factory=dict)
    processed_requests: Set[int] = field(default_factory=set)
    guard: ReentrancyGuard = field(default_factory=ReentrancyGuard)

    def __post_init__(self):
        if not self.forecasts:
            self.forecasts.append(ForecastRecord(period_id=0))

    @property
    def current_forecast(self) -> ForecastRecord:
        return self.forecasts[self.current_forecast_id]

    def get_forecast(self, period_id: int) -> Optional[ForecastRecord]:
        if 0 <= period_id < len(self.forecasts):
            return self.forecasts[period_id]
        return None

    def get_station(self, station_id: int) -> Optional[Station]:
        if 0 <= station_id < len(self.stations):
            return self.stations[station_id]
        return None

    def get_contribution(self, period_id: int, station_id: int) -> Optional[Contribution]:
        return self.contributions.get((period_id, station_id))

    def open_next_period(self) -> int:
        """Advance the period counter and open a fresh PENDING record."""
        self.current_forecast_id += 1
        self.forecasts.append(ForecastRecord(period_id=self.current_forecast_id))
        return self.current_forecast_id
