"""
Contribution Store.

Accepts one encrypted reading per station per period. Values arrive as
fixed-point integers (hundredths; wind speed in whole km/h), are range
checked, then encrypted field by field before anything is stored.
"""

import logging
from typing import Any, Dict, Type

from .clock import hour_in_window
from .config import AggregatorConfig
from .encryption import EncryptionBackend
from .errors import (
    DuplicateSubmissionError,
    FieldOutOfRangeError,
    InvalidHumidityError,
    InvalidPressureError,
    InvalidTemperatureError,
    InvalidWindSpeedError,
    TimeWindowClosedError,
)
from .events import ContributionSubmitted, EventBus
from .registry import require_active_station
from .state import AggregatorState, Contribution

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


FIELD_ERRORS: Dict[str, Type[FieldOutOfRangeError]] = {
    "temperature": InvalidTemperatureError,
    "humidity": InvalidHumidityError,
    "pressure": InvalidPressureError,
    "wind_speed": InvalidWindSpeedError,
}


def validate_reading(name: str, value: Any, maximum: int) -> int:
    """
    Check a single reading against its bound.

    Raises:
        FieldOutOfRangeError: The field-specific subclass
    """
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= maximum:
        raise FIELD_ERRORS[name](value, maximum)
    return value


def is_submission_open(state: AggregatorState, config: AggregatorConfig, now: int) -> bool:
    if not state.time_window_enabled:
        return True
    return hour_in_window(now, config.submission_start_hour, config.submission_end_hour)


class ContributionStore:
    """Stores encrypted station readings for the active period."""

    def __init__(
        self,
        state: AggregatorState,
        config: AggregatorConfig,
        backend: EncryptionBackend,
        events: EventBus,
        clock
    ):
        self.state = state
        self.config = config
        self.backend = backend
        self.events = events
        self.clock = clock

    def submit(
        self,
        caller: str,
        temperature: int,
        humidity: int,
        pressure: int,
        wind_speed: int
    ) -> Contribution:
        """
        Submit a station's readings for the current period.

        Args:
            caller: Station address
            temperature: Hundredths of a degree Celsius
            humidity: Hundredths of a percent
            pressure: Hundredths of a hPa
            wind_speed: km/h

        Returns:
            The stored Contribution
        """
        with self.state.guard.acquire():
            station = require_active_station(self.state, caller)
            now = self.clock.now()
            if not is_submission_open(self.state, self.config, now):
                raise TimeWindowClosedError("Data submission window is closed")

            period_id = self.state.current_forecast_id
            if self.state.get_contribution(period_id, station.station_id) is not None:
                raise DuplicateSubmissionError("Already submitted this period")

            bounds = self.config.bounds
            readings = {
                "temperature": validate_reading("temperature", temperature, bounds.temperature),
                "humidity": validate_reading("humidity", humidity, bounds.humidity),
                "pressure": validate_reading("pressure", pressure, bounds.pressure),
                "wind_speed": validate_reading("wind_speed", wind_speed, bounds.wind_speed),
            }
            encrypted = {
                name: self.backend.encrypt(value) for name, value in readings.items()
            }

            contribution = Contribution(
                station_id=station.station_id,
                period_id=period_id,
                timestamp=now,
                **encrypted
            )
            self.state.contributions[(period_id, station.station_id)] = contribution
            station.submission_count += 1
            station.last_submission_time = now

        logger.info(f"Station {station.station_id} submitted data for period {period_id}")
        self.events.emit(ContributionSubmitted(station.station_id, period_id, now))
        return contribution

    def has_submitted(self, station_id: int, period_id: int = None) -> bool:
        """Whether a station has contributed in a period (default: current)."""
        if period_id is None:
            period_id = self.state.current_forecast_id
        contribution = self.state.get_contribution(period_id, station_id)
        return contribution is not None and contribution.submitted

    def submitted_count(self, period_id: int = None) -> int:
        """Number of stations that contributed in a period (default: current)."""
        if period_id is None:
            period_id = self.state.current_forecast_id
        return sum(1 for (p, _), c in self.state.contributions.items()
                   if p == period_id and c.submitted)
