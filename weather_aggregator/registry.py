"""
Station registry and access-control checks.

The require_* functions are pure checks: they read state and raise, never
mutate. The StationRegistry applies the administrative operations.
"""

import logging
from typing import Optional

from web3 import Web3

from .config import ZERO_ADDRESS
from .errors import (
    InvalidStationAddressError,
    InactiveStationError,
    StationAlreadyInactiveError,
    StationAlreadyRegisteredError,
    UnauthorizedError,
    UnknownStationError,
)
from .events import EventBus, StationDeactivated, StationRegistered, TimeWindowToggled
from .state import AggregatorState, Station

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def normalize_address(address: str) -> str:
    """
    Validate and checksum an Ethereum-style address.

    Raises:
        InvalidStationAddressError: If the address is malformed
    """
    if not isinstance(address, str) or not Web3.is_address(address):
        raise InvalidStationAddressError(f"Invalid address: {address!r}")
    return Web3.to_checksum_address(address)


def require_admin(state: AggregatorState, caller: str) -> None:
    """Raise unless caller is the aggregator owner."""
    if not isinstance(caller, str) or caller.lower() != state.owner.lower():
        raise UnauthorizedError("Only owner can call this")


def require_active_station(state: AggregatorState, caller: str) -> Station:
    """
    Resolve caller to an active station.

    Returns:
        The caller's Station

    Raises:
        UnknownStationError: If caller is not registered
        InactiveStationError: If the station was deactivated
    """
    try:
        key = normalize_address(caller)
    except InvalidStationAddressError:
        raise UnknownStationError("Not a registered station")
    station_id = state.station_index.get(key)
    if station_id is None:
        raise UnknownStationError("Not a registered station")
    station = state.stations[station_id]
    if not station.is_active:
        raise InactiveStationError("Station not active")
    return station


class StationRegistry:
    """Administrative operations over the station arena."""

    def __init__(self, state: AggregatorState, events: EventBus):
        self.state = state
        self.events = events

    def register_station(self, caller: str, address: str, location: str) -> int:
        """
        Register a new weather station.

        Args:
            caller: Address invoking the operation (must be owner)
            address: Station address
            location: Human-readable location

        Returns:
            New station id
        """
        require_admin(self.state, caller)
        if not isinstance(address, str) or address.lower() == ZERO_ADDRESS:
            raise InvalidStationAddressError("Invalid station address")
        checksum = normalize_address(address)
        if checksum in self.state.station_index:
            raise StationAlreadyRegisteredError(f"Station already registered: {checksum}")

        with self.state.guard.acquire():
            station_id = len(self.state.stations)
            self.state.stations.append(
                Station(station_id=station_id, address=checksum, location=location)
            )
            self.state.station_index[checksum] = station_id

        logger.info(f"Registered station {station_id} at {location} ({checksum})")
        self.events.emit(StationRegistered(station_id, checksum, location))
        return station_id

    def deactivate_station(self, caller: str, station_id: int) -> None:
        """Deactivate a station so it can no longer contribute."""
        require_admin(self.state, caller)
        station = self.state.get_station(station_id)
        if station is None:
            raise UnknownStationError(f"Unknown station id: {station_id}")
        if not station.is_active:
            raise StationAlreadyInactiveError("Station already inactive")

        with self.state.guard.acquire():
            station.is_active = False

        logger.info(f"Deactivated station {station_id}")
        self.events.emit(StationDeactivated(station_id))

    def set_time_window_enabled(self, caller: str, enabled: bool) -> None:
        """Toggle enforcement of the submission/generation hours."""
        require_admin(self.state, caller)
        with self.state.guard.acquire():
            self.state.time_window_enabled = bool(enabled)
        self.events.emit(TimeWindowToggled(bool(enabled)))

    def get_station_by_address(self, address: str) -> Optional[Station]:
        try:
            key = normalize_address(address)
        except InvalidStationAddressError:
            return None
        station_id = self.state.station_index.get(key)
        return None if station_id is None else self.state.stations[station_id]

    def active_station_count(self) -> int:
        return sum(1 for s in self.state.stations if s.is_active)
