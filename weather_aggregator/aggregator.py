"""
Confidential Weather Aggregator.

Wires the station registry, contribution store, aggregation engine,
callback processor and timeout monitor around one shared AggregatorState,
and exposes the administrative and read-only operations.
"""

import os
import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional

from web3 import Web3

from .aggregation import AggregationEngine, DecryptionRequestManager, is_generation_open
from .callback import CallbackProcessor
from .clock import ChainClock, SystemClock, hour_of_day
from .config import AggregatorConfig, load_config_from_env
from .contributions import ContributionStore, is_submission_open
from .encryption import EncryptionBackend
from .errors import InvalidForecastStateError
from .events import EventBus, PeriodAdvanced
from .gateway import DecryptionOracle, RelayerClient
from .keeper import TimeoutMonitor
from .proofs import ProofVerifier
from .registry import StationRegistry, normalize_address, require_admin
from .state import AggregatorState, Contribution, ForecastRecord, ForecastStatus, PendingRequest

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class ConfidentialWeatherAggregator:
    """
    Privacy-preserving weather aggregation over encrypted station readings.

    Stations submit encrypted readings; once enough have contributed,
    generate_forecast() requests decryption of the scaled sums and the
    oracle later answers through on_decryption_result().
    """

    def __init__(
        self,
        owner: str,
        backend: EncryptionBackend,
        oracle: DecryptionOracle,
        verifier: ProofVerifier,
        config: Optional[AggregatorConfig] = None,
        clock=None,
        store=None,
        events: Optional[EventBus] = None
    ):
        """
        Initialize aggregator.

        Args:
            owner: Administrator address
            backend: Homomorphic encryption backend (public key side)
            oracle: Decryption oracle adapter
            verifier: Verifier for oracle proofs
            config: Protocol parameters (defaults if omitted)
            clock: Time and entropy source (SystemClock if omitted)
            store: Optional ForecastStore / InMemoryForecastStore
            events: Optional event bus to share with observers
        """
        self.config = config or AggregatorConfig()
        self.clock = clock or SystemClock()
        self.events = events or EventBus()
        self.store = store
        self.state = AggregatorState(
            owner=normalize_address(owner),
            time_window_enabled=self.config.time_window_enabled
        )

        self.registry = StationRegistry(self.state, self.events)
        self.contributions = ContributionStore(
            self.state, self.config, backend, self.events, self.clock
        )
        self.requests = DecryptionRequestManager(self.state)
        self.engine = AggregationEngine(
            self.state, self.config, backend, oracle, self.requests,
            self.events, self.clock, store
        )
        self.timeouts = TimeoutMonitor(
            self.state, self.config, self.requests, self.events, self.clock, store
        )
        self.callbacks = CallbackProcessor(
            self.state, self.config, verifier, self.requests, self.timeouts,
            self.events, self.clock, store
        )

    # ============ Administration ============

    @property
    def owner(self) -> str:
        return self.state.owner

    def register_station(self, caller: str, address: str, location: str) -> int:
        return self.registry.register_station(caller, address, location)

    def deactivate_station(self, caller: str, station_id: int) -> None:
        self.registry.deactivate_station(caller, station_id)

    def set_time_window_enabled(self, caller: str, enabled: bool) -> None:
        self.registry.set_time_window_enabled(caller, enabled)

    def mark_failed(self, caller: str, period_id: int, reason: str) -> None:
        self.timeouts.mark_failed(caller, period_id, reason)

    def advance_period(self, caller: str) -> int:
        """
        Open the next period after the current one failed or timed out.

        Returns:
            New period id
        """
        require_admin(self.state, caller)
        with self.state.guard.acquire():
            record = self.state.current_forecast
            if record.status not in (ForecastStatus.FAILED, ForecastStatus.TIMED_OUT):
                raise InvalidForecastStateError(
                    f"Period {record.period_id} is {record.status.value}; "
                    f"only failed or timed out periods can be skipped"
                )
            previous = record.period_id
            period_id = self.state.open_next_period()
        logger.info(f"Skipped {record.status.value} period {previous}, opened period {period_id}")
        self.events.emit(PeriodAdvanced(previous, period_id))
        return period_id

    # ============ Protocol ============

    def submit_weather_data(
        self,
        caller: str,
        temperature: int,
        humidity: int,
        pressure: int,
        wind_speed: int
    ) -> Contribution:
        return self.contributions.submit(caller, temperature, humidity, pressure, wind_speed)

    def generate_forecast(self) -> int:
        """Aggregate the current period and request decryption."""
        return self.engine.aggregate(self.on_decryption_result)

    def on_decryption_result(self, request_id: int, cleartexts: bytes, proof: bytes) -> ForecastRecord:
        return self.callbacks.on_decryption_result(request_id, cleartexts, proof)

    def check_timeout(self, period_id: Optional[int] = None) -> bool:
        return self.timeouts.check_timeout(period_id)

    def restore_from_store(self) -> List[PendingRequest]:
        """
        Rebuild period state from the store after a restart.

        Finalized records are reloaded, requests still waiting for the
        oracle are registered again (and re-tracked on a RelayerClient),
        and request ids that already reached a terminal state are marked
        processed so a redelivery is rejected as a replay.

        Returns:
            Pending requests that were restored

        Raises:
            ValueError: No store is configured
            InvalidForecastStateError: This aggregator has already started a period
        """
        if self.store is None:
            raise ValueError("restore_from_store() needs a forecast store")

        with self.state.guard.acquire():
            if (self.state.current_forecast_id != 0
                    or self.state.current_forecast.status != ForecastStatus.PENDING
                    or self.state.request_periods):
                raise InvalidForecastStateError("Can only restore into a fresh aggregator")

            records = {record.period_id: record for record in self.store.get_history()}
            pending_requests = self.store.get_pending_requests()
            for pending in pending_requests:
                records[pending.period_id] = ForecastRecord(
                    period_id=pending.period_id,
                    status=ForecastStatus.DECRYPTION_REQUESTED,
                    participant_count=pending.participant_count,
                    request_id=pending.request_id,
                )
            if not records:
                return []

            last = max(records)
            self.state.forecasts = [
                replace(records[period_id]) if period_id in records
                else ForecastRecord(period_id=period_id)
                for period_id in range(last + 1)
            ]
            self.state.current_forecast_id = last
            if self.state.forecasts[last].status == ForecastStatus.COMPLETED:
                self.state.open_next_period()

            for pending in pending_requests:
                self.requests.register(pending)
            for record in self.state.forecasts:
                if record.request_id is not None and record.status.is_terminal:
                    self.state.request_periods[record.request_id] = record.period_id
                    self.state.processed_requests.add(record.request_id)

        oracle = self.engine.oracle
        if isinstance(oracle, RelayerClient):
            for pending in pending_requests:
                oracle.track(pending.request_id, self.on_decryption_result)

        logger.info(
            f"Restored {len(records)} periods from store, "
            f"{len(pending_requests)} awaiting decryption, "
            f"current period {self.state.current_forecast_id}"
        )
        return pending_requests

    # ============ Views ============

    @property
    def station_count(self) -> int:
        return len(self.state.stations)

    @property
    def current_forecast_id(self) -> int:
        return self.state.current_forecast_id

    @property
    def time_window_enabled(self) -> bool:
        return self.state.time_window_enabled

    @property
    def forecast_count(self) -> int:
        """Number of completed forecasts."""
        return sum(1 for r in self.state.forecasts if r.status == ForecastStatus.COMPLETED)

    def get_active_station_count(self) -> int:
        return self.registry.active_station_count()

    def get_station_info(self, station_id: int) -> Dict[str, Any]:
        station = self.state.get_station(station_id)
        if station is None:
            raise IndexError(f"Unknown station id: {station_id}")
        return {
            "station_address": station.address,
            "location": station.location,
            "is_active": station.is_active,
            "submission_count": station.submission_count,
            "last_submission_time": station.last_submission_time,
        }

    def has_station_submitted(self, station_id: int) -> bool:
        return self.contributions.has_submitted(station_id)

    def can_submit_data(self) -> bool:
        return is_submission_open(self.state, self.config, self.clock.now())

    def can_generate_forecast(self) -> bool:
        return is_generation_open(self.state, self.config, self.clock.now())

    def get_current_hour(self) -> int:
        return hour_of_day(self.clock.now())

    def get_current_forecast_info(self) -> Dict[str, Any]:
        return {
            "current_forecast_id": self.state.current_forecast_id,
            "can_submit": self.can_submit_data(),
            "can_generate": self.can_generate_forecast(),
            "submitted_stations": self.contributions.submitted_count(),
            "status": self.state.current_forecast.status.value,
        }

    def get_forecast(self, period_id: int) -> Optional[ForecastRecord]:
        return self.state.get_forecast(period_id)

    def get_pending_request(self, period_id: Optional[int] = None) -> Optional[PendingRequest]:
        if period_id is None:
            period_id = self.state.current_forecast_id
        return self.requests.get_pending(period_id)

    def forecast_history(self) -> List[ForecastRecord]:
        """Finalized records, from the store when one is configured."""
        if self.store is not None:
            return self.store.get_history()
        return [r for r in self.state.forecasts if r.status.is_terminal]


def create_aggregator_from_env(
    backend: EncryptionBackend,
    oracle: DecryptionOracle,
    web3: Optional[Web3] = None,
    store=None
) -> ConfidentialWeatherAggregator:
    """
    Create a ConfidentialWeatherAggregator from environment variables.

    Required env vars:
    - AGGREGATOR_OWNER: Administrator address
    - ORACLE_SIGNERS: Comma separated oracle signer addresses

    Other settings are read by load_config_from_env().

    Args:
        backend: Encryption backend
        oracle: Decryption oracle adapter
        web3: Optional Web3 instance; when given, time and entropy come from the chain
        store: Optional forecast store

    Returns:
        Configured ConfidentialWeatherAggregator
    """
    owner = os.getenv("AGGREGATOR_OWNER")
    if not owner:
        raise ValueError("AGGREGATOR_OWNER environment variable required")

    config = load_config_from_env()
    if not config.oracle_signers:
        raise ValueError("ORACLE_SIGNERS environment variable required")

    verifier = ProofVerifier(
        signers=config.oracle_signers,
        chain_id=config.chain_id,
        aggregator_address=config.aggregator_address,
        threshold=config.proof_threshold
    )
    clock = ChainClock(web3) if web3 is not None else SystemClock()

    return ConfidentialWeatherAggregator(
        owner=owner,
        backend=backend,
        oracle=oracle,
        verifier=verifier,
        config=config,
        clock=clock,
        store=store
    )
