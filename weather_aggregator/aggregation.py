"""
Aggregation Engine and Decryption Request Manager.

aggregate() homomorphically sums every eligible contribution of the open
period, scales each sum by the privacy multiplier so the oracle only ever
sees sum * multiplier, and issues one decryption request. The request
manager tracks which period each request id belongs to and allows at most
one outstanding request per period.
"""

import logging
from typing import List, Optional

from eth_abi.packed import encode_packed
from eth_hash.auto import keccak

from .clock import hour_in_window
from .config import AggregatorConfig
from .encryption import EncryptedValue, EncryptionBackend
from .errors import (
    InsufficientParticipationError,
    InvalidForecastStateError,
    TimeWindowClosedError,
)
from .events import EventBus, ForecastRequested
from .gateway import DecryptionCallback, DecryptionOracle
from .state import AggregatorState, ForecastRecord, ForecastStatus, PendingRequest

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def derive_seed(timestamp: int, entropy: int) -> int:
    """
    Obfuscation seed fixed at request time.

    seed = keccak256(abi.encodePacked(uint256 timestamp, uint256 entropy))
    """
    return int.from_bytes(
        keccak(encode_packed(['uint256', 'uint256'], [timestamp, entropy % (1 << 256)])),
        'big'
    )


def is_generation_open(state: AggregatorState, config: AggregatorConfig, now: int) -> bool:
    if not state.time_window_enabled:
        return True
    return hour_in_window(now, config.generation_start_hour, config.generation_end_hour)


class DecryptionRequestManager:
    """Maps request ids to periods; one outstanding request per period."""

    def __init__(self, state: AggregatorState):
        self.state = state

    def ensure_can_request(self, record: ForecastRecord) -> None:
        if record.status != ForecastStatus.PENDING:
            raise InvalidForecastStateError(
                f"Forecast already generated this period "
                f"(period {record.period_id} is {record.status.value})"
            )
        if record.period_id in self.state.pending_requests:
            raise InvalidForecastStateError(
                f"Period {record.period_id} already has an outstanding request"
            )

    def register(self, pending: PendingRequest) -> None:
        if pending.request_id in self.state.request_periods:
            raise InvalidForecastStateError(
                f"Oracle reused request id {pending.request_id}"
            )
        self.state.pending_requests[pending.period_id] = pending
        self.state.request_periods[pending.request_id] = pending.period_id

    def resolve_period(self, request_id: int) -> Optional[int]:
        return self.state.request_periods.get(request_id)

    def get_pending(self, period_id: int) -> Optional[PendingRequest]:
        return self.state.pending_requests.get(period_id)

    def release(self, period_id: int) -> Optional[PendingRequest]:
        """Drop the outstanding request of a period that reached a terminal state."""
        return self.state.pending_requests.pop(period_id, None)

    def outstanding(self) -> List[PendingRequest]:
        return list(self.state.pending_requests.values())


class AggregationEngine:
    """Sums encrypted contributions and requests decryption of the scaled totals."""

    def __init__(
        self,
        state: AggregatorState,
        config: AggregatorConfig,
        backend: EncryptionBackend,
        oracle: DecryptionOracle,
        requests: DecryptionRequestManager,
        events: EventBus,
        clock,
        store=None
    ):
        self.state = state
        self.config = config
        self.backend = backend
        self.oracle = oracle
        self.requests = requests
        self.events = events
        self.clock = clock
        self.store = store

    def _sum_contributions(self, period_id: int):
        totals = [self.backend.encrypt(0) for _ in range(4)]
        participants = 0
        for station in self.state.stations:
            if not station.is_active:
                continue
            contribution = self.state.get_contribution(period_id, station.station_id)
            if contribution is None or not contribution.submitted:
                continue
            totals = [
                self.backend.add(total, handle)
                for total, handle in zip(totals, contribution.handles)
            ]
            participants += 1
        return totals, participants

    def aggregate(self, callback: DecryptionCallback) -> int:
        """
        Aggregate the current period and request decryption.

        Args:
            callback: Entry point the oracle calls with the result

        Returns:
            Request id issued by the oracle

        Raises:
            TimeWindowClosedError: Outside generation hours
            InvalidForecastStateError: Period already requested or finished
            InsufficientParticipationError: Too few contributions
        """
        with self.state.guard.acquire():
            now = self.clock.now()
            if not is_generation_open(self.state, self.config, now):
                raise TimeWindowClosedError("Forecast generation window is closed")

            record = self.state.current_forecast
            self.requests.ensure_can_request(record)

            totals, participants = self._sum_contributions(record.period_id)
            if participants < self.config.min_stations:
                raise InsufficientParticipationError(participants, self.config.min_stations)

            record.transition(ForecastStatus.AGGREGATING)
            try:
                scaled: List[EncryptedValue] = [
                    self.backend.multiply_constant(total, self.config.privacy_multiplier)
                    for total in totals
                ]
                request_id = self.oracle.request_decryption(scaled, callback)
                pending = PendingRequest(
                    period_id=record.period_id,
                    request_id=request_id,
                    issued_at=now,
                    participant_count=participants,
                    seed=derive_seed(now, self.clock.entropy()),
                    handle_ids=tuple(h.handle_id for h in scaled),
                )
                if self.store is not None:
                    self.store.save_pending_request(pending)
                self.requests.register(pending)
            except Exception:
                # Nothing was recorded; reopen the period for another attempt
                record.status = ForecastStatus.PENDING
                raise

            record.transition(ForecastStatus.DECRYPTION_REQUESTED)
            record.request_id = request_id
            record.participant_count = participants

        logger.info(
            f"Requested decryption for period {record.period_id}: "
            f"request {request_id}, {participants} stations"
        )
        self.events.emit(ForecastRequested(record.period_id, request_id, participants))
        return request_id
