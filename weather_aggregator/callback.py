"""
Callback Processor.

on_decryption_result() is the single entry point the oracle calls with a
request id, the decrypted scaled totals and a proof. It may be called zero,
one or many times per request id, with valid or forged proofs, so every
invariant is checked here again:

1. proof authenticity (no side effects on failure)
2. replay protection (request id consumed before anything else can fail)
3. period / status check
4. deadline check (late results are discarded, period times out)
5. reverse privacy division
6. obfuscation
7. finalization and period advance
"""

import logging
from dataclasses import replace
from typing import Sequence, Tuple

from eth_abi.packed import encode_packed
from eth_hash.auto import keccak

from .aggregation import DecryptionRequestManager
from .config import AggregatorConfig
from .errors import (
    InvalidDivisorError,
    InvalidForecastStateError,
    InvalidProofError,
    ReplayedRequestError,
)
from .events import EventBus, ForecastCompleted, SecurityAlert
from .gateway import decode_cleartexts
from .proofs import ProofVerifier
from .state import FIELD_NAMES, AggregatorState, ForecastRecord, ForecastStatus

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


OBFUSCATION_STEPS = 11  # offsets 0..10 map to -5%..+5%
OBFUSCATION_CENTER = 5
# Fields 0..2 are obfuscated; wind speed is reported as the raw average
OBFUSCATED_FIELDS = 3


def obfuscation_offset(seed: int, field_index: int) -> int:
    """offset = keccak256(abi.encodePacked(uint256 seed, uint256 index)) mod 11"""
    digest = keccak(encode_packed(['uint256', 'uint256'], [seed, field_index]))
    return int.from_bytes(digest, 'big') % OBFUSCATION_STEPS


def apply_offset(value: int, offset: int) -> int:
    """Scale value by (100 - offset)% below the center, (100 + offset - 5)% above."""
    if offset < OBFUSCATION_CENTER:
        return value * (100 - offset) // 100
    return value * (100 + (offset - OBFUSCATION_CENTER)) // 100


def apply_obfuscation(value: int, seed: int, field_index: int) -> int:
    """Deterministic +/-5% perturbation of a finalized value."""
    return apply_offset(value, obfuscation_offset(seed, field_index))


def privacy_divide(
    scaled_totals: Sequence[int],
    participant_count: int,
    privacy_multiplier: int
) -> Tuple[int, ...]:
    """
    Turn sum * multiplier back into per-field averages.

    Raises:
        InvalidDivisorError: If participant_count * multiplier is zero
    """
    divisor = participant_count * privacy_multiplier
    if divisor == 0:
        raise InvalidDivisorError(
            f"Invalid divisor: {participant_count} stations x {privacy_multiplier}"
        )
    return tuple(total // divisor for total in scaled_totals)


class CallbackProcessor:
    """Verifies and finalizes decryption results from the oracle."""

    def __init__(
        self,
        state: AggregatorState,
        config: AggregatorConfig,
        verifier: ProofVerifier,
        requests: DecryptionRequestManager,
        timeouts,
        events: EventBus,
        clock,
        store=None
    ):
        """
        Initialize callback processor.

        Args:
            state: Shared aggregator state
            config: Protocol parameters
            verifier: Proof verifier for oracle results
            requests: Request id to period mapping
            timeouts: TimeoutMonitor used for late results
            events: Event bus
            clock: Time source
            store: Optional forecast store for completed records
        """
        self.state = state
        self.config = config
        self.verifier = verifier
        self.requests = requests
        self.timeouts = timeouts
        self.events = events
        self.clock = clock
        self.store = store

    def _unconsume(self, request_id: int) -> None:
        """Give the request id back after a failed store write so the oracle can redeliver."""
        logger.error(f"Store write failed for request {request_id}, result not recorded")
        self.state.processed_requests.discard(request_id)

    def on_decryption_result(
        self,
        request_id: int,
        cleartexts: bytes,
        proof: bytes
    ) -> ForecastRecord:
        """
        Process a decryption result.

        Args:
            request_id: Oracle request identifier
            cleartexts: ABI-encoded scaled totals (four uint256 words)
            proof: Oracle signatures over the result

        Returns:
            The forecast record, COMPLETED or TIMED_OUT

        Raises:
            InvalidProofError: Proof does not attest the cleartexts
            ReplayedRequestError: Request id already processed
            InvalidForecastStateError: Unknown request or period not awaiting decryption
            InvalidDivisorError: Zero divisor
        """
        with self.state.guard.acquire():
            if not self.verifier.verify(request_id, cleartexts, proof):
                logger.warning(f"Rejected forged or invalid proof for request {request_id}")
                self.events.emit(SecurityAlert(request_id, "invalid proof"))
                raise InvalidProofError(f"Invalid decryption proof for request {request_id}")

            if request_id in self.state.processed_requests:
                logger.warning(f"Rejected replay of request {request_id}")
                self.events.emit(SecurityAlert(
                    request_id, "replayed request", self.requests.resolve_period(request_id)
                ))
                raise ReplayedRequestError(f"Request {request_id} already processed")
            self.state.processed_requests.add(request_id)

            period_id = self.requests.resolve_period(request_id)
            record = None if period_id is None else self.state.get_forecast(period_id)
            pending = None if period_id is None else self.requests.get_pending(period_id)
            if (record is None or pending is None
                    or record.status != ForecastStatus.DECRYPTION_REQUESTED
                    or pending.request_id != request_id):
                raise InvalidForecastStateError(
                    f"Request {request_id} does not belong to a period awaiting decryption"
                )

            now = self.clock.now()
            if pending.is_expired(now, self.config.decryption_timeout):
                logger.warning(
                    f"Late result for request {request_id}, period {period_id} timed out"
                )
                try:
                    self.timeouts.expire(record, pending, now)
                except Exception:
                    self._unconsume(request_id)
                    raise
                return record

            scaled_totals = decode_cleartexts(cleartexts, len(FIELD_NAMES))
            averages = privacy_divide(
                scaled_totals, pending.participant_count, self.config.privacy_multiplier
            )
            values = [
                apply_obfuscation(value, pending.seed, index)
                if index < OBFUSCATED_FIELDS else value
                for index, value in enumerate(averages)
            ]

            temperature, humidity, pressure, wind_speed = values
            completed = replace(
                record,
                status=ForecastStatus.COMPLETED,
                temperature=temperature,
                humidity=humidity,
                pressure=pressure,
                wind_speed=wind_speed,
                timestamp=now,
                participant_count=pending.participant_count,
            )
            if self.store is not None:
                try:
                    self.store.finalize_request(completed)
                except Exception:
                    self._unconsume(request_id)
                    raise

            record.temperature, record.humidity, record.pressure, record.wind_speed = values
            record.timestamp = now
            record.participant_count = pending.participant_count
            record.transition(ForecastStatus.COMPLETED)
            self.requests.release(period_id)
            self.state.open_next_period()

        logger.info(
            f"Completed forecast for period {period_id} with "
            f"{pending.participant_count} stations"
        )
        self.events.emit(ForecastCompleted(
            period_id, request_id, pending.participant_count, now
        ))
        return record
