"""
Timeout Monitor and keeper service.

check_timeout() is permissionless: anyone can close out a period whose
decryption request has outlived its deadline, whether or not the oracle
ever answers. mark_failed() is the administrative override for known
oracle outages. TimeoutKeeperService polls outstanding requests and calls
check_timeout() once their deadline passes.
"""

import os
import time
import logging
from dataclasses import dataclass, replace
from typing import List, Optional

from .aggregation import DecryptionRequestManager
from .config import AggregatorConfig
from .errors import AggregatorError, InvalidForecastStateError
from .events import EventBus, ForecastFailed, ForecastTimedOut, RefundIssued
from .registry import require_admin
from .state import AggregatorState, ForecastRecord, ForecastStatus, PendingRequest

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class TimeoutMonitor:
    """Moves stalled DECRYPTION_REQUESTED periods to a terminal failure state."""

    def __init__(
        self,
        state: AggregatorState,
        config: AggregatorConfig,
        requests: DecryptionRequestManager,
        events: EventBus,
        clock,
        store=None
    ):
        self.state = state
        self.config = config
        self.requests = requests
        self.events = events
        self.clock = clock
        self.store = store

    def _awaiting(self, period_id: int):
        record = self.state.get_forecast(period_id)
        pending = self.requests.get_pending(period_id)
        if (record is None or pending is None
                or record.status != ForecastStatus.DECRYPTION_REQUESTED):
            raise InvalidForecastStateError(
                f"Period {period_id} is not awaiting decryption"
            )
        return record, pending

    def _close(self, record: ForecastRecord,
               status: ForecastStatus, reason: str, now: int) -> None:
        # Persist first; a failed write leaves the period awaiting decryption
        closed = replace(record, status=status, failure_reason=reason, timestamp=now)
        if self.store is not None:
            self.store.finalize_request(closed)
        record.transition(status)
        record.failure_reason = reason
        record.timestamp = now
        self.requests.release(record.period_id)

    def expire(self, record: ForecastRecord, pending: PendingRequest, now: int) -> None:
        """
        Time out a period. Caller must hold the reentrancy guard and have
        checked the record is DECRYPTION_REQUESTED and the deadline passed.
        """
        self._close(record, ForecastStatus.TIMED_OUT, "decryption timeout", now)
        logger.warning(
            f"Period {record.period_id} timed out waiting for request {pending.request_id}"
        )
        self.events.emit(ForecastTimedOut(
            record.period_id, pending.request_id, pending.issued_at, now
        ))
        self.events.emit(RefundIssued(
            record.period_id, pending.request_id, pending.participant_count,
            "decryption timeout"
        ))

    def check_timeout(self, period_id: Optional[int] = None) -> bool:
        """
        Time out a period whose request deadline has passed.

        Args:
            period_id: Period to check (default: current)

        Returns:
            True if the period transitioned to TIMED_OUT

        Raises:
            InvalidForecastStateError: Period is not awaiting decryption
        """
        if period_id is None:
            period_id = self.state.current_forecast_id
        with self.state.guard.acquire():
            record, pending = self._awaiting(period_id)
            now = self.clock.now()
            if not pending.is_expired(now, self.config.decryption_timeout):
                return False
            self.expire(record, pending, now)
        return True

    def mark_failed(self, caller: str, period_id: int, reason: str) -> None:
        """
        Administratively fail a period awaiting decryption.

        Raises:
            UnauthorizedError: Caller is not the owner
            InvalidForecastStateError: Period is not awaiting decryption
        """
        require_admin(self.state, caller)
        with self.state.guard.acquire():
            record, pending = self._awaiting(period_id)
            now = self.clock.now()
            self._close(record, ForecastStatus.FAILED, reason, now)

        logger.warning(f"Period {period_id} marked failed: {reason}")
        self.events.emit(ForecastFailed(period_id, pending.request_id, reason))
        self.events.emit(RefundIssued(
            period_id, pending.request_id, pending.participant_count, reason
        ))

    def seconds_until_deadline(self, period_id: int) -> Optional[int]:
        pending = self.requests.get_pending(period_id)
        if pending is None:
            return None
        return pending.deadline(self.config.decryption_timeout) - self.clock.now()


@dataclass
class TimeoutCheckResult:
    """Result of a keeper timeout check."""
    period_id: int
    request_id: int
    timed_out: bool
    error: Optional[str] = None


class TimeoutKeeperService:
    """
    Service that continuously closes out expired decryption requests.

    Note: start() blocks. For production use, run it in a separate thread.
    """

    DEFAULT_POLL_INTERVAL = 10  # seconds

    def __init__(
        self,
        monitor: TimeoutMonitor,
        poll_interval: int = DEFAULT_POLL_INTERVAL
    ):
        """
        Initialize keeper service.

        Args:
            monitor: TimeoutMonitor instance
            poll_interval: Interval between polling cycles in seconds
        """
        self.monitor = monitor
        self.poll_interval = poll_interval
        self._results: List[TimeoutCheckResult] = []
        self._running = False

    def check_expired(self) -> List[TimeoutCheckResult]:
        """
        Check every outstanding request and time out the expired ones.

        Returns:
            Results for requests whose deadline has passed
        """
        results = []
        now = self.monitor.clock.now()
        timeout = self.monitor.config.decryption_timeout

        for pending in self.monitor.requests.outstanding():
            if not pending.is_expired(now, timeout):
                continue
            try:
                timed_out = self.monitor.check_timeout(pending.period_id)
                result = TimeoutCheckResult(pending.period_id, pending.request_id, timed_out)
            except AggregatorError as e:
                logger.warning(f"Timeout check failed for period {pending.period_id}: {e}")
                result = TimeoutCheckResult(
                    pending.period_id, pending.request_id, False, error=str(e)
                )
            results.append(result)
            self._results.append(result)

        return results

    def run_once(self) -> List[TimeoutCheckResult]:
        """Run a single keeper cycle."""
        return self.check_expired()

    def get_results(self) -> List[TimeoutCheckResult]:
        return self._results.copy()

    def clear_results(self) -> None:
        """Clear stored check results."""
        self._results.clear()

    def start(self) -> None:
        """Start the continuous keeper loop."""
        self._running = True
        logger.info("Timeout keeper started")

        while self._running:
            try:
                results = self.check_expired()
                if results:
                    logger.info(f"Closed out {sum(r.timed_out for r in results)} periods this cycle")
            except Exception as e:
                logger.error(f"Error in keeper cycle: {e}")

            time.sleep(self.poll_interval)

    def stop(self) -> None:
        """Stop the keeper loop."""
        self._running = False
        logger.info("Timeout keeper stopped")


def create_keeper_from_env(monitor: TimeoutMonitor) -> TimeoutKeeperService:
    """
    Create a TimeoutKeeperService from environment variables.

    Optional env vars:
    - KEEPER_POLL_INTERVAL: Seconds between cycles (default 10)
    """
    poll_interval = int(os.getenv("KEEPER_POLL_INTERVAL", "10"))
    return TimeoutKeeperService(monitor=monitor, poll_interval=poll_interval)
