"""
Tests for the Timeout Monitor and keeper service.
"""

import pytest
from unittest.mock import MagicMock, patch

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(__file__))))

from conftest import EXAMPLE_READINGS, submit_readings

from weather_aggregator.errors import (
    InvalidForecastStateError,
    ReentrancyError,
    UnauthorizedError,
)
from weather_aggregator.events import (
    ForecastFailed,
    ForecastTimedOut,
    PeriodAdvanced,
    RefundIssued,
)
from weather_aggregator.keeper import (
    TimeoutCheckResult,
    TimeoutKeeperService,
    create_keeper_from_env,
)
from weather_aggregator.state import ForecastStatus


@pytest.fixture
def requested(aggregator, stations):
    """Aggregator with decryption requested for period 0."""
    submit_readings(aggregator, stations, EXAMPLE_READINGS)
    return aggregator.generate_forecast()


class TestCheckTimeout:
    """Tests for check_timeout."""

    def test_before_deadline(self, aggregator, requested, clock):
        """Test nothing happens before the deadline."""
        clock.advance(aggregator.config.decryption_timeout)

        assert aggregator.check_timeout() is False
        assert aggregator.get_forecast(0).status == ForecastStatus.DECRYPTION_REQUESTED

    def test_after_deadline(self, aggregator, requested, clock, store):
        """Test an expired request times the period out."""
        issued_at = clock.now()
        clock.advance(aggregator.config.decryption_timeout + 1)

        assert aggregator.check_timeout() is True

        record = aggregator.get_forecast(0)
        assert record.status == ForecastStatus.TIMED_OUT
        assert record.failure_reason == "decryption timeout"
        assert aggregator.get_pending_request(0) is None
        assert store.get_forecast(0).status == ForecastStatus.TIMED_OUT
        assert store.get_request_status(requested) == "timed_out"

        timed_out = aggregator.events.get_events(ForecastTimedOut)[-1]
        assert (timed_out.period_id, timed_out.request_id, timed_out.issued_at) == \
            (0, requested, issued_at)
        refund = aggregator.events.get_events(RefundIssued)[-1]
        assert refund.participant_count == 3

    def test_store_failure_leaves_period_awaiting(self, aggregator, requested, clock, store):
        """Test a failed write keeps the request open and emits nothing."""
        clock.advance(aggregator.config.decryption_timeout + 1)

        with patch.object(store, 'finalize_request', side_effect=RuntimeError("db down")):
            with pytest.raises(RuntimeError):
                aggregator.check_timeout()

        assert aggregator.get_forecast(0).status == ForecastStatus.DECRYPTION_REQUESTED
        assert aggregator.get_pending_request(0).request_id == requested
        assert aggregator.events.get_events(ForecastTimedOut) == []
        assert aggregator.events.get_events(RefundIssued) == []

        assert aggregator.check_timeout() is True
        assert len(aggregator.events.get_events(ForecastTimedOut)) == 1
        assert len(aggregator.events.get_events(RefundIssued)) == 1
        assert store.get_request_status(requested) == "timed_out"

    def test_not_awaiting(self, aggregator, stations):
        """Test periods without a request cannot time out."""
        with pytest.raises(InvalidForecastStateError, match="not awaiting"):
            aggregator.check_timeout()

    def test_callback_after_timeout_rejected(self, aggregator, oracle, requested, clock):
        """Test a timed out period never completes."""
        clock.advance(aggregator.config.decryption_timeout + 1)
        aggregator.check_timeout()

        cleartexts, proof = oracle.build_response(oracle.get_request(requested))
        with pytest.raises(InvalidForecastStateError):
            aggregator.on_decryption_result(requested, cleartexts, proof)

        record = aggregator.get_forecast(0)
        assert record.status == ForecastStatus.TIMED_OUT
        assert record.values() == (0, 0, 0, 0)

    def test_timeout_after_completion_rejected(self, aggregator, oracle, requested, clock):
        """Test a completed period cannot time out."""
        oracle.fulfill(requested)
        clock.advance(aggregator.config.decryption_timeout + 1)

        with pytest.raises(InvalidForecastStateError):
            aggregator.check_timeout(0)
        assert aggregator.get_forecast(0).status == ForecastStatus.COMPLETED

    def test_reentrancy(self, aggregator, requested, clock):
        """Test check_timeout is guarded."""
        clock.advance(aggregator.config.decryption_timeout + 1)
        with aggregator.state.guard.acquire():
            with pytest.raises(ReentrancyError):
                aggregator.check_timeout()

    def test_seconds_until_deadline(self, aggregator, requested, clock):
        clock.advance(600)
        assert aggregator.timeouts.seconds_until_deadline(0) == 3000
        assert aggregator.timeouts.seconds_until_deadline(5) is None


class TestMarkFailed:
    """Tests for mark_failed."""

    def test_mark_failed(self, aggregator, owner, requested, store):
        """Test owner can fail a stalled period."""
        aggregator.mark_failed(owner.address, 0, "oracle outage")

        record = aggregator.get_forecast(0)
        assert record.status == ForecastStatus.FAILED
        assert record.failure_reason == "oracle outage"
        assert store.get_forecast(0).status == ForecastStatus.FAILED

        failed = aggregator.events.get_events(ForecastFailed)[-1]
        assert (failed.period_id, failed.request_id, failed.reason) == (0, requested, "oracle outage")
        assert aggregator.events.get_events(RefundIssued)[-1].reason == "oracle outage"

    def test_store_failure_leaves_period_awaiting(self, aggregator, owner, requested, store):
        """Test a failed write does not fail the period in memory."""
        with patch.object(store, 'finalize_request', side_effect=RuntimeError("db down")):
            with pytest.raises(RuntimeError):
                aggregator.mark_failed(owner.address, 0, "oracle outage")

        assert aggregator.get_forecast(0).status == ForecastStatus.DECRYPTION_REQUESTED
        assert aggregator.events.get_events(ForecastFailed) == []

        aggregator.mark_failed(owner.address, 0, "oracle outage")
        assert aggregator.get_forecast(0).status == ForecastStatus.FAILED

    def test_non_owner(self, aggregator, stations, requested):
        """Test mark_failed is owner only."""
        with pytest.raises(UnauthorizedError):
            aggregator.mark_failed(stations[0], 0, "nope")
        assert aggregator.get_forecast(0).status == ForecastStatus.DECRYPTION_REQUESTED

    def test_not_awaiting(self, aggregator, owner, stations):
        """Test only periods awaiting decryption can fail."""
        with pytest.raises(InvalidForecastStateError):
            aggregator.mark_failed(owner.address, 0, "too early")

    def test_callback_after_failure_rejected(self, aggregator, owner, oracle, requested):
        """Test a failed period ignores the late oracle answer."""
        aggregator.mark_failed(owner.address, 0, "oracle outage")
        result = oracle.fulfill(requested)

        assert result.success is False
        assert aggregator.get_forecast(0).status == ForecastStatus.FAILED


class TestAdvancePeriod:
    """Tests for advance_period."""

    def test_advance_after_timeout(self, aggregator, owner, stations, requested, clock):
        """Test owner can open a new period after a timeout."""
        clock.advance(aggregator.config.decryption_timeout + 1)
        aggregator.check_timeout()

        assert aggregator.advance_period(owner.address) == 1
        assert aggregator.current_forecast_id == 1
        assert aggregator.has_station_submitted(0) is False
        assert aggregator.events.get_events(PeriodAdvanced)[-1].previous_period_id == 0

        aggregator.submit_weather_data(stations[0], 2250, 6500, 101300, 12)

    def test_advance_after_failure(self, aggregator, owner, requested):
        aggregator.mark_failed(owner.address, 0, "oracle outage")
        assert aggregator.advance_period(owner.address) == 1

    def test_advance_rejected_while_pending(self, aggregator, owner, requested):
        """Test periods awaiting decryption cannot be skipped."""
        with pytest.raises(InvalidForecastStateError, match="only failed or timed out"):
            aggregator.advance_period(owner.address)

    def test_advance_non_owner(self, aggregator, owner, stations, requested):
        aggregator.mark_failed(owner.address, 0, "oracle outage")
        with pytest.raises(UnauthorizedError):
            aggregator.advance_period(stations[0])


class TestTimeoutKeeperService:
    """Tests for TimeoutKeeperService."""

    def test_run_once_nothing_expired(self, aggregator, requested):
        """Test no results before the deadline."""
        keeper = TimeoutKeeperService(aggregator.timeouts)
        assert keeper.run_once() == []

    def test_run_once_times_out(self, aggregator, requested, clock):
        """Test expired requests are closed out."""
        keeper = TimeoutKeeperService(aggregator.timeouts)
        clock.advance(aggregator.config.decryption_timeout + 1)

        results = keeper.run_once()

        assert results == [TimeoutCheckResult(0, requested, True)]
        assert keeper.get_results() == results
        assert aggregator.get_forecast(0).status == ForecastStatus.TIMED_OUT

        keeper.clear_results()
        assert keeper.get_results() == []

    def test_run_once_records_errors(self, aggregator, requested, clock):
        """Test monitor errors are captured, not raised."""
        keeper = TimeoutKeeperService(aggregator.timeouts)
        clock.advance(aggregator.config.decryption_timeout + 1)

        with aggregator.state.guard.acquire():
            results = keeper.run_once()

        assert results[0].timed_out is False
        assert "Reentrant" in results[0].error

    def test_stop(self, aggregator):
        """Test stop flips the running flag."""
        keeper = TimeoutKeeperService(aggregator.timeouts, poll_interval=1)
        keeper._running = True
        keeper.stop()
        assert keeper._running is False

    @patch('weather_aggregator.keeper.time.sleep')
    def test_start_loop(self, mock_sleep, aggregator):
        """Test start runs cycles until stopped."""
        keeper = TimeoutKeeperService(aggregator.timeouts, poll_interval=5)
        keeper.check_expired = MagicMock(return_value=[])
        mock_sleep.side_effect = lambda _: keeper.stop()

        keeper.start()

        keeper.check_expired.assert_called_once()
        mock_sleep.assert_called_once_with(5)

    def test_create_from_env(self, aggregator):
        """Test poll interval is read from the environment."""
        with patch.dict(os.environ, {"KEEPER_POLL_INTERVAL": "30"}):
            keeper = create_keeper_from_env(aggregator.timeouts)
        assert keeper.poll_interval == 30
