"""
Tests for configuration, clocks, events and state helpers.
"""

import pytest
from unittest.mock import MagicMock, patch

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(__file__))))

from conftest import DAY_START

from weather_aggregator.clock import ChainClock, SystemClock, hour_in_window, hour_of_day
from weather_aggregator.config import AggregatorConfig, load_config_from_env
from weather_aggregator.events import EventBus, StationDeactivated, StationRegistered
from weather_aggregator.state import ForecastRecord, ForecastStatus, PendingRequest


class TestAggregatorConfig:
    """Tests for AggregatorConfig."""

    def test_defaults(self):
        """Test protocol constants."""
        config = AggregatorConfig()
        assert config.privacy_multiplier == 1000
        assert config.min_stations == 3
        assert config.decryption_timeout == 3600
        assert config.time_window_enabled is True
        assert config.bounds.pressure == 110000

    @pytest.mark.parametrize("kwargs", [
        {"privacy_multiplier": 0},
        {"min_stations": 0},
        {"decryption_timeout": 0},
        {"submission_start_hour": 22, "submission_end_hour": 22},
        {"generation_end_hour": 25},
        {"proof_threshold": 0},
    ])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            AggregatorConfig(**kwargs)


class TestLoadConfigFromEnv:
    """Tests for load_config_from_env."""

    def test_empty_environment(self):
        """Test defaults apply when nothing is set."""
        with patch.dict(os.environ, {}, clear=True):
            config = load_config_from_env()
        assert config == AggregatorConfig()

    def test_overrides(self):
        """Test every variable is honoured."""
        with patch.dict(os.environ, {
            "PRIVACY_MULTIPLIER": "500",
            "MIN_STATIONS": "5",
            "DECRYPTION_TIMEOUT": "7200",
            "TIME_WINDOW_ENABLED": "false",
            "CHAIN_ID": "1",
            "AGGREGATOR_ADDRESS": "0x5FbDB2315678afecb367f032d93F642f64180aa3",
            "ORACLE_SIGNERS": "0x1111111111111111111111111111111111111111, 0x2222222222222222222222222222222222222222",
            "PROOF_THRESHOLD": "2",
        }, clear=True):
            config = load_config_from_env()

        assert config.privacy_multiplier == 500
        assert config.min_stations == 5
        assert config.decryption_timeout == 7200
        assert config.time_window_enabled is False
        assert config.chain_id == 1
        assert len(config.oracle_signers) == 2
        assert config.proof_threshold == 2

    def test_non_integer(self):
        """Test malformed integers raise with the variable name."""
        with patch.dict(os.environ, {"MIN_STATIONS": "three"}, clear=True):
            with pytest.raises(ValueError, match="MIN_STATIONS"):
                load_config_from_env()


class TestClocks:
    """Tests for time and entropy sources."""

    def test_hour_of_day(self):
        assert hour_of_day(DAY_START) == 0
        assert hour_of_day(DAY_START + 22 * 3600) == 22
        assert hour_of_day(DAY_START + 24 * 3600 - 1) == 23

    def test_hour_in_window(self):
        """Test windows are half-open."""
        assert hour_in_window(DAY_START + 21 * 3600, 0, 22) is True
        assert hour_in_window(DAY_START + 22 * 3600, 0, 22) is False
        assert hour_in_window(DAY_START + 23 * 3600, 22, 24) is True

    def test_system_clock(self):
        clock = SystemClock()
        assert clock.now() > DAY_START
        assert clock.entropy() != clock.entropy()

    def test_chain_clock_prevrandao(self):
        """Test block timestamp and prevrandao are used."""
        web3 = MagicMock()
        web3.eth.get_block.return_value = {
            'timestamp': 1700000000,
            'prevRandao': b'\x00' * 31 + b'\x2a',
        }
        clock = ChainClock(web3)

        assert clock.now() == 1700000000
        assert clock.entropy() == 42
        web3.eth.get_block.assert_called_with('latest')

    def test_chain_clock_mix_hash_hex(self):
        """Test hex string mixHash is accepted."""
        web3 = MagicMock()
        web3.eth.get_block.return_value = {'timestamp': 1, 'mixHash': '0x10'}
        assert ChainClock(web3).entropy() == 16

    def test_chain_clock_hash_fallback(self):
        """Test block hash is used when no randao is exposed."""
        web3 = MagicMock()
        web3.eth.get_block.return_value = {'timestamp': 1, 'hash': b'\x01\x00'}
        assert ChainClock(web3).entropy() == 256


class TestEventBus:
    """Tests for EventBus."""

    def test_emit_and_filter(self):
        bus = EventBus()
        bus.emit(StationRegistered(0, "0xabc", "Tokyo"))
        bus.emit(StationDeactivated(0))

        assert len(bus.get_events()) == 2
        assert bus.get_events(StationDeactivated) == [StationDeactivated(0)]

        bus.clear()
        assert bus.get_events() == []

    def test_to_dict(self):
        """Test events serialize with their name."""
        data = StationDeactivated(3).to_dict()
        assert data == {"station_id": 3, "event": "StationDeactivated"}

    def test_log_keeps_most_recent(self):
        """Test the local log drops the oldest events past its size."""
        bus = EventBus(max_events=3)
        received = []
        bus.subscribe(received.append)

        for station_id in range(5):
            bus.emit(StationDeactivated(station_id))

        assert bus.get_events() == [StationDeactivated(i) for i in (2, 3, 4)]
        assert len(received) == 5

    def test_log_size_must_be_positive(self):
        with pytest.raises(ValueError):
            EventBus(max_events=0)

    def test_listener_failure_isolated(self):
        """Test a failing listener does not stop delivery."""
        bus = EventBus()
        received = []
        bus.subscribe(MagicMock(side_effect=RuntimeError("listener bug")))
        bus.subscribe(received.append)

        bus.emit(StationDeactivated(1))

        assert received == [StationDeactivated(1)]


class TestForecastRecord:
    """Tests for ForecastRecord transitions."""

    def test_forward_transitions(self):
        record = ForecastRecord(period_id=0)
        record.transition(ForecastStatus.AGGREGATING)
        record.transition(ForecastStatus.DECRYPTION_REQUESTED)
        record.transition(ForecastStatus.COMPLETED)
        assert record.is_generated is True

    @pytest.mark.parametrize("start,target", [
        (ForecastStatus.PENDING, ForecastStatus.COMPLETED),
        (ForecastStatus.DECRYPTION_REQUESTED, ForecastStatus.PENDING),
        (ForecastStatus.COMPLETED, ForecastStatus.TIMED_OUT),
        (ForecastStatus.TIMED_OUT, ForecastStatus.COMPLETED),
        (ForecastStatus.FAILED, ForecastStatus.DECRYPTION_REQUESTED),
    ])
    def test_illegal_transitions(self, start, target):
        """Test statuses never move backward or leave a terminal state."""
        record = ForecastRecord(period_id=0, status=start)
        with pytest.raises(ValueError, match="Illegal"):
            record.transition(target)
        assert record.status == start

    def test_pending_request_deadline(self):
        pending = PendingRequest(0, 1, issued_at=100, participant_count=3, seed=0)
        assert pending.deadline(3600) == 3700
        assert pending.is_expired(3700, 3600) is False
        assert pending.is_expired(3701, 3600) is True
