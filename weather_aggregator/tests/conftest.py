"""
Pytest configuration and fixtures for weather aggregator tests.
"""

import pytest
import sys
import os

from eth_account import Account

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(__file__))))

from weather_aggregator.aggregator import ConfidentialWeatherAggregator
from weather_aggregator.config import AggregatorConfig
from weather_aggregator.encryption import PaillierBackend
from weather_aggregator.gateway import LocalDecryptionOracle
from weather_aggregator.proofs import ProofSigner, ProofVerifier
from weather_aggregator.store import InMemoryForecastStore


# Midnight UTC, 2023-11-14
DAY_START = 1699920000
MIDDAY = DAY_START + 12 * 3600
EVENING = DAY_START + 22 * 3600 + 600

AGGREGATOR_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"


class FakeClock:
    """Settable clock for deterministic tests."""

    def __init__(self, now: int = MIDDAY, entropy: int = 0xC0FFEE):
        self._now = now
        self._entropy = entropy

    def now(self) -> int:
        return self._now

    def entropy(self) -> int:
        return self._entropy

    def set(self, timestamp: int) -> None:
        self._now = timestamp

    def advance(self, seconds: int) -> None:
        self._now += seconds


@pytest.fixture
def clock():
    """Clock fixed at midday."""
    return FakeClock()


@pytest.fixture(scope="session")
def paillier():
    """Small Paillier key pair shared by the session (decrypting side)."""
    return PaillierBackend.generate(256)


@pytest.fixture
def owner():
    """Aggregator owner account."""
    return Account.create()


@pytest.fixture
def station_accounts():
    """Five station accounts."""
    return [Account.create() for _ in range(5)]


@pytest.fixture
def oracle_signer():
    """Single oracle signer."""
    return ProofSigner(Account.create().key.hex())


@pytest.fixture
def config(oracle_signer):
    """Default protocol config with time windows disabled."""
    return AggregatorConfig(
        time_window_enabled=False,
        aggregator_address=AGGREGATOR_ADDRESS,
        oracle_signers=[oracle_signer.address],
    )


@pytest.fixture
def verifier(config):
    """Verifier trusting the fixture oracle signer."""
    return ProofVerifier(
        signers=config.oracle_signers,
        chain_id=config.chain_id,
        aggregator_address=config.aggregator_address,
    )


@pytest.fixture
def oracle(paillier, oracle_signer, config):
    """Local oracle holding the private key."""
    return LocalDecryptionOracle(
        backend=paillier,
        signers=[oracle_signer],
        chain_id=config.chain_id,
        aggregator_address=config.aggregator_address,
    )


@pytest.fixture
def store():
    """Fresh in-memory forecast store."""
    return InMemoryForecastStore()


@pytest.fixture
def aggregator(owner, paillier, oracle, verifier, config, clock, store):
    """Aggregator wired to the local oracle, no stations registered."""
    return ConfidentialWeatherAggregator(
        owner=owner.address,
        backend=paillier.public_only(),
        oracle=oracle,
        verifier=verifier,
        config=config,
        clock=clock,
        store=store,
    )


@pytest.fixture
def stations(aggregator, owner, station_accounts):
    """Register every station account and return their addresses."""
    addresses = []
    for index, account in enumerate(station_accounts):
        aggregator.register_station(owner.address, account.address, f"Station {index}")
        addresses.append(account.address)
    return addresses


# Readings from the three-station example: 22.50 C, 18.30 C, 20.10 C
EXAMPLE_READINGS = [
    (2250, 6500, 101300, 12),
    (1830, 7000, 101100, 8),
    (2010, 6000, 101200, 10),
]


def submit_readings(aggregator, addresses, readings):
    """Submit one reading tuple per address."""
    for address, reading in zip(addresses, readings):
        aggregator.submit_weather_data(address, *reading)
