"""
Configuration for the Confidential Weather Aggregator.

Values default to the protocol constants and can be overridden from
environment variables via load_config_from_env().
"""

import os
import logging
from dataclasses import dataclass, field
from typing import List

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass
class FieldBounds:
    """Upper bounds for each reading (fixed point, hundredths except wind)."""
    temperature: int = 10000  # 100.00 C
    humidity: int = 10000     # 100.00 %
    pressure: int = 110000    # 1100.00 hPa
    wind_speed: int = 200     # km/h


@dataclass
class AggregatorConfig:
    """Protocol parameters for one aggregator instance."""
    privacy_multiplier: int = 1000
    min_stations: int = 3
    decryption_timeout: int = 3600  # seconds
    time_window_enabled: bool = True
    submission_start_hour: int = 0
    submission_end_hour: int = 22
    generation_start_hour: int = 22
    generation_end_hour: int = 24
    bounds: FieldBounds = field(default_factory=FieldBounds)
    chain_id: int = 31337
    aggregator_address: str = ZERO_ADDRESS
    oracle_signers: List[str] = field(default_factory=list)
    proof_threshold: int = 1

    def __post_init__(self):
        if self.privacy_multiplier <= 0:
            raise ValueError("privacy_multiplier must be positive")
        if self.min_stations < 1:
            raise ValueError("min_stations must be at least 1")
        if self.decryption_timeout <= 0:
            raise ValueError("decryption_timeout must be positive")
        for start, end in (
            (self.submission_start_hour, self.submission_end_hour),
            (self.generation_start_hour, self.generation_end_hour),
        ):
            if not (0 <= start < end <= 24):
                raise ValueError(f"Invalid hour window: [{start}, {end})")
        if self.proof_threshold < 1:
            raise ValueError("proof_threshold must be at least 1")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def load_config_from_env() -> AggregatorConfig:
    """
    Build an AggregatorConfig from environment variables.

    Optional env vars:
    - PRIVACY_MULTIPLIER, MIN_STATIONS, DECRYPTION_TIMEOUT
    - TIME_WINDOW_ENABLED ("true"/"false")
    - SUBMISSION_START_HOUR, SUBMISSION_END_HOUR
    - GENERATION_START_HOUR, GENERATION_END_HOUR
    - CHAIN_ID, AGGREGATOR_ADDRESS
    - ORACLE_SIGNERS: comma separated signer addresses
    - PROOF_THRESHOLD

    Returns:
        Configured AggregatorConfig
    """
    defaults = AggregatorConfig()
    signers = [
        s.strip() for s in os.getenv("ORACLE_SIGNERS", "").split(",") if s.strip()
    ]
    window = os.getenv("TIME_WINDOW_ENABLED", "true").strip().lower()

    config = AggregatorConfig(
        privacy_multiplier=_env_int("PRIVACY_MULTIPLIER", defaults.privacy_multiplier),
        min_stations=_env_int("MIN_STATIONS", defaults.min_stations),
        decryption_timeout=_env_int("DECRYPTION_TIMEOUT", defaults.decryption_timeout),
        time_window_enabled=window not in ("0", "false", "no", "off"),
        submission_start_hour=_env_int("SUBMISSION_START_HOUR", defaults.submission_start_hour),
        submission_end_hour=_env_int("SUBMISSION_END_HOUR", defaults.submission_end_hour),
        generation_start_hour=_env_int("GENERATION_START_HOUR", defaults.generation_start_hour),
        generation_end_hour=_env_int("GENERATION_END_HOUR", defaults.generation_end_hour),
        chain_id=_env_int("CHAIN_ID", defaults.chain_id),
        aggregator_address=os.getenv("AGGREGATOR_ADDRESS", defaults.aggregator_address),
        oracle_signers=signers,
        proof_threshold=_env_int("PROOF_THRESHOLD", defaults.proof_threshold),
    )
    logger.info(
        f"Loaded config: multiplier={config.privacy_multiplier}, "
        f"min_stations={config.min_stations}, timeout={config.decryption_timeout}s, "
        f"signers={len(config.oracle_signers)}"
    )
    return config
