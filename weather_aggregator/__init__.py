"""
Confidential Weather Aggregator Package.

This package aggregates encrypted weather station readings into regional
forecasts without revealing any single station's data.

Components:
- aggregator: Facade wiring the protocol components together
- registry: Station registration and access checks
- contributions: Encrypted per-period submissions
- aggregation: Homomorphic aggregation and decryption requests
- callback: Proof-checked finalization of decryption results
- keeper: Timeout monitor and keeper service
- gateway: Local and relayer-backed decryption oracles
- store: PostgreSQL-backed forecast history
"""

from .aggregator import (
    ConfidentialWeatherAggregator,
    create_aggregator_from_env,
)

from .config import (
    AggregatorConfig,
    FieldBounds,
    load_config_from_env,
)

from .encryption import (
    EncryptedValue,
    EncryptionBackend,
    PaillierBackend,
)

from .state import (
    ForecastRecord,
    ForecastStatus,
    PendingRequest,
    Station,
)

from .gateway import (
    LocalDecryptionOracle,
    RelayerClient,
    create_relayer_from_env,
)

from .proofs import (
    ProofSigner,
    ProofVerifier,
)

from .keeper import (
    TimeoutKeeperService,
    create_keeper_from_env,
)

from .store import (
    ForecastStore,
    InMemoryForecastStore,
)

from .events import EventBus

from .errors import AggregatorError

__all__ = [
    # Aggregator
    'ConfidentialWeatherAggregator',
    'create_aggregator_from_env',
    # Config
    'AggregatorConfig',
    'FieldBounds',
    'load_config_from_env',
    # Encryption
    'EncryptedValue',
    'EncryptionBackend',
    'PaillierBackend',
    # State
    'ForecastRecord',
    'ForecastStatus',
    'PendingRequest',
    'Station',
    # Oracle
    'LocalDecryptionOracle',
    'RelayerClient',
    'create_relayer_from_env',
    'ProofSigner',
    'ProofVerifier',
    # Keeper
    'TimeoutKeeperService',
    'create_keeper_from_env',
    # Store
    'ForecastStore',
    'InMemoryForecastStore',
    # Events and errors
    'EventBus',
    'AggregatorError',
]
