"""
Time and entropy sources.

The aggregator reads "now" and seed entropy through a clock object so the
same protocol code runs against wall-clock time or against the latest block
of a chain.
"""

import os
import time
import logging
from typing import Any, Dict

from web3 import Web3

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SystemClock:
    """Wall-clock time with OS randomness as entropy."""

    def now(self) -> int:
        """Current Unix timestamp in seconds."""
        return int(time.time())

    def entropy(self) -> int:
        """256 bits of unpredictability."""
        return int.from_bytes(os.urandom(32), 'big')


class ChainClock:
    """
    Reads time and entropy from the latest block.

    Entropy is the block's prevrandao (exposed as mixHash by most clients).
    It is predictable to the block proposer and only as strong as the chain's
    randomness beacon.
    """

    def __init__(self, web3: Web3):
        """
        Initialize chain clock.

        Args:
            web3: Web3 instance
        """
        self.web3 = web3

    def _latest_block(self) -> Dict[str, Any]:
        return self.web3.eth.get_block('latest')

    def now(self) -> int:
        """Timestamp of the latest block."""
        return int(self._latest_block()['timestamp'])

    def entropy(self) -> int:
        """prevrandao of the latest block as an integer."""
        block = self._latest_block()
        randao = block.get('prevRandao') or block.get('mixHash')
        if randao is None:
            logger.warning("Latest block has no prevrandao, falling back to block hash")
            randao = block['hash']
        if isinstance(randao, int):
            return randao
        if isinstance(randao, str):
            return int(randao, 16)
        return int.from_bytes(bytes(randao), 'big')


def hour_of_day(timestamp: int) -> int:
    """UTC hour (0-23) of a Unix timestamp."""
    return (timestamp // 3600) % 24


def hour_in_window(timestamp: int, start_hour: int, end_hour: int) -> bool:
    """True if the UTC hour of timestamp lies in [start_hour, end_hour)."""
    return start_hour <= hour_of_day(timestamp) < end_hour
