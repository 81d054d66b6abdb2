"""
Decryption oracle adapters.

The aggregator never decrypts. It hands scaled ciphertext handles to a
DecryptionOracle, which returns a request id immediately and later delivers
(request_id, cleartexts, proof) to the registered callback. The round trip
is a queued request consumed by an independent delivery step, so a request
can outlive the process that issued it.

Adapters:
- LocalDecryptionOracle: in-process queue holding the Paillier private key
  and the oracle signer keys (simulation and tests)
- RelayerClient: HTTP relayer that accepts requests and is polled for results
"""

import os
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import requests
from eth_abi import decode, encode
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .encryption import EncryptedValue, PaillierBackend
from .proofs import ProofSigner, encode_proof

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


DecryptionCallback = Callable[[int, bytes, bytes], object]


def encode_cleartexts(values: Sequence[int]) -> bytes:
    """ABI-encode decrypted values as consecutive uint256 words."""
    return encode(['uint256'] * len(values), list(values))


def decode_cleartexts(cleartexts: bytes, count: int) -> Tuple[int, ...]:
    """Decode `count` uint256 words from ABI-encoded cleartexts."""
    return tuple(decode(['uint256'] * count, bytes(cleartexts)))


@dataclass
class DecryptionRequest:
    """A queued request waiting for the oracle."""
    request_id: int
    handles: Tuple[EncryptedValue, ...]
    callback: DecryptionCallback


@dataclass
class DeliveryResult:
    """Outcome of delivering one oracle response to its callback."""
    request_id: int
    success: bool
    error: Optional[str] = None


class DecryptionOracle:
    """Interface of the external decryption oracle."""

    def request_decryption(
        self,
        handles: Sequence[EncryptedValue],
        callback: DecryptionCallback
    ) -> int:
        raise NotImplementedError


def _deliver(request_id: int, callback: DecryptionCallback,
             cleartexts: bytes, proof: bytes) -> DeliveryResult:
    try:
        callback(request_id, cleartexts, proof)
        return DeliveryResult(request_id=request_id, success=True)
    except Exception as e:
        logger.warning(f"Callback rejected result for request {request_id}: {e}")
        return DeliveryResult(request_id=request_id, success=False, error=str(e))


class LocalDecryptionOracle(DecryptionOracle):
    """
    In-process oracle for simulation and tests.

    Requests are queued by request_decryption() and only answered when
    process_pending() runs, mirroring the asynchronous gateway.
    """

    def __init__(
        self,
        backend: PaillierBackend,
        signers: Sequence[ProofSigner],
        chain_id: int,
        aggregator_address: str,
        first_request_id: int = 1
    ):
        """
        Initialize local oracle.

        Args:
            backend: Paillier backend holding the private key
            signers: Oracle node signers producing the proof
            chain_id: Chain ID for proof domain separation
            aggregator_address: Aggregator address for proof domain separation
            first_request_id: First request id to hand out
        """
        if not backend.can_decrypt:
            raise ValueError("LocalDecryptionOracle needs a backend with the private key")
        self.backend = backend
        self.signers = list(signers)
        self.chain_id = chain_id
        self.aggregator_address = aggregator_address
        self._next_request_id = first_request_id
        self._queue: "OrderedDict[int, DecryptionRequest]" = OrderedDict()

    def request_decryption(
        self,
        handles: Sequence[EncryptedValue],
        callback: DecryptionCallback
    ) -> int:
        request_id = self._next_request_id
        self._next_request_id += 1
        self._queue[request_id] = DecryptionRequest(request_id, tuple(handles), callback)
        logger.info(f"Queued decryption request {request_id} ({len(handles)} handles)")
        return request_id

    def pending_count(self) -> int:
        return len(self._queue)

    def get_request(self, request_id: int) -> Optional[DecryptionRequest]:
        return self._queue.get(request_id)

    def build_response(self, request: DecryptionRequest) -> Tuple[bytes, bytes]:
        """
        Decrypt a request's handles and sign the result.

        Returns:
            Tuple of (cleartexts, proof)
        """
        values = [self.backend.decrypt(h) for h in request.handles]
        cleartexts = encode_cleartexts(values)
        signatures = [
            s.sign_result(self.chain_id, self.aggregator_address, request.request_id, cleartexts)
            for s in self.signers
        ]
        return cleartexts, encode_proof(signatures)

    def fulfill(self, request_id: int) -> DeliveryResult:
        """Answer a single queued request."""
        request = self._queue.pop(request_id, None)
        if request is None:
            return DeliveryResult(request_id, False, error="Unknown request")
        cleartexts, proof = self.build_response(request)
        return _deliver(request_id, request.callback, cleartexts, proof)

    def drop(self, request_id: int) -> bool:
        """Discard a request without answering (simulates a stalled oracle)."""
        return self._queue.pop(request_id, None) is not None

    def process_pending(self) -> List[DeliveryResult]:
        """Answer every queued request in issue order."""
        return [self.fulfill(request_id) for request_id in list(self._queue)]


class RelayerClient(DecryptionOracle):
    """
    Client for an HTTP decryption relayer.

    Handles:
    - Submitting decryption requests (POST /decryption-requests)
    - Polling for fulfilled results (GET /decryption-requests/{id})
    - Delivering fulfilled results to the registered callbacks
    """

    DEFAULT_TIMEOUT = 30  # seconds
    DEFAULT_MAX_RETRIES = 3

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        timeout: int = DEFAULT_TIMEOUT
    ):
        """
        Initialize relayer client.

        Args:
            base_url: Relayer base URL
            api_key: Optional API key sent as a bearer token
            max_retries: Maximum retry attempts for failed requests
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.max_retries = max_retries
        self.timeout = timeout
        self._outstanding: Dict[int, DecryptionCallback] = {}

        self.session = self._create_session()

    def _create_session(self) -> requests.Session:
        """Create requests session with retry configuration."""
        session = requests.Session()

        retry_strategy = Retry(
            total=self.max_retries,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "POST"]
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        return session

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def request_decryption(
        self,
        handles: Sequence[EncryptedValue],
        callback: DecryptionCallback
    ) -> int:
        """
        Submit handles to the relayer.

        Returns:
            Request id assigned by the relayer

        Raises:
            requests.RequestException: On relayer errors
        """
        payload = {
            "handles": [h.to_token() for h in handles],
            "handleIds": [h.handle_id for h in handles],
        }
        try:
            response = self.session.post(
                f"{self.base_url}/decryption-requests",
                json=payload,
                headers=self._headers(),
                timeout=self.timeout
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Decryption request failed: {e}")
            raise

        request_id = int(response.json()["requestId"])
        self._outstanding[request_id] = callback
        logger.info(f"Relayer accepted decryption request {request_id}")
        return request_id

    def track(self, request_id: int, callback: DecryptionCallback) -> None:
        """Resume polling a request issued before a restart."""
        self._outstanding[request_id] = callback

    def outstanding(self) -> List[int]:
        return list(self._outstanding)

    def fetch_result(self, request_id: int) -> Optional[Tuple[bytes, bytes]]:
        """
        Fetch a request's result.

        Returns:
            Tuple of (cleartexts, proof), or None if not yet fulfilled
        """
        try:
            response = self.session.get(
                f"{self.base_url}/decryption-requests/{request_id}",
                headers=self._headers(),
                timeout=self.timeout
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Fetching result for request {request_id} failed: {e}")
            raise

        data = response.json()
        if data.get("status") != "fulfilled":
            return None
        return _hex_to_bytes(data["cleartexts"]), _hex_to_bytes(data["proof"])

    def poll_results(self) -> List[DeliveryResult]:
        """Deliver every fulfilled outstanding request to its callback."""
        results = []
        for request_id in list(self._outstanding):
            try:
                result = self.fetch_result(request_id)
            except requests.RequestException:
                continue
            if result is None:
                continue
            callback = self._outstanding.pop(request_id)
            results.append(_deliver(request_id, callback, *result))
        return results


def _hex_to_bytes(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith('0x') else value)


def create_relayer_from_env() -> RelayerClient:
    """
    Create a RelayerClient from environment variables.

    Required env vars:
    - RELAYER_URL: Relayer base URL

    Optional env vars:
    - RELAYER_API_KEY: Bearer token

    Returns:
        Configured RelayerClient
    """
    base_url = os.getenv("RELAYER_URL")
    if not base_url:
        raise ValueError("RELAYER_URL environment variable required")

    return RelayerClient(
        base_url=base_url,
        api_key=os.getenv("RELAYER_API_KEY") or None
    )
