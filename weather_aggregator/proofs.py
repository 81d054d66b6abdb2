"""
Decryption proof signing and verification.

A proof is the ABI encoding of a bytes[] holding secp256k1 signatures from
the oracle's signer set. Each signature covers:

    messageHash = keccak256(abi.encode(
        chainId,
        aggregatorAddress,
        requestId,
        keccak256(cleartexts)
    ))
    ethSignedHash = keccak256("\\x19Ethereum Signed Message:\\n32" + messageHash)

A result is authentic when at least `threshold` distinct authorized signers
are recovered from the proof.
"""

import logging
from typing import Iterable, List, Set

from eth_abi import decode, encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_hash.auto import keccak
from web3 import Web3

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def build_result_hash(
    chain_id: int,
    aggregator_address: str,
    request_id: int,
    cleartexts: bytes
) -> bytes:
    """Message hash that oracle signers attest to."""
    return keccak(encode(
        ['uint256', 'address', 'uint256', 'bytes32'],
        [
            chain_id,
            Web3.to_checksum_address(aggregator_address),
            request_id,
            keccak(cleartexts),
        ]
    ))


def encode_proof(signatures: Iterable[bytes]) -> bytes:
    """Pack signatures into a proof blob."""
    return encode(['bytes[]'], [[bytes(s) for s in signatures]])


def decode_proof(proof: bytes) -> List[bytes]:
    """Unpack a proof blob into its signatures."""
    (signatures,) = decode(['bytes[]'], proof)
    return list(signatures)


class ProofSigner:
    """Signs decryption results on behalf of one oracle node."""

    def __init__(self, private_key: str):
        """
        Initialize signer with private key.

        Args:
            private_key: Hex-encoded private key (with or without 0x prefix)
        """
        if not private_key.startswith('0x'):
            private_key = '0x' + private_key

        self.account = Account.from_key(private_key)
        self.address = self.account.address

    def sign_result(
        self,
        chain_id: int,
        aggregator_address: str,
        request_id: int,
        cleartexts: bytes
    ) -> bytes:
        """
        Sign a decryption result.

        Returns:
            65-byte signature
        """
        message_hash = build_result_hash(chain_id, aggregator_address, request_id, cleartexts)
        signed = self.account.sign_message(encode_defunct(primitive=message_hash))
        return bytes(signed.signature)


class ProofVerifier:
    """Checks that cleartexts were attested by the oracle's signer set."""

    def __init__(
        self,
        signers: Iterable[str],
        chain_id: int,
        aggregator_address: str,
        threshold: int = 1
    ):
        """
        Initialize verifier.

        Args:
            signers: Authorized oracle signer addresses
            chain_id: Chain ID for domain separation
            aggregator_address: Address of this aggregator for domain separation
            threshold: Distinct valid signatures required
        """
        self.signers: Set[str] = {Web3.to_checksum_address(s) for s in signers}
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        if threshold > len(self.signers):
            raise ValueError(
                f"threshold {threshold} exceeds signer count {len(self.signers)}"
            )
        self.chain_id = chain_id
        self.aggregator_address = Web3.to_checksum_address(aggregator_address)
        self.threshold = threshold

    def recover_signers(self, request_id: int, cleartexts: bytes, proof: bytes) -> Set[str]:
        """Authorized signers whose signatures over the result are valid."""
        message_hash = build_result_hash(
            self.chain_id, self.aggregator_address, request_id, cleartexts
        )
        signable = encode_defunct(primitive=message_hash)

        recovered = set()
        for signature in decode_proof(proof):
            try:
                address = Account.recover_message(signable, signature=signature)
            except Exception as e:
                logger.warning(f"Unrecoverable signature in proof for request {request_id}: {e}")
                continue
            if address in self.signers:
                recovered.add(address)
        return recovered

    def verify(self, request_id: int, cleartexts: bytes, proof: bytes) -> bool:
        """
        Verify a decryption result.

        Args:
            request_id: Oracle request identifier
            cleartexts: ABI-encoded decrypted values
            proof: Encoded signatures

        Returns:
            True if at least `threshold` authorized signers attest the result
        """
        try:
            recovered = self.recover_signers(request_id, bytes(cleartexts), bytes(proof))
        except Exception as e:
            logger.warning(f"Malformed proof for request {request_id}: {e}")
            return False
        return len(recovered) >= self.threshold
