"""
Encrypted value handles and the homomorphic encryption backend.

The aggregator treats EncryptedValue as opaque: it only ever passes handles
back into the backend (add, multiply by a constant) or hands them to the
decryption oracle. PaillierBackend is an additively homomorphic backend on
top of python-paillier; only the holder of the private key (the oracle) can
decrypt.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from eth_hash.auto import keccak
from phe import paillier

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EncryptedValue:
    """Opaque reference to a value that exists only in encrypted form."""
    ciphertext: int

    @property
    def handle_id(self) -> str:
        """Stable identifier of the ciphertext (keccak256, 0x-prefixed)."""
        size = max(1, (self.ciphertext.bit_length() + 7) // 8)
        return '0x' + keccak(self.ciphertext.to_bytes(size, 'big')).hex()

    def to_token(self) -> str:
        """Serialized form sent to the decryption oracle."""
        return hex(self.ciphertext)

    @classmethod
    def from_token(cls, token: str) -> "EncryptedValue":
        return cls(int(token, 16))

    def __repr__(self) -> str:
        return f"EncryptedValue({self.handle_id[:18]}...)"


class EncryptionBackend:
    """Interface of the homomorphic encryption library."""

    def encrypt(self, plaintext: int) -> EncryptedValue:
        raise NotImplementedError

    def add(self, a: EncryptedValue, b: EncryptedValue) -> EncryptedValue:
        raise NotImplementedError

    def multiply_constant(self, a: EncryptedValue, constant: int) -> EncryptedValue:
        raise NotImplementedError


class PaillierBackend(EncryptionBackend):
    """
    Paillier encryption over non-negative integers.

    E(a) + E(b) = E(a + b) and E(a) * k = E(k * a). Handles carry the raw
    ciphertext with exponent 0, so only integers are supported.
    """

    DEFAULT_KEY_BITS = 2048

    def __init__(
        self,
        public_key: paillier.PaillierPublicKey,
        private_key: Optional[paillier.PaillierPrivateKey] = None
    ):
        """
        Initialize backend.

        Args:
            public_key: Paillier public key
            private_key: Only supplied on the decrypting (oracle) side
        """
        self.public_key = public_key
        self._private_key = private_key

    @classmethod
    def generate(cls, bits: int = DEFAULT_KEY_BITS) -> "PaillierBackend":
        """Create a backend with a fresh key pair."""
        public_key, private_key = paillier.generate_paillier_keypair(n_length=bits)
        logger.info(f"Generated {bits}-bit Paillier key pair")
        return cls(public_key, private_key)

    def public_only(self) -> "PaillierBackend":
        """Backend sharing the public key but unable to decrypt."""
        return PaillierBackend(self.public_key)

    @property
    def can_decrypt(self) -> bool:
        return self._private_key is not None

    def _wrap(self, number: paillier.EncryptedNumber) -> EncryptedValue:
        return EncryptedValue(number.ciphertext(be_secure=False))

    def _unwrap(self, value: EncryptedValue) -> paillier.EncryptedNumber:
        return paillier.EncryptedNumber(self.public_key, value.ciphertext, 0)

    def encrypt(self, plaintext: int) -> EncryptedValue:
        if not 0 <= plaintext <= self.public_key.max_int:
            raise ValueError("Plaintext out of range")
        return self._wrap(self.public_key.encrypt(plaintext))

    def add(self, a: EncryptedValue, b: EncryptedValue) -> EncryptedValue:
        return self._wrap(self._unwrap(a) + self._unwrap(b))

    def multiply_constant(self, a: EncryptedValue, constant: int) -> EncryptedValue:
        if constant < 0:
            raise ValueError("Constant must be non-negative")
        return self._wrap(self._unwrap(a) * constant)

    def decrypt(self, value: EncryptedValue) -> int:
        """Decrypt a handle. Only available with the private key."""
        if self._private_key is None:
            raise PermissionError("Backend has no private key")
        return self._private_key.decrypt(self._unwrap(value))
