"""Identity key pairs and channel key derivation for SlashAuth."""

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .types import (
    CHANNEL_KEY_SALT,
    CHANNEL_KEY_INFO,
    PUBLIC_KEY_SIZE,
    SECRET_KEY_SIZE,
    SEED_SIZE,
    ConfigurationError,
)


@dataclass
class KeyPair:
    """
    A long-lived SlashAuth identity.

    The Ed25519 public key is the party's durable identifier; the secret half
    never leaves the process. The X25519 static key used by the secure channel
    is derived from the same seed, so one 32-byte seed is enough for both.

    Attributes:
        signing_key: The Ed25519 private key.
        seed: The 32-byte seed the keys were derived from.
    """

    signing_key: Ed25519PrivateKey
    seed: bytes = field(repr=False)

    @classmethod
    def generate(cls) -> "KeyPair":
        """Create a fresh random identity."""
        return cls.from_seed(os.urandom(SEED_SIZE))

    @classmethod
    def from_seed(cls, seed: bytes) -> "KeyPair":
        """
        Create an identity from a 32-byte seed.

        Raises:
            ConfigurationError: If seed is not 32 bytes.
        """
        if len(seed) != SEED_SIZE:
            raise ConfigurationError(f"Seed must be {SEED_SIZE} bytes, got {len(seed)}")

        return cls(signing_key=Ed25519PrivateKey.from_private_bytes(seed), seed=seed)

    @classmethod
    def from_secret_key(cls, secret_key: bytes) -> "KeyPair":
        """
        Create an identity from a 64-byte secret key (seed followed by public key).

        Raises:
            ConfigurationError: If the secret key is malformed or inconsistent.
        """
        if len(secret_key) != SECRET_KEY_SIZE:
            raise ConfigurationError(
                f"Secret key must be {SECRET_KEY_SIZE} bytes, got {len(secret_key)}"
            )

        key_pair = cls.from_seed(secret_key[:SEED_SIZE])
        if key_pair.public_key != secret_key[SEED_SIZE:]:
            raise ConfigurationError("Secret key does not match its embedded public key")
        return key_pair

    @property
    def public_key(self) -> bytes:
        """The Ed25519 public key (32 bytes)."""
        return self.signing_key.public_key().public_bytes_raw()

    @property
    def public_key_hex(self) -> str:
        """The Ed25519 public key as the hex string used on the wire."""
        return self.public_key.hex()

    @property
    def secret_key(self) -> bytes:
        """The 64-byte secret key (seed || public key)."""
        return self.seed + self.public_key

    def channel_keys(self) -> Tuple[X25519PrivateKey, X25519PublicKey]:
        """The static X25519 key pair for the secure channel."""
        return derive_channel_keys_from_seed(self.seed)

    def __repr__(self) -> str:
        return f"KeyPair({self.public_key_hex[:16]}...)"


def derive_channel_keys_from_seed(seed: bytes) -> Tuple[X25519PrivateKey, X25519PublicKey]:
    """
    Derive the static X25519 channel key pair from a 32-byte seed using HKDF-SHA256.

    Args:
        seed: 32-byte identity seed

    Returns:
        Tuple of (private_key, public_key)
    """
    if len(seed) != SEED_SIZE:
        raise ValueError(f"Seed must be {SEED_SIZE} bytes, got {len(seed)}")

    hkdf = HKDF(
        algorithm=SHA256(),
        length=32,
        salt=CHANNEL_KEY_SALT,
        info=CHANNEL_KEY_INFO,
    )
    derived_key = hkdf.derive(seed)

    private_key = X25519PrivateKey.from_private_bytes(derived_key)
    return private_key, private_key.public_key()


def generate_ephemeral_keypair() -> Tuple[X25519PrivateKey, X25519PublicKey]:
    """
    Generate a random ephemeral X25519 key pair for a handshake.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = X25519PrivateKey.generate()
    return private_key, private_key.public_key()


def x25519_ecdh(private_key: X25519PrivateKey, public_key: X25519PublicKey) -> bytes:
    """Perform X25519 ECDH key exchange, returning the 32-byte shared secret."""
    return private_key.exchange(public_key)


def public_key_to_bytes(public_key: X25519PublicKey) -> bytes:
    """Convert X25519 public key to raw bytes."""
    return public_key.public_bytes(Encoding.Raw, PublicFormat.Raw)


def public_key_from_bytes(data: bytes) -> X25519PublicKey:
    """Create X25519 public key from raw bytes."""
    return X25519PublicKey.from_public_bytes(data)


def signing_public_key_from_hex(public_key_hex: str) -> Optional[Ed25519PublicKey]:
    """
    Parse a hex-encoded Ed25519 public key.

    Returns:
        The public key, or None if the value is not a valid 32-byte key.
    """
    try:
        raw = bytes.fromhex(public_key_hex)
    except (TypeError, ValueError):
        return None

    if len(raw) != PUBLIC_KEY_SIZE:
        return None

    try:
        return Ed25519PublicKey.from_public_bytes(raw)
    except ValueError:
        return None
