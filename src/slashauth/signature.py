"""
Signing and verification for SlashAuth messages.

Every signature covers the canonical form ``nonce + ":" + data`` encoded as
UTF-8. Signer and verifier must agree on it byte for byte, so all callers go
through ``canonicalize`` rather than building the bytes themselves.
"""

import hashlib
import os
from abc import ABC, abstractmethod
from typing import Union

from cryptography.exceptions import InvalidSignature

from .keys import KeyPair, signing_public_key_from_hex
from .types import (
    CANONICAL_SEPARATOR,
    SIGNATURE_SIZE,
    TOKEN_SIZE,
    InvalidSignatureError,
)


def canonicalize(nonce: str, data: str) -> bytes:
    """
    Build the canonical signed content for a (nonce, data) pair.

    Args:
        nonce: The challenge token or request nonce
        data: The signed value (a public key hex, or compact JSON)

    Returns:
        UTF-8 bytes of ``nonce:data``
    """
    return f"{nonce}{CANONICAL_SEPARATOR}{data}".encode("utf-8")


def sign(nonce: str, data: str, key_pair: KeyPair) -> str:
    """
    Sign a (nonce, data) pair with an identity key.

    Args:
        nonce: The challenge token or request nonce
        data: The value being signed
        key_pair: The signer's identity

    Returns:
        The Ed25519 signature as hex (128 chars)
    """
    return key_pair.signing_key.sign(canonicalize(nonce, data)).hex()


def verify(signature: str, nonce: str, data: str, public_key: str) -> bool:
    """
    Verify a hex signature over a (nonce, data) pair.

    Malformed signatures or keys are treated as a failed verification.

    Returns:
        True if the signature is valid, False otherwise
    """
    verifying_key = signing_public_key_from_hex(public_key)
    if verifying_key is None:
        return False

    try:
        raw_signature = bytes.fromhex(signature)
    except (TypeError, ValueError):
        return False

    if len(raw_signature) != SIGNATURE_SIZE:
        return False

    try:
        verifying_key.verify(raw_signature, canonicalize(nonce, data))
        return True
    except InvalidSignature:
        return False


def verify_signature(signature: str, nonce: str, data: str, public_key: str) -> None:
    """
    Verify a signature, aborting the flow when it does not check out.

    Raises:
        InvalidSignatureError: If the signature is missing or invalid
    """
    if not signature or not verify(signature, nonce, data, public_key):
        raise InvalidSignatureError()


def create_nonce() -> str:
    """Generate a fresh random nonce (hex, 64 chars)."""
    return os.urandom(TOKEN_SIZE).hex()


def fingerprint(public_key: Union[bytes, str]) -> str:
    """
    Generate a human-readable fingerprint for a public key.

    Used wherever a key needs to appear in logs.

    Args:
        public_key: Raw key bytes or the hex encoding of them

    Returns:
        A fingerprint string like "A7B3C9D1 E5F28A4B"
    """
    if isinstance(public_key, str):
        public_key = public_key.encode("utf-8")

    hash_bytes = hashlib.sha256(public_key).digest()

    hex_bytes = [f"{b:02X}" for b in hash_bytes[:8]]
    groups = [hex_bytes[i] + hex_bytes[i + 1] + hex_bytes[i + 2] + hex_bytes[i + 3] for i in range(0, 8, 4)]

    return " ".join(groups)


class CryptoProvider(ABC):
    """Signing capabilities used by the client and server."""

    @abstractmethod
    def sign(self, nonce: str, data: str, key_pair: KeyPair) -> str:
        """Sign a (nonce, data) pair, returning a hex signature."""
        pass

    @abstractmethod
    def verify(self, signature: str, nonce: str, data: str, public_key: str) -> bool:
        """Check a hex signature against a hex public key."""
        pass

    @abstractmethod
    def create_nonce(self) -> str:
        """Produce a fresh single-use random value."""
        pass

    def verify_signature(self, signature: str, nonce: str, data: str, public_key: str) -> None:
        """Like verify, but raises InvalidSignatureError on failure."""
        if not signature or not self.verify(signature, nonce, data, public_key):
            raise InvalidSignatureError()


class DefaultCryptoProvider(CryptoProvider):
    """Ed25519 signatures over the canonical form, random hex nonces."""

    def sign(self, nonce: str, data: str, key_pair: KeyPair) -> str:
        return sign(nonce, data, key_pair)

    def verify(self, signature: str, nonce: str, data: str, public_key: str) -> bool:
        return verify(signature, nonce, data, public_key)

    def create_nonce(self) -> str:
        return create_nonce()
