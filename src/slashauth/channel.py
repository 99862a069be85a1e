"""
Secure channel for SlashAuth connections.

A one-round-trip handshake in the style of Noise IK: the initiator knows the
responder's static X25519 key in advance (from the challenge URL) and may
present its own static key, encrypted, in the first message. Both sides keep a
running SHA-256 transcript hash and an HKDF chaining key; every DH result is
mixed into the chaining key.

Handshake messages:
    [0..31]   initiator ephemeral public key
    [32..]    AEAD(k, initiator static public key or empty)   -> message 1

    [0..31]   responder ephemeral public key
    [32..47]  AEAD(k, empty) tag, the responder's handshake check -> message 2

After the handshake each direction has its own ChaCha20-Poly1305 key and a
64-bit message counter used as the nonce, so frames must be decrypted in the
order they were sent.
"""

import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from .keys import (
    generate_ephemeral_keypair,
    public_key_from_bytes,
    public_key_to_bytes,
    x25519_ecdh,
)
from .signature import fingerprint
from .types import (
    NONCE_SIZE,
    PROTOCOL_NAME,
    PUBLIC_KEY_SIZE,
    SPLIT_INFO,
    TAG_SIZE,
    DecryptionFailedError,
    HandshakeFailedError,
)

logger = logging.getLogger(__name__)

# Counter values are 64-bit
MAX_COUNTER = 2**64 - 1


class SessionState(Enum):
    """Lifecycle of a handshake session."""
    INIT = "init"
    HANDSHAKING = "handshaking"
    COMPLETE = "complete"


@dataclass
class HandshakeSession:
    """
    State of one secure channel.

    A session belongs to exactly one logical connection and is discarded with
    it. Once COMPLETE, tx_key and rx_key never change.

    Attributes:
        initiator: Whether this side started the handshake.
        state: Current lifecycle state.
        local_static: Our static X25519 key, if we present one.
        local_ephemeral: Our ephemeral key, held only while handshaking.
        remote_static_public_key: The peer's static key (32 bytes), if known.
        session_id: Random identifier used for logging and bookkeeping.
    """

    initiator: bool
    state: SessionState = SessionState.INIT
    local_static: Optional[X25519PrivateKey] = field(default=None, repr=False)
    local_ephemeral: Optional[X25519PrivateKey] = field(default=None, repr=False)
    remote_static_public_key: Optional[bytes] = None
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    chaining_key: bytes = field(default=b"", repr=False)
    handshake_hash: bytes = field(default=b"", repr=False)
    tx_counter: int = 0
    rx_counter: int = 0
    _tx_key: Optional[bytes] = field(default=None, repr=False)
    _rx_key: Optional[bytes] = field(default=None, repr=False)

    @property
    def complete(self) -> bool:
        """Whether the handshake has finished."""
        return self.state == SessionState.COMPLETE

    @property
    def tx_key(self) -> Optional[bytes]:
        return self._tx_key

    @property
    def rx_key(self) -> Optional[bytes]:
        return self._rx_key

    def _finish(self, tx_key: bytes, rx_key: bytes) -> None:
        if self.state == SessionState.COMPLETE:
            raise HandshakeFailedError("Session keys are already established")
        self._tx_key = tx_key
        self._rx_key = rx_key
        self.local_ephemeral = None
        self.chaining_key = b""
        self.state = SessionState.COMPLETE

    def encrypt(self, plaintext: bytes) -> bytes:
        """Encrypt the next outgoing frame."""
        return encrypt(self, plaintext)

    def decrypt(self, ciphertext: bytes) -> bytes:
        """Decrypt the next incoming frame."""
        return decrypt(self, ciphertext)


# ============================================================================
# Symmetric state helpers
# ============================================================================


def _initial_hash(responder_static: bytes) -> Tuple[bytes, bytes]:
    """Return the initial (chaining_key, handshake_hash) bound to the responder key."""
    h = hashlib.sha256(PROTOCOL_NAME).digest()
    return h, _mix_hash(h, responder_static)


def _mix_hash(h: bytes, data: bytes) -> bytes:
    return hashlib.sha256(h + data).digest()


def _mix_key(chaining_key: bytes, input_key_material: bytes) -> Tuple[bytes, bytes]:
    """Mix a DH result into the chaining key, returning (chaining_key, cipher_key)."""
    hkdf = HKDF(algorithm=SHA256(), length=64, salt=chaining_key, info=PROTOCOL_NAME)
    output = hkdf.derive(input_key_material)
    return output[:32], output[32:]


def _split(chaining_key: bytes, handshake_hash: bytes) -> Tuple[bytes, bytes]:
    """Derive the (initiator-to-responder, responder-to-initiator) keys."""
    hkdf = HKDF(algorithm=SHA256(), length=64, salt=chaining_key, info=SPLIT_INFO)
    output = hkdf.derive(handshake_hash)
    return output[:32], output[32:]


def _counter_nonce(counter: int) -> bytes:
    return counter.to_bytes(8, byteorder="big").rjust(NONCE_SIZE, b"\x00")


def _dh(private_key: X25519PrivateKey, public_bytes: bytes) -> bytes:
    try:
        return x25519_ecdh(private_key, public_key_from_bytes(public_bytes))
    except ValueError as e:
        raise HandshakeFailedError(f"Key agreement failed: {e}") from e


# ============================================================================
# Handshake
# ============================================================================


def initiate(
    local_static: Optional[X25519PrivateKey],
    remote_static_public_key: bytes,
) -> Tuple[bytes, HandshakeSession]:
    """
    Start a handshake with a responder whose static key is known.

    Args:
        local_static: Our static key, or None for an anonymous initiator
        remote_static_public_key: The responder's static X25519 key (32 bytes)

    Returns:
        Tuple of (first handshake message, session)

    Raises:
        HandshakeFailedError: If the responder key is malformed
    """
    if len(remote_static_public_key) != PUBLIC_KEY_SIZE:
        raise HandshakeFailedError(
            f"Responder key must be {PUBLIC_KEY_SIZE} bytes, got {len(remote_static_public_key)}"
        )

    session = HandshakeSession(
        initiator=True,
        local_static=local_static,
        remote_static_public_key=remote_static_public_key,
    )
    ck, h = _initial_hash(remote_static_public_key)

    ephemeral_private, ephemeral_public = generate_ephemeral_keypair()
    ephemeral_pub_bytes = public_key_to_bytes(ephemeral_public)
    h = _mix_hash(h, ephemeral_pub_bytes)

    ck, k = _mix_key(ck, _dh(ephemeral_private, remote_static_public_key))

    static_payload = b""
    if local_static is not None:
        static_payload = public_key_to_bytes(local_static.public_key())

    encrypted_static = ChaCha20Poly1305(k).encrypt(_counter_nonce(0), static_payload, h)
    h = _mix_hash(h, encrypted_static)

    if local_static is not None:
        ck, _ = _mix_key(ck, _dh(local_static, remote_static_public_key))

    session.local_ephemeral = ephemeral_private
    session.chaining_key = ck
    session.handshake_hash = h
    session.state = SessionState.HANDSHAKING

    logger.debug("Session %s: handshake initiated", session.session_id)
    return ephemeral_pub_bytes + encrypted_static, session


def respond(
    local_static: X25519PrivateKey,
    first_message: bytes,
) -> Tuple[bytes, HandshakeSession]:
    """
    Process an initiator's first message and produce the reply.

    Args:
        local_static: The responder's static key (the one the initiator targeted)
        first_message: The initiator's handshake message

    Returns:
        Tuple of (reply message, completed session)

    Raises:
        HandshakeFailedError: If the message is malformed or was not meant for this key
    """
    if len(first_message) < PUBLIC_KEY_SIZE + TAG_SIZE:
        raise HandshakeFailedError(f"Handshake message too short: {len(first_message)} bytes")

    session = HandshakeSession(initiator=False, local_static=local_static)
    session.state = SessionState.HANDSHAKING

    ck, h = _initial_hash(public_key_to_bytes(local_static.public_key()))

    remote_ephemeral = first_message[:PUBLIC_KEY_SIZE]
    h = _mix_hash(h, remote_ephemeral)

    ck, k = _mix_key(ck, _dh(local_static, remote_ephemeral))

    encrypted_static = first_message[PUBLIC_KEY_SIZE:]
    try:
        remote_static = ChaCha20Poly1305(k).decrypt(_counter_nonce(0), encrypted_static, h)
    except InvalidTag as e:
        raise HandshakeFailedError("Handshake message failed authentication") from e
    h = _mix_hash(h, encrypted_static)

    if remote_static:
        if len(remote_static) != PUBLIC_KEY_SIZE:
            raise HandshakeFailedError("Initiator static key has the wrong length")
        ck, _ = _mix_key(ck, _dh(local_static, remote_static))
        session.remote_static_public_key = remote_static

    ephemeral_private, ephemeral_public = generate_ephemeral_keypair()
    ephemeral_pub_bytes = public_key_to_bytes(ephemeral_public)
    h = _mix_hash(h, ephemeral_pub_bytes)

    ck, k = _mix_key(ck, _dh(ephemeral_private, remote_ephemeral))
    if remote_static:
        ck, k = _mix_key(ck, _dh(ephemeral_private, remote_static))

    check = ChaCha20Poly1305(k).encrypt(_counter_nonce(0), b"", h)
    h = _mix_hash(h, check)

    initiator_to_responder, responder_to_initiator = _split(ck, h)
    session.handshake_hash = h
    session._finish(tx_key=responder_to_initiator, rx_key=initiator_to_responder)

    if remote_static:
        logger.debug(
            "Session %s: handshake answered for %s", session.session_id, fingerprint(remote_static)
        )
    else:
        logger.debug("Session %s: handshake answered for anonymous initiator", session.session_id)

    return ephemeral_pub_bytes + check, session


def complete_initiator(reply_message: bytes, session: HandshakeSession) -> HandshakeSession:
    """
    Finish the initiator side of the handshake.

    Args:
        reply_message: The responder's reply
        session: The session returned by initiate()

    Returns:
        The completed session

    Raises:
        HandshakeFailedError: If the reply's check does not validate
    """
    if not session.initiator or session.state != SessionState.HANDSHAKING:
        raise HandshakeFailedError(f"Cannot complete handshake in state {session.state.value}")

    if len(reply_message) != PUBLIC_KEY_SIZE + TAG_SIZE:
        raise HandshakeFailedError(f"Handshake reply has wrong size: {len(reply_message)} bytes")

    ck = session.chaining_key
    h = session.handshake_hash

    remote_ephemeral = reply_message[:PUBLIC_KEY_SIZE]
    h = _mix_hash(h, remote_ephemeral)

    ck, k = _mix_key(ck, _dh(session.local_ephemeral, remote_ephemeral))
    if session.local_static is not None:
        ck, k = _mix_key(ck, _dh(session.local_static, remote_ephemeral))

    check = reply_message[PUBLIC_KEY_SIZE:]
    try:
        ChaCha20Poly1305(k).decrypt(_counter_nonce(0), check, h)
    except InvalidTag as e:
        raise HandshakeFailedError("Responder failed the handshake check") from e
    h = _mix_hash(h, check)

    initiator_to_responder, responder_to_initiator = _split(ck, h)
    session.handshake_hash = h
    session._finish(tx_key=initiator_to_responder, rx_key=responder_to_initiator)

    logger.debug("Session %s: handshake complete", session.session_id)
    return session


# ============================================================================
# Transport encryption
# ============================================================================


def encrypt(session: HandshakeSession, plaintext: bytes) -> bytes:
    """
    Encrypt an outgoing message and advance the send counter.

    Raises:
        HandshakeFailedError: If the handshake has not completed
    """
    if not session.complete:
        raise HandshakeFailedError("Handshake not complete")

    if session.tx_counter >= MAX_COUNTER:
        raise DecryptionFailedError("Send counter exhausted")

    ciphertext = ChaCha20Poly1305(session.tx_key).encrypt(
        _counter_nonce(session.tx_counter), plaintext, None
    )
    session.tx_counter += 1
    return ciphertext


def decrypt(session: HandshakeSession, ciphertext: bytes) -> bytes:
    """
    Decrypt the next incoming message and advance the receive counter.

    Raises:
        HandshakeFailedError: If the handshake has not completed
        DecryptionFailedError: If the frame is tampered, replayed or out of order
    """
    if not session.complete:
        raise HandshakeFailedError("Handshake not complete")

    try:
        plaintext = ChaCha20Poly1305(session.rx_key).decrypt(
            _counter_nonce(session.rx_counter), ciphertext, None
        )
    except InvalidTag as e:
        raise DecryptionFailedError(
            f"Failed to decrypt frame {session.rx_counter} on session {session.session_id}"
        ) from e

    session.rx_counter += 1
    return plaintext
