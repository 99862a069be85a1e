"""
SlashAuth - Challenge/response authentication over an untrusted channel

Python implementation of the SlashAuth protocol using Ed25519 signatures and an
X25519 + ChaCha20-Poly1305 secure channel.
"""

from .keys import KeyPair, derive_channel_keys_from_seed, generate_ephemeral_keypair
from .signature import (
    canonicalize,
    sign,
    verify,
    verify_signature,
    create_nonce,
    fingerprint,
    CryptoProvider,
    DefaultCryptoProvider,
)
from .storage import (
    KeyValueStorage,
    InMemoryStorage,
    TokenStore,
)
from .channel import (
    SessionState,
    HandshakeSession,
    initiate,
    respond,
    complete_initiator,
    encrypt,
    decrypt,
)
from .envelope import (
    Method,
    RequestEnvelope,
    ResponseEnvelope,
    canonical_json,
    encode_request,
    decode_request,
    encode_response,
    decode_response,
)
from .transport import (
    Transport,
    MemoryTransport,
    StreamTransport,
    TransportError,
    TransportClosedError,
    open_connection,
)
from .url import ChallengeURL, format_challenge_url, parse_challenge_url
from .server import (
    ServerConfig,
    AuthServer,
    ServerConnection,
    ConnectionState,
    ResponderIdentity,
    ResponderSlot,
)
from .client import (
    ClientConfig,
    AuthClient,
    ClientState,
)
from .types import (
    SIGNATURE_SIZE,
    PUBLIC_KEY_SIZE,
    SlashAuthError,
    ConfigurationError,
    InvalidSignatureError,
    InvalidTokenError,
    HandshakeFailedError,
    DecryptionFailedError,
    StorageError,
    ApplicationError,
    UnknownMethodError,
    InvalidEnvelopeError,
    RemoteError,
)

__version__ = "0.1.0"

__all__ = [
    # Keys
    "KeyPair",
    "derive_channel_keys_from_seed",
    "generate_ephemeral_keypair",
    # Signature
    "canonicalize",
    "sign",
    "verify",
    "verify_signature",
    "create_nonce",
    "fingerprint",
    "CryptoProvider",
    "DefaultCryptoProvider",
    # Storage
    "KeyValueStorage",
    "InMemoryStorage",
    "TokenStore",
    # Channel
    "SessionState",
    "HandshakeSession",
    "initiate",
    "respond",
    "complete_initiator",
    "encrypt",
    "decrypt",
    # Envelope
    "Method",
    "RequestEnvelope",
    "ResponseEnvelope",
    "canonical_json",
    "encode_request",
    "decode_request",
    "encode_response",
    "decode_response",
    # Transport
    "Transport",
    "MemoryTransport",
    "StreamTransport",
    "TransportError",
    "TransportClosedError",
    "open_connection",
    # URL
    "ChallengeURL",
    "format_challenge_url",
    "parse_challenge_url",
    # Server
    "ServerConfig",
    "AuthServer",
    "ServerConnection",
    "ConnectionState",
    "ResponderIdentity",
    "ResponderSlot",
    # Client
    "ClientConfig",
    "AuthClient",
    "ClientState",
    # Errors
    "SlashAuthError",
    "ConfigurationError",
    "InvalidSignatureError",
    "InvalidTokenError",
    "HandshakeFailedError",
    "DecryptionFailedError",
    "StorageError",
    "ApplicationError",
    "UnknownMethodError",
    "InvalidEnvelopeError",
    "RemoteError",
    # Constants
    "SIGNATURE_SIZE",
    "PUBLIC_KEY_SIZE",
]
