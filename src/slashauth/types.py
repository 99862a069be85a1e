"""Type definitions for SlashAuth."""

# Protocol constants
PROTOCOL_NAME = b"SlashAuth_IK_25519_ChaChaPoly_SHA256"
PUBLIC_KEY_SIZE = 32
SEED_SIZE = 32
SECRET_KEY_SIZE = 64
SIGNATURE_SIZE = 64
TOKEN_SIZE = 32  # random bytes, hex encoded on the wire
TAG_SIZE = 16
NONCE_SIZE = 12

# Key derivation constants
CHANNEL_KEY_SALT = b"SlashAuth-v1-channel"
CHANNEL_KEY_INFO = b"x25519-static"
SPLIT_INFO = b"SlashAuth-v1-split"

# Canonical form separator between nonce and data
CANONICAL_SEPARATOR = ":"

# URL scheme for challenge links
URL_SCHEME = "slashauth"


# Exception types
class SlashAuthError(Exception):
    """Base exception for SlashAuth protocol errors."""
    pass


class ConfigurationError(SlashAuthError):
    """Missing key pair, callback or other required setting."""
    pass


class InvalidSignatureError(SlashAuthError):
    """Signature does not verify."""

    def __init__(self, message: str = "Invalid signature") -> None:
        super().__init__(message)


class InvalidTokenError(SlashAuthError):
    """Token is absent, already consumed, or does not match."""

    def __init__(self, message: str = "Invalid token") -> None:
        super().__init__(message)


class HandshakeFailedError(SlashAuthError):
    """Secure channel handshake failed."""
    pass


class DecryptionFailedError(SlashAuthError):
    """Channel message could not be decrypted."""
    pass


class StorageError(SlashAuthError):
    """Storage operation failed."""
    pass


class ApplicationError(SlashAuthError):
    """Application callback rejected the request."""
    pass


class UnknownMethodError(SlashAuthError):
    """Request named a method outside the protocol."""

    def __init__(self, method: str) -> None:
        self.method = method
        super().__init__(f"Unknown method: {method}")


class InvalidEnvelopeError(SlashAuthError):
    """Envelope could not be parsed."""
    pass


class RemoteError(SlashAuthError):
    """The server answered with an error envelope."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)
