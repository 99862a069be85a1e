"""
SlashAuth client.

The AuthClient proves possession of its identity key to a SlashAuth server
and returns the server-signed results of the application's callbacks.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from .channel import HandshakeSession, complete_initiator, initiate
from .envelope import (
    Method,
    RequestEnvelope,
    canonical_json,
    decode_response,
    encode_request,
)
from .keys import KeyPair
from .signature import CryptoProvider, DefaultCryptoProvider, fingerprint
from .transport import Transport, TransportError, open_connection
from .types import (
    PUBLIC_KEY_SIZE,
    ConfigurationError,
    DecryptionFailedError,
    HandshakeFailedError,
    InvalidEnvelopeError,
    InvalidSignatureError,
    InvalidTokenError,
    RemoteError,
)
from .url import ChallengeURL, parse_challenge_url

logger = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Transport]]


class ClientState(Enum):
    """Lifecycle of a client connection."""
    IDLE = "idle"
    HANDSHAKING = "handshaking"
    CHANNEL_READY = "channel_ready"
    AWAITING_RESPONSE = "awaiting_response"
    CLOSED = "closed"


@dataclass
class ClientConfig:
    """Configuration for an AuthClient."""

    key_pair: Optional[KeyPair] = None
    """Client identity; signs every request."""

    server_public_key: Optional[bytes] = None
    """Server signing key (32 bytes). Falls back to the challenge URL's id."""

    server_channel_key: Optional[bytes] = None
    """Server responder key (32 bytes). Falls back to the challenge URL's key."""

    encrypted: bool = True
    """Run the secure channel handshake before sending requests."""

    present_static_key: bool = True
    """Authenticate this client inside the handshake (mutual authentication)."""

    timeout: Optional[float] = 30.0
    """Seconds to wait for connections and responses."""

    def validate(self) -> None:
        """
        Check the configuration.

        Raises:
            ConfigurationError: If a required setting is missing or invalid
        """
        if self.key_pair is None:
            raise ConfigurationError("No key pair provided")
        if not isinstance(self.key_pair, KeyPair):
            raise ConfigurationError("key_pair must be a KeyPair")
        for name in ("server_public_key", "server_channel_key"):
            value = getattr(self, name)
            if value is not None and len(value) != PUBLIC_KEY_SIZE:
                raise ConfigurationError(f"{name} must be {PUBLIC_KEY_SIZE} bytes, got {len(value)}")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigurationError("timeout must be positive")


class AuthClient:
    """
    Client half of the SlashAuth protocol.

    One AuthClient holds at most one logical connection. The handshake runs
    once per connection and every later operation reuses the channel.

    Example usage:
        ```python
        config = ClientConfig(key_pair=KeyPair.generate())

        async with AuthClient(config) as client:
            result = await client.authz(challenge_url)
            link = await client.magiclink(challenge_url)
        ```
    """

    def __init__(
        self,
        config: ClientConfig,
        connect: Optional[Connector] = None,
        crypto: Optional[CryptoProvider] = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            config: Client configuration.
            connect: Opens a transport to a "host:port" address (default: TCP).
            crypto: Signing capabilities (default: Ed25519).

        Raises:
            ConfigurationError: If the key pair is missing or keys are malformed.
        """
        if config is None:
            raise ConfigurationError("No options provided")
        config.validate()

        self.config = config
        self.key_pair: KeyPair = config.key_pair
        self.crypto = crypto or DefaultCryptoProvider()
        self._connect = connect or self._open_tcp
        self.server_public_key = config.server_public_key
        self._rotated_channel_key: Optional[bytes] = None

        self.state = ClientState.IDLE
        self.transport: Optional[Transport] = None
        self.session: Optional[HandshakeSession] = None
        self.address: Optional[str] = None

    @property
    def public_key(self) -> str:
        """The client's public key as sent on the wire (hex)."""
        return self.key_pair.public_key_hex

    @property
    def connected(self) -> bool:
        return self.transport is not None

    @property
    def rotated_channel_key(self) -> Optional[bytes]:
        """
        The last responder key the server announced through ``newResponderKey``.

        Used only when neither the configuration nor the challenge URL
        supplies a responder key.
        """
        return self._rotated_channel_key

    async def _open_tcp(self, address: str) -> Transport:
        return await open_connection(address, timeout=self.config.timeout)

    # MARK: - Connection

    async def __aenter__(self) -> "AuthClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def connect(self, address: str, server_channel_key: Optional[bytes] = None) -> None:
        """
        Open the logical connection, running the handshake in encrypted mode.

        Args:
            address: "host:port" of the server.
            server_channel_key: Responder key to use instead of the configured
                or last rotated one.

        Raises:
            ConfigurationError: If encrypted mode has no responder key.
            HandshakeFailedError: If the handshake does not validate.
            TransportError: If the connection fails.
        """
        if self.transport is not None:
            if address == self.address:
                return
            await self.close()

        channel_key = server_channel_key or self.config.server_channel_key or self._rotated_channel_key
        if self.config.encrypted and channel_key is None:
            raise ConfigurationError("No server public key provided")

        self.transport = await self._connect(address)
        self.address = address
        self.state = ClientState.IDLE

        if self.config.encrypted:
            try:
                await self._handshake(channel_key)
            except (HandshakeFailedError, TransportError):
                await self.close()
                raise

        logger.debug("Connected to %s (encrypted=%s)", address, self.config.encrypted)

    async def close(self) -> None:
        """Close the logical connection; the next operation reconnects."""
        transport = self.transport
        self.transport = None
        self.session = None
        self.address = None
        self.state = ClientState.CLOSED
        if transport is not None:
            await transport.close()

    async def _handshake(self, channel_key: bytes) -> None:
        self.state = ClientState.HANDSHAKING

        local_static = None
        if self.config.present_static_key:
            local_static, _ = self.key_pair.channel_keys()

        first_message, session = initiate(local_static, channel_key)
        await self.transport.send(first_message)
        reply = await self._receive()
        self.session = complete_initiator(reply, session)

        self.state = ClientState.CHANNEL_READY
        logger.debug(
            "Session %s ready with responder %s", session.session_id, fingerprint(channel_key)
        )

    async def _ensure_connected(self, challenge: Optional[ChallengeURL]) -> None:
        if challenge is None:
            if self.transport is None:
                raise ConfigurationError("Not connected and no url given")
            return

        if challenge.server_identity and self.server_public_key is None:
            try:
                self.server_public_key = bytes.fromhex(challenge.server_identity)
            except ValueError as e:
                raise ValueError(f"Invalid id parameter: {e}") from e

        channel_key = None
        if challenge.server_public_key and self.config.server_channel_key is None:
            try:
                channel_key = bytes.fromhex(challenge.server_public_key)
            except ValueError as e:
                raise ValueError(f"Invalid key parameter: {e}") from e

        await self.connect(challenge.relay_address, channel_key)

    # MARK: - Operations

    async def request_token(self, url: Optional[str] = None) -> dict:
        """
        Ask the server for a fresh challenge token bound to this client's key.

        Args:
            url: Challenge URL to connect with, if not already connected.

        Returns:
            The verified result, containing ``token`` (and ``newResponderKey``
            when the server rotates its responder key).
        """
        await self._ensure_connected(parse_challenge_url(url) if url else None)

        nonce = self.crypto.create_nonce()
        result = await self._call(Method.REQUEST_TOKEN, nonce)

        if not isinstance(result, dict) or not isinstance(result.get("token"), str):
            raise InvalidEnvelopeError("No token in response")

        new_key = result.get("newResponderKey")
        if new_key:
            # Used for the next connection; the current channel keeps its keys
            self._rotated_channel_key = bytes.fromhex(new_key)
            logger.debug("Server rotated responder key to %s", fingerprint(self._rotated_channel_key))

        return result

    async def authz(self, url: str) -> Any:
        """
        Request authorization for the token carried in a challenge URL.

        Args:
            url: The challenge URL the server generated.

        Returns:
            The application's authorization result, verified.
        """
        challenge = parse_challenge_url(url)
        await self._ensure_connected(challenge)
        return await self._call(Method.AUTHZ, challenge.token)

    async def magiclink(self, url: str) -> Any:
        """
        Request a magic link: obtain a fresh token, then prove possession with it.

        Args:
            url: A challenge URL identifying the server.

        Returns:
            The application's magic link result, verified.
        """
        challenge = parse_challenge_url(url)
        await self._ensure_connected(challenge)

        response = await self.request_token()
        return await self._call(Method.MAGICLINK, response["token"])

    # MARK: - Request/Response

    async def _call(self, method: Method, nonce: str) -> Any:
        if self.transport is None:
            raise ConfigurationError("Not connected")
        if self.server_public_key is None:
            raise ConfigurationError("No server public key provided")

        request = RequestEnvelope(
            method=method,
            public_key=self.public_key,
            nonce=nonce,
            signature=self.crypto.sign(nonce, self.public_key, self.key_pair),
        )

        payload = encode_request(request)
        if self.session is not None:
            payload = self.session.encrypt(payload)

        self.state = ClientState.AWAITING_RESPONSE
        try:
            await self.transport.send(payload)
            data = await self._receive()
            if self.session is not None:
                data = self.session.decrypt(data)
        except (TransportError, DecryptionFailedError):
            await self.close()
            raise

        self.state = ClientState.CHANNEL_READY if self.session else ClientState.IDLE

        response = decode_response(data)
        if response.is_error:
            _raise_remote(response.error)

        if not response.signature:
            raise InvalidSignatureError("No signature in response")

        self.crypto.verify_signature(
            response.signature,
            nonce,
            canonical_json(response.result),
            self.server_public_key.hex(),
        )
        return response.result

    async def _receive(self) -> bytes:
        try:
            return await asyncio.wait_for(self.transport.receive(), self.config.timeout)
        except asyncio.TimeoutError as e:
            raise TransportError("Timed out waiting for the server") from e


def _raise_remote(message: str) -> None:
    """Raise the typed error matching a server error message."""
    if message == str(InvalidSignatureError()):
        raise InvalidSignatureError(message)
    if message == str(InvalidTokenError()):
        raise InvalidTokenError(message)
    raise RemoteError(message)
