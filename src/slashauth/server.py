"""
SlashAuth server.

The AuthServer issues challenge tokens, verifies signed requests, consumes
tokens and hands authenticated public keys to the application's ``authz`` and
``magiclink`` callbacks. Each connection is serviced by a ServerConnection,
which optionally runs the secure channel handshake before any request.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, FrozenSet, Optional, Set, Union

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from .channel import HandshakeSession, respond
from .envelope import (
    Method,
    RequestEnvelope,
    ResponseEnvelope,
    canonical_json,
    decode_json_object,
    encode_response,
)
from .keys import KeyPair, generate_ephemeral_keypair, public_key_to_bytes
from .signature import CryptoProvider, DefaultCryptoProvider, fingerprint
from .storage import KeyValueStorage, TokenStore
from .transport import StreamTransport, Transport, TransportClosedError, TransportError
from .types import (
    ApplicationError,
    ConfigurationError,
    DecryptionFailedError,
    HandshakeFailedError,
    InvalidEnvelopeError,
    InvalidSignatureError,
    InvalidTokenError,
    SlashAuthError,
    StorageError,
)
from .url import format_challenge_url

logger = logging.getLogger(__name__)

AuthzCallback = Callable[[str, str], Union[Any, Awaitable[Any]]]
MagiclinkCallback = Callable[[str], Union[Any, Awaitable[Any]]]


@dataclass
class ServerConfig:
    """Configuration for an AuthServer."""

    key_pair: Optional[KeyPair] = None
    """Server identity; signs every response."""

    host: str = "127.0.0.1"
    """Interface to listen on."""

    port: int = 0
    """Port to listen on (0 picks a free port)."""

    route: str = "auth"
    """Path embedded in challenge URLs. Informational only: the listener does not route by it."""

    encrypted: bool = True
    """Run the secure channel handshake before servicing requests."""

    rotate_responder_key: bool = False
    """Install a fresh responder key after every encrypted requestToken."""

    timeout: Optional[float] = None
    """Seconds to wait for the next frame before dropping a connection."""

    @classmethod
    def localhost(cls, key_pair: KeyPair, port: int = 8000) -> "ServerConfig":
        """Creates configuration for a local development server."""
        return cls(key_pair=key_pair, host="127.0.0.1", port=port)

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
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigurationError("timeout must be positive")
        if self.rotate_responder_key and not self.encrypted:
            raise ConfigurationError("Responder key rotation requires an encrypted channel")


# ============================================================================
# Responder keys
# ============================================================================


@dataclass(frozen=True)
class ResponderIdentity:
    """An X25519 key the server answers handshakes with."""

    private_key: X25519PrivateKey
    public_key: bytes
    generation: int = 0

    @property
    def public_key_hex(self) -> str:
        return self.public_key.hex()


class ResponderSlot:
    """
    Holds the single current responder identity.

    Rotation replaces the identity object; connections that captured the
    previous one keep using it until they close.
    """

    def __init__(self, initial: ResponderIdentity) -> None:
        self._current = initial

    @property
    def current(self) -> ResponderIdentity:
        return self._current

    def rotate(self) -> ResponderIdentity:
        """Install and return a fresh responder identity."""
        private_key, public_key = generate_ephemeral_keypair()
        replacement = ResponderIdentity(
            private_key=private_key,
            public_key=public_key_to_bytes(public_key),
            generation=self._current.generation + 1,
        )
        self._current = replacement
        logger.info(
            "Rotated responder key to generation %d (%s)",
            replacement.generation,
            fingerprint(replacement.public_key),
        )
        return replacement


# ============================================================================
# Server
# ============================================================================


class AuthServer:
    """
    Server half of the SlashAuth protocol.

    Example usage:
        ```python
        async def authz(public_key, token):
            return {"status": "ok", "resources": ["foo"]}

        async def magiclink(public_key):
            return {"url": "https://example.com/login/123", "validUntil": 1000}

        server = AuthServer(ServerConfig(key_pair=KeyPair.generate()), authz=authz, magiclink=magiclink)
        await server.start()

        url = server.format_challenge_url(await server.request_token(client_public_key))
        ```
    """

    def __init__(
        self,
        config: ServerConfig,
        authz: Optional[AuthzCallback] = None,
        magiclink: Optional[MagiclinkCallback] = None,
        storage: Optional[KeyValueStorage] = None,
        crypto: Optional[CryptoProvider] = None,
    ) -> None:
        """
        Initialize the server.

        Args:
            config: Server configuration.
            authz: Application callback ``authz(public_key, token)``.
            magiclink: Application callback ``magiclink(public_key)``.
            storage: Token storage backend (default: in-memory).
            crypto: Signing capabilities (default: Ed25519).

        Raises:
            ConfigurationError: If the key pair or a callback is missing.
        """
        if config is None:
            raise ConfigurationError("No options provided")
        config.validate()

        if authz is None or magiclink is None:
            raise ConfigurationError("No handler methods provided")
        if not callable(authz) or not callable(magiclink):
            raise ConfigurationError("Handlers must be callable")

        self.config = config
        self.key_pair: KeyPair = config.key_pair
        self._authz = authz
        self._magiclink = magiclink
        self.crypto = crypto or DefaultCryptoProvider()
        self.tokens = TokenStore(storage, create_token=self.crypto.create_nonce)

        private_key, public_key = self.key_pair.channel_keys()
        self.responder = ResponderSlot(
            ResponderIdentity(private_key=private_key, public_key=public_key_to_bytes(public_key))
        )

        self._server: Optional[asyncio.AbstractServer] = None
        self._connections: Set["ServerConnection"] = set()
        self._address: Optional[str] = None

    @property
    def public_key(self) -> bytes:
        """The server's signing public key (32 bytes)."""
        return self.key_pair.public_key

    @property
    def responder_public_key(self) -> bytes:
        """The X25519 key handshakes must currently target."""
        return self.responder.current.public_key

    @property
    def connections(self) -> FrozenSet["ServerConnection"]:
        """Connections currently being serviced."""
        return frozenset(self._connections)

    @property
    def address(self) -> str:
        """The "host:port" clients connect to."""
        if self._address is not None:
            return self._address
        return f"{self.config.host}:{self.config.port}"

    # MARK: - Lifecycle

    async def start(self) -> None:
        """Start listening for TCP connections."""
        if self._server is not None:
            return

        self._server = await asyncio.start_server(
            self._on_stream, self.config.host, self.config.port
        )
        sockname = self._server.sockets[0].getsockname()
        self._address = f"{self.config.host}:{sockname[1]}"
        logger.info(
            "SlashAuth server listening on %s (encrypted=%s, identity %s)",
            self._address,
            self.config.encrypted,
            fingerprint(self.public_key),
        )

    async def stop(self) -> None:
        """Stop listening and close open connections."""
        if self._server is None:
            return

        self._server.close()
        for connection in list(self._connections):
            await connection.close()
        await self._server.wait_closed()
        self._server = None
        logger.info("SlashAuth server on %s stopped", self._address)

    async def __aenter__(self) -> "AuthServer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def _on_stream(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        transport = StreamTransport(reader, writer)
        try:
            await self.handle_connection(transport)
        except TransportError as e:
            logger.warning("Connection from %s failed: %s", transport.peer_name, e)

    async def handle_connection(self, transport: Transport) -> None:
        """
        Service one connection until the peer closes it.

        Raises:
            TransportError: If the transport fails other than by a clean close.
        """
        connection = ServerConnection(self, transport)
        self._connections.add(connection)
        try:
            await connection.run()
        finally:
            self._connections.discard(connection)

    # MARK: - Tokens and URLs

    async def request_token(self, public_key: str) -> str:
        """
        Issue a challenge token for a public key.

        Raises:
            StorageError: If the token store fails.
        """
        return await self.tokens.issue(public_key)

    async def verify_token(self, public_key: str, token: str) -> None:
        """
        Consume a token for a public key.

        Raises:
            InvalidTokenError: If the token is missing, used or wrong.
        """
        await self.tokens.consume(public_key, token)

    def format_challenge_url(self, token: str) -> str:
        """Format a token into a URL a client can act on."""
        return format_challenge_url(
            token,
            relay_address=self.address,
            route=self.config.route,
            server_public_key=self.responder.current.public_key_hex if self.config.encrypted else None,
            server_identity=self.key_pair.public_key_hex,
        )

    # MARK: - Dispatch

    async def handle(self, obj: dict, session: Optional[HandshakeSession] = None) -> ResponseEnvelope:
        """
        Handle one parsed request object.

        Every protocol or application failure becomes an error response.

        Args:
            obj: The decoded JSON request.
            session: The connection's secure channel session, if any.
        """
        try:
            request = RequestEnvelope.from_dict(obj)
        except SlashAuthError as e:
            logger.warning("Rejected malformed request: %s", e)
            return ResponseEnvelope.failure(str(e))

        try:
            result = await self._dispatch(request, session)
            return self._sign_response(request, result)
        except StorageError as e:
            logger.error("Storage failure handling %s: %s", request.method.value, e)
            return ResponseEnvelope.failure(str(e))
        except SlashAuthError as e:
            logger.warning(
                "Rejected %s from %s: %s",
                request.method.value,
                fingerprint(request.public_key),
                e,
            )
            return ResponseEnvelope.failure(str(e))

    async def _dispatch(self, request: RequestEnvelope, session: Optional[HandshakeSession]) -> Any:
        if request.method == Method.REQUEST_TOKEN:
            return await self._handle_request_token(request, session)
        elif request.method == Method.AUTHZ:
            return await self._handle_authz(request)
        elif request.method == Method.MAGICLINK:
            return await self._handle_magiclink(request)
        raise AssertionError(f"Unhandled method: {request.method}")

    async def _handle_request_token(
        self, request: RequestEnvelope, session: Optional[HandshakeSession]
    ) -> dict:
        if not request.nonce:
            raise InvalidSignatureError()
        self.crypto.verify_signature(
            request.signature, request.nonce, request.public_key, request.public_key
        )

        token = await self.tokens.issue(request.public_key)
        result = {"token": token}

        if self.config.rotate_responder_key and session is not None:
            result["newResponderKey"] = self.responder.rotate().public_key_hex

        logger.info("Issued token to %s", fingerprint(request.public_key))
        return result

    async def _handle_authz(self, request: RequestEnvelope) -> Any:
        token = request.nonce or ""
        self.crypto.verify_signature(request.signature, token, request.public_key, request.public_key)
        if not token:
            raise InvalidTokenError()

        result = await self._invoke(self._authz, request.public_key, token)
        logger.info("Authorized %s", fingerprint(request.public_key))
        return result

    async def _handle_magiclink(self, request: RequestEnvelope) -> Any:
        token = request.nonce or ""
        self.crypto.verify_signature(request.signature, token, request.public_key, request.public_key)

        # Consumed before the callback runs, so a failing callback cannot be retried
        await self.tokens.consume(request.public_key, token)

        result = await self._invoke(self._magiclink, request.public_key)
        logger.info("Issued magic link to %s", fingerprint(request.public_key))
        return result

    async def _invoke(self, callback: Callable, *args: Any) -> Any:
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                result = await result
        except SlashAuthError:
            raise
        except Exception as e:
            logger.exception("Application callback %s failed", getattr(callback, "__name__", callback))
            raise ApplicationError(str(e) or type(e).__name__) from e
        return result

    def _sign_response(self, request: RequestEnvelope, result: Any) -> ResponseEnvelope:
        try:
            payload = canonical_json(result)
        except (TypeError, ValueError) as e:
            raise ApplicationError(f"Result is not serializable: {e}") from e

        signature = self.crypto.sign(request.nonce or "", payload, self.key_pair)
        return ResponseEnvelope(result=result, signature=signature)


# ============================================================================
# Connections
# ============================================================================


class ConnectionState(Enum):
    """Lifecycle of a server-side connection."""
    LISTENING = "listening"
    HANDSHAKE_COMPLETE = "handshake_complete"
    SERVICING = "servicing"
    CLOSED = "closed"


class ServerConnection:
    """One client connection: optional handshake, then sequential requests."""

    def __init__(self, server: AuthServer, transport: Transport) -> None:
        self.server = server
        self.transport = transport
        self.state = ConnectionState.LISTENING
        self.session: Optional[HandshakeSession] = None
        # Captured once so a concurrent rotation cannot change it mid-handshake
        self._responder = server.responder.current

    @property
    def peer_channel_key(self) -> Optional[bytes]:
        """
        The initiator's static channel key, authenticated by the handshake.

        None before the handshake, in plaintext mode, or when the client
        connected anonymously.
        """
        if self.session is None:
            return None
        return self.session.remote_static_public_key

    async def run(self) -> None:
        """
        Run the connection to completion.

        Channel failures and unparseable frames end the connection; clean
        closes by the peer end it quietly.
        """
        try:
            if self.server.config.encrypted:
                await self._handshake()

            while True:
                frame = await self._receive()
                data = self.session.decrypt(frame) if self.session else frame

                self.state = ConnectionState.SERVICING
                response = await self.server.handle(decode_json_object(data), self.session)

                payload = encode_response(response)
                if self.session:
                    payload = self.session.encrypt(payload)
                await self.transport.send(payload)
        except TransportClosedError:
            logger.debug("Connection from %s closed by peer", self.transport.peer_name)
        except asyncio.TimeoutError:
            logger.warning("Connection from %s timed out", self.transport.peer_name)
        except (HandshakeFailedError, DecryptionFailedError, InvalidEnvelopeError) as e:
            logger.warning("Dropping connection from %s: %s", self.transport.peer_name, e)
        finally:
            await self.close()

    async def close(self) -> None:
        if self.state == ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        await self.transport.close()

    async def _receive(self) -> bytes:
        timeout = self.server.config.timeout
        if timeout is None:
            return await self.transport.receive()
        return await asyncio.wait_for(self.transport.receive(), timeout)

    async def _handshake(self) -> None:
        first_message = await self._receive()
        reply, session = respond(self._responder.private_key, first_message)
        await self.transport.send(reply)

        self.session = session
        self.state = ConnectionState.HANDSHAKE_COMPLETE
        peer_key = self.peer_channel_key
        logger.info(
            "Session %s established with %s as %s (responder generation %d)",
            session.session_id,
            self.transport.peer_name,
            fingerprint(peer_key) if peer_key else "anonymous",
            self._responder.generation,
        )
