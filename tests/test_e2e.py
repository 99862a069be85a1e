"""End-to-end tests: AuthClient against AuthServer."""

import asyncio

import pytest

from slashauth.client import AuthClient, ClientConfig, ClientState
from slashauth.keys import KeyPair, public_key_to_bytes
from slashauth.server import AuthServer, ServerConfig
from slashauth.signature import DefaultCryptoProvider
from slashauth.transport import MemoryTransport, TransportError
from slashauth.types import (
    ConfigurationError,
    HandshakeFailedError,
    InvalidSignatureError,
    InvalidTokenError,
    RemoteError,
)
from slashauth.url import format_challenge_url
from .test_vectors import (
    AUTHZ_RESULT,
    CLIENT_SEED_HEX,
    MAGICLINK_RESULT,
    SCENARIO_A_TOKEN,
    SCENARIO_B_TOKEN,
    SERVER_SEED_HEX,
)


class RecordingCallbacks:
    """Application callbacks that record their calls."""

    def __init__(self) -> None:
        self.authz_calls = []
        self.magiclink_calls = []

    async def authz(self, public_key, token):
        self.authz_calls.append((public_key, token))
        await asyncio.sleep(0)
        return AUTHZ_RESULT

    async def magiclink(self, public_key):
        self.magiclink_calls.append(public_key)
        await asyncio.sleep(0)
        return MAGICLINK_RESULT


class FixedTokenCrypto(DefaultCryptoProvider):
    """Issues a predictable token."""

    def create_nonce(self) -> str:
        return SCENARIO_A_TOKEN


class ForgingCrypto(DefaultCryptoProvider):
    """Signs with garbage."""

    def sign(self, nonce, data, key_pair):
        return "00" * 64


class InProcessNetwork:
    """Connects clients to a server over MemoryTransport pairs."""

    def __init__(self, server: AuthServer) -> None:
        self.server = server
        self.tasks = []
        self.connections = 0

    async def connect(self, address: str):
        client_side, server_side = MemoryTransport.pair()
        self.tasks.append(asyncio.ensure_future(self.server.handle_connection(server_side)))
        self.connections += 1
        return client_side

    async def drain(self) -> None:
        await asyncio.gather(*self.tasks)


@pytest.fixture
def client_keys():
    return KeyPair.from_seed(bytes.fromhex(CLIENT_SEED_HEX))


@pytest.fixture
def server_keys():
    return KeyPair.from_seed(bytes.fromhex(SERVER_SEED_HEX))


@pytest.fixture
def callbacks():
    return RecordingCallbacks()


def _server(server_keys, callbacks, **options) -> AuthServer:
    crypto = options.pop("crypto", None)
    return AuthServer(
        ServerConfig(key_pair=server_keys, port=8000, **options),
        authz=callbacks.authz,
        magiclink=callbacks.magiclink,
        crypto=crypto,
    )


class TestClientConfiguration:
    """Configuration errors fail at construction."""

    def test_missing_key_pair(self) -> None:
        with pytest.raises(ConfigurationError, match="No key pair provided"):
            AuthClient(ClientConfig())

    def test_missing_config(self) -> None:
        with pytest.raises(ConfigurationError, match="No options provided"):
            AuthClient(None)

    def test_malformed_server_key(self, client_keys) -> None:
        with pytest.raises(ConfigurationError, match="32 bytes"):
            AuthClient(ClientConfig(key_pair=client_keys, server_public_key=b"short"))

    @pytest.mark.asyncio
    async def test_encrypted_needs_channel_key(self, client_keys) -> None:
        client = AuthClient(ClientConfig(key_pair=client_keys))

        with pytest.raises(ConfigurationError, match="No server public key provided"):
            await client.authz("slashauth://127.0.0.1:1/auth?token=t")


@pytest.mark.parametrize("encrypted", [True, False])
class TestProtocolScenarios:
    """The protocol scenarios, with and without the secure channel."""

    @pytest.mark.asyncio
    async def test_scenario_a_magiclink(self, encrypted, client_keys, server_keys, callbacks) -> None:
        """magiclink succeeds with a fresh token, which cannot then be reused."""
        server = _server(server_keys, callbacks, encrypted=encrypted, crypto=FixedTokenCrypto())
        network = InProcessNetwork(server)
        url = server.format_challenge_url("unused")

        async with AuthClient(ClientConfig(key_pair=client_keys, encrypted=encrypted), connect=network.connect) as client:
            result = await client.magiclink(url)

            assert result == MAGICLINK_RESULT
            assert callbacks.magiclink_calls == [client_keys.public_key_hex]
            assert await server.tokens.has_token(client_keys.public_key_hex) is False

            with pytest.raises(InvalidTokenError):
                await server.verify_token(client_keys.public_key_hex, SCENARIO_A_TOKEN)

        await network.drain()

    @pytest.mark.asyncio
    async def test_scenario_b_forged_signature(self, encrypted, client_keys, server_keys, callbacks) -> None:
        """A forged authz signature yields Invalid signature and no callback."""
        server = _server(server_keys, callbacks, encrypted=encrypted)
        network = InProcessNetwork(server)
        url = server.format_challenge_url(SCENARIO_B_TOKEN)

        config = ClientConfig(key_pair=client_keys, encrypted=encrypted)
        async with AuthClient(config, connect=network.connect, crypto=ForgingCrypto()) as client:
            with pytest.raises(InvalidSignatureError, match="Invalid signature"):
                await client.authz(url)

        assert callbacks.authz_calls == []
        await network.drain()

    @pytest.mark.asyncio
    async def test_authz(self, encrypted, client_keys, server_keys, callbacks) -> None:
        """authz returns the verified application result."""
        server = _server(server_keys, callbacks, encrypted=encrypted)
        network = InProcessNetwork(server)
        url = server.format_challenge_url(SCENARIO_B_TOKEN)

        async with AuthClient(ClientConfig(key_pair=client_keys, encrypted=encrypted), connect=network.connect) as client:
            assert await client.authz(url) == AUTHZ_RESULT

        assert callbacks.authz_calls == [(client_keys.public_key_hex, SCENARIO_B_TOKEN)]
        await network.drain()

    @pytest.mark.asyncio
    async def test_idempotent_rounds(self, encrypted, client_keys, server_keys, callbacks) -> None:
        """Each requestToken round is independently satisfiable on one connection."""
        server = _server(server_keys, callbacks, encrypted=encrypted)
        network = InProcessNetwork(server)
        url = server.format_challenge_url("unused")

        async with AuthClient(ClientConfig(key_pair=client_keys, encrypted=encrypted), connect=network.connect) as client:
            for _ in range(3):
                assert await client.magiclink(url) == MAGICLINK_RESULT

        assert len(callbacks.magiclink_calls) == 3
        assert network.connections == 1
        await network.drain()


class TestSessionBehaviour:
    """Connection and channel behaviour."""

    @pytest.mark.asyncio
    async def test_handshake_once_per_connection(self, client_keys, server_keys, callbacks) -> None:
        server = _server(server_keys, callbacks)
        network = InProcessNetwork(server)
        url = server.format_challenge_url(SCENARIO_B_TOKEN)

        client = AuthClient(ClientConfig(key_pair=client_keys), connect=network.connect)
        await client.authz(url)
        session = client.session
        assert client.state == ClientState.CHANNEL_READY

        await client.authz(url)
        await client.magiclink(url)
        assert client.session is session
        assert session.tx_counter == 4

        await client.close()
        assert client.state == ClientState.CLOSED
        await network.drain()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("present_static_key", [True, False])
    async def test_server_sees_initiator_channel_key(
        self, present_static_key, client_keys, server_keys, callbacks
    ) -> None:
        """The connection exposes the client's handshake key unless it connected anonymously."""
        server = _server(server_keys, callbacks)
        network = InProcessNetwork(server)
        url = server.format_challenge_url(SCENARIO_B_TOKEN)

        config = ClientConfig(key_pair=client_keys, present_static_key=present_static_key)
        async with AuthClient(config, connect=network.connect) as client:
            await client.authz(url)

            (connection,) = server.connections
            _, client_channel_public = client_keys.channel_keys()
            if present_static_key:
                assert connection.peer_channel_key == public_key_to_bytes(client_channel_public)
            else:
                assert connection.peer_channel_key is None

        await network.drain()
        assert server.connections == frozenset()

    @pytest.mark.asyncio
    async def test_route_is_informational(self, client_keys, server_keys, callbacks) -> None:
        """The listener serves a URL whatever route it names."""
        server = _server(server_keys, callbacks)
        network = InProcessNetwork(server)
        url = format_challenge_url(
            "t",
            server.address,
            route="some/other/path",
            server_public_key=server.responder_public_key.hex(),
            server_identity=server_keys.public_key_hex,
        )

        async with AuthClient(ClientConfig(key_pair=client_keys), connect=network.connect) as client:
            assert await client.authz(url) == AUTHZ_RESULT

        await network.drain()

    @pytest.mark.asyncio
    async def test_wrong_server_identity_rejected(self, client_keys, server_keys, callbacks) -> None:
        """Responses signed by an unexpected key are rejected."""
        server = _server(server_keys, callbacks)
        network = InProcessNetwork(server)
        url = server.format_challenge_url(SCENARIO_B_TOKEN)

        config = ClientConfig(key_pair=client_keys, server_public_key=KeyPair.generate().public_key)
        async with AuthClient(config, connect=network.connect) as client:
            with pytest.raises(InvalidSignatureError):
                await client.authz(url)

        await network.drain()

    @pytest.mark.asyncio
    async def test_wrong_responder_key_fails_handshake(self, client_keys, server_keys, callbacks) -> None:
        server = _server(server_keys, callbacks)
        network = InProcessNetwork(server)

        config = ClientConfig(
            key_pair=client_keys,
            server_public_key=server_keys.public_key,
            server_channel_key=bytes(range(1, 33)),
            timeout=5,
        )
        client = AuthClient(config, connect=network.connect)

        with pytest.raises((HandshakeFailedError, TransportError)):
            await client.connect(server.address)

        assert client.connected is False
        await network.drain()

    @pytest.mark.asyncio
    async def test_application_error_message(self, client_keys, server_keys) -> None:
        async def authz(public_key, token):
            raise PermissionError("account locked")

        server = AuthServer(
            ServerConfig(key_pair=server_keys),
            authz=authz,
            magiclink=lambda public_key: None,
        )
        network = InProcessNetwork(server)
        url = server.format_challenge_url("t")

        async with AuthClient(ClientConfig(key_pair=client_keys), connect=network.connect) as client:
            with pytest.raises(RemoteError, match="account locked"):
                await client.authz(url)

            # The connection survives an application error
            with pytest.raises(RemoteError):
                await client.authz(url)

        await network.drain()

    @pytest.mark.asyncio
    async def test_malformed_bytes_close_connection(self, server_keys, callbacks) -> None:
        server = _server(server_keys, callbacks, encrypted=False)
        client_side, server_side = MemoryTransport.pair()
        task = asyncio.ensure_future(server.handle_connection(server_side))

        await client_side.send(b"\x00not json")
        await asyncio.wait_for(task, 5)

        assert server_side.closed

    @pytest.mark.asyncio
    async def test_responder_rotation(self, client_keys, server_keys, callbacks) -> None:
        """The client falls back to the rotated responder key when a URL carries none."""
        server = _server(server_keys, callbacks, rotate_responder_key=True)
        network = InProcessNetwork(server)
        url = server.format_challenge_url(SCENARIO_B_TOKEN)
        original_key = server.responder_public_key

        client = AuthClient(ClientConfig(key_pair=client_keys), connect=network.connect)
        result = await client.request_token(url)

        assert bytes.fromhex(result["newResponderKey"]) == server.responder_public_key
        assert server.responder_public_key != original_key
        assert client.rotated_channel_key == server.responder_public_key

        # Current channel keeps working after rotation
        assert await client.authz(url) == AUTHZ_RESULT

        await client.close()
        keyless_url = format_challenge_url(
            SCENARIO_B_TOKEN, server.address, server_identity=server_keys.public_key_hex
        )
        assert await client.authz(keyless_url) == AUTHZ_RESULT
        assert network.connections == 2

        await client.close()
        await network.drain()

    @pytest.mark.asyncio
    async def test_url_key_wins_over_rotated_key(self, client_keys, server_keys, callbacks) -> None:
        """A rotation caused by another client does not strand this one."""
        server = _server(server_keys, callbacks, rotate_responder_key=True)
        network = InProcessNetwork(server)
        other_keys = KeyPair.generate()

        first = AuthClient(ClientConfig(key_pair=client_keys), connect=network.connect)
        await first.request_token(server.format_challenge_url("t1"))
        await first.close()

        second = AuthClient(ClientConfig(key_pair=other_keys), connect=network.connect)
        await second.request_token(server.format_challenge_url("t1"))
        await second.close()

        assert first.rotated_channel_key != server.responder_public_key

        url = server.format_challenge_url("t2")
        assert await first.authz(url) == AUTHZ_RESULT
        assert callbacks.authz_calls == [(client_keys.public_key_hex, "t2")]

        await first.close()
        await network.drain()

    @pytest.mark.asyncio
    async def test_pinned_channel_key_wins_over_url(self, client_keys, server_keys, callbacks) -> None:
        """A responder key pinned in the configuration overrides the URL's key."""
        server = _server(server_keys, callbacks)
        network = InProcessNetwork(server)
        url = format_challenge_url(
            "t",
            server.address,
            server_public_key=bytes(range(1, 33)).hex(),
            server_identity=server_keys.public_key_hex,
        )

        config = ClientConfig(key_pair=client_keys, server_channel_key=server.responder_public_key)
        async with AuthClient(config, connect=network.connect) as client:
            assert await client.authz(url) == AUTHZ_RESULT

        await network.drain()


class TestOverTcp:
    """Client and server over real sockets."""

    @pytest.mark.asyncio
    async def test_e2e_socket(self, client_keys, server_keys, callbacks) -> None:
        server = AuthServer(
            ServerConfig(key_pair=server_keys, port=0),
            authz=callbacks.authz,
            magiclink=callbacks.magiclink,
        )

        async with server:
            url = server.format_challenge_url("hello")

            async with AuthClient(ClientConfig(key_pair=client_keys, timeout=5)) as client:
                assert await client.authz(url) == AUTHZ_RESULT
                assert await client.magiclink(url) == MAGICLINK_RESULT

        assert callbacks.authz_calls == [(client_keys.public_key_hex, "hello")]
        assert callbacks.magiclink_calls == [client_keys.public_key_hex]

    @pytest.mark.asyncio
    async def test_plaintext_socket(self, client_keys, server_keys, callbacks) -> None:
        server = AuthServer(
            ServerConfig(key_pair=server_keys, port=0, encrypted=False),
            authz=callbacks.authz,
            magiclink=callbacks.magiclink,
        )

        async with server:
            url = server.format_challenge_url("hello")
            config = ClientConfig(key_pair=client_keys, encrypted=False, timeout=5)

            async with AuthClient(config) as client:
                assert await client.magiclink(url) == MAGICLINK_RESULT
