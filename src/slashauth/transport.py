"""
Message transports for SlashAuth.

The protocol only needs an ordered, bidirectional message channel. This module
provides the interface plus two implementations: an in-process pair built on
asyncio queues, and length-prefixed framing over asyncio streams (TCP).

Stream framing:
    [0..3]  payload length (4 bytes, big-endian uint32)
    [4..]   payload
"""

import asyncio
import logging
import struct
from abc import ABC, abstractmethod
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

MAX_FRAME_SIZE = 4 * 1024 * 1024  # 4 MiB hard limit
LENGTH_STRUCT = struct.Struct(">I")


class TransportError(Exception):
    """Raised when the underlying connection fails."""
    pass


class TransportClosedError(TransportError):
    """Raised when the peer has closed the connection."""

    def __init__(self) -> None:
        super().__init__("Connection closed")


class Transport(ABC):
    """Abstract base class for an ordered bidirectional message channel."""

    @abstractmethod
    async def send(self, data: bytes) -> None:
        """Send one message."""
        pass

    @abstractmethod
    async def receive(self) -> bytes:
        """Receive the next message; raises TransportClosedError at end of stream."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the channel."""
        pass

    @property
    def peer_name(self) -> str:
        """A description of the remote end for logging."""
        return "peer"


# ============================================================================
# In-process transport
# ============================================================================


class MemoryTransport(Transport):
    """One end of an in-process transport pair."""

    def __init__(self, inbox: asyncio.Queue, outbox: asyncio.Queue, name: str = "memory") -> None:
        self._inbox = inbox
        self._outbox = outbox
        self._name = name
        self._closed = False

    @classmethod
    def pair(cls) -> Tuple["MemoryTransport", "MemoryTransport"]:
        """Create two connected endpoints: (client side, server side)."""
        a_to_b: asyncio.Queue = asyncio.Queue()
        b_to_a: asyncio.Queue = asyncio.Queue()
        return (
            cls(inbox=b_to_a, outbox=a_to_b, name="memory-client"),
            cls(inbox=a_to_b, outbox=b_to_a, name="memory-server"),
        )

    @property
    def peer_name(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, data: bytes) -> None:
        if self._closed:
            raise TransportClosedError()
        await self._outbox.put(bytes(data))

    async def receive(self) -> bytes:
        if self._closed:
            raise TransportClosedError()

        data = await self._inbox.get()
        if data is None:
            self._closed = True
            raise TransportClosedError()
        return data

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wake the peer's pending receive
        await self._outbox.put(None)


# ============================================================================
# Stream transport
# ============================================================================


class StreamTransport(Transport):
    """Length-prefixed frames over an asyncio StreamReader/StreamWriter pair."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        peer = writer.get_extra_info("peername")
        self._peer_name = f"{peer[0]}:{peer[1]}" if isinstance(peer, tuple) else str(peer)

    @property
    def peer_name(self) -> str:
        return self._peer_name

    async def send(self, data: bytes) -> None:
        if len(data) > MAX_FRAME_SIZE:
            raise TransportError(f"Frame too large: {len(data)} > {MAX_FRAME_SIZE}")

        try:
            self._writer.write(LENGTH_STRUCT.pack(len(data)) + data)
            await self._writer.drain()
        except ConnectionError as e:
            raise TransportError(f"Send failed: {e}") from e

    async def receive(self) -> bytes:
        try:
            header = await self._reader.readexactly(LENGTH_STRUCT.size)
            (length,) = LENGTH_STRUCT.unpack(header)

            if length > MAX_FRAME_SIZE:
                raise TransportError(f"Frame too large: {length} > {MAX_FRAME_SIZE}")

            return await self._reader.readexactly(length)
        except asyncio.IncompleteReadError as e:
            raise TransportClosedError() from e
        except ConnectionError as e:
            raise TransportError(f"Receive failed: {e}") from e

    async def close(self) -> None:
        if self._writer.is_closing():
            return
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except ConnectionError:
            logger.debug("Connection to %s reset while closing", self._peer_name)


def parse_address(address: str) -> Tuple[str, int]:
    """
    Split a "host:port" relay address.

    Raises:
        ValueError: If the address has no valid port
    """
    host, sep, port = address.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"Invalid relay address: {address}")
    return host.strip("[]"), int(port)


async def open_connection(address: str, timeout: Optional[float] = None) -> StreamTransport:
    """
    Open a TCP transport to a "host:port" relay address.

    Raises:
        TransportError: If the connection cannot be established
    """
    host, port = parse_address(address)
    try:
        reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, asyncio.TimeoutError) as e:
        raise TransportError(f"Could not connect to {address}: {e}") from e

    logger.debug("Connected to %s", address)
    return StreamTransport(reader, writer)
