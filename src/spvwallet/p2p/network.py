"""
Network primitives: framed message connections and peer discovery.
"""

from __future__ import annotations

import asyncio
import socket
from abc import ABC, abstractmethod

from loguru import logger

from spvwallet.models import NetworkParams
from spvwallet.p2p.messages import HEADER_SIZE, MessageHeader, encode_message


class PeerConnectionError(Exception):
    pass


class MessageConnection(ABC):
    """A bidirectional stream of (command, payload) pairs."""

    @abstractmethod
    async def send_message(self, command: str, payload: bytes = b"") -> None:
        pass

    @abstractmethod
    async def receive_message(self) -> tuple[str, bytes]:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    @abstractmethod
    def is_connected(self) -> bool:
        pass


class TCPPeerConnection(MessageConnection):
    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        magic: bytes,
    ):
        self.reader = reader
        self.writer = writer
        self.magic = magic
        self._connected = True
        self._write_lock = asyncio.Lock()

    async def send_message(self, command: str, payload: bytes = b"") -> None:
        if not self._connected:
            raise PeerConnectionError("Connection closed")

        data = encode_message(self.magic, command, payload)
        async with self._write_lock:
            try:
                self.writer.write(data)
                await self.writer.drain()
            except (ConnectionError, OSError) as e:
                self._connected = False
                raise PeerConnectionError(f"Send failed: {e}") from e
        logger.trace(f"sent {command} ({len(payload)} bytes)")

    async def receive_message(self) -> tuple[str, bytes]:
        """
        Read one framed message.

        Raises:
            ProtocolError: bad magic, oversized payload or checksum mismatch
            PeerConnectionError: the stream closed
        """
        if not self._connected:
            raise PeerConnectionError("Connection closed")

        try:
            raw_header = await self.reader.readexactly(HEADER_SIZE)
            header = MessageHeader.parse(raw_header, self.magic)
            payload = await self.reader.readexactly(header.length)
        except asyncio.IncompleteReadError as e:
            self._connected = False
            raise PeerConnectionError("Connection closed by peer") from e
        except (ConnectionError, OSError) as e:
            self._connected = False
            raise PeerConnectionError(f"Receive failed: {e}") from e

        header.verify(payload)
        logger.trace(f"received {header.command} ({header.length} bytes)")
        return header.command, payload

    async def close(self) -> None:
        if not self._connected:
            return
        self._connected = False
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Error while closing connection: {e}")

    def is_connected(self) -> bool:
        return self._connected


async def open_connection(
    host: str, port: int, magic: bytes, timeout: float
) -> MessageConnection:
    try:
        reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except TimeoutError as e:
        raise PeerConnectionError(f"Timed out connecting to {host}:{port}") from e
    except OSError as e:
        raise PeerConnectionError(f"Failed to connect to {host}:{port}: {e}") from e
    return TCPPeerConnection(reader, writer, magic)


async def discover_peers(params: NetworkParams, limit: int = 16) -> list[tuple[str, int]]:
    """Resolve the network's DNS seeds into candidate peer addresses."""
    if not params.discovery_available:
        raise PeerConnectionError(f"No peer discovery on {params.network.value}")

    loop = asyncio.get_running_loop()
    found: list[tuple[str, int]] = []
    for seed in params.dns_seeds:
        try:
            infos = await loop.getaddrinfo(
                seed, params.default_port, type=socket.SOCK_STREAM, proto=socket.IPPROTO_TCP
            )
        except OSError as e:
            logger.warning(f"DNS seed {seed} failed: {e}")
            continue
        for _family, _type, _proto, _canon, sockaddr in infos:
            target = (str(sockaddr[0]), params.default_port)
            if target not in found:
                found.append(target)
        if len(found) >= limit:
            break

    logger.info(f"Discovered {len(found)} peers from DNS seeds")
    return found[:limit]

