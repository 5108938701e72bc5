"""Stream and datagram endpoints handed out by the tun device.

The device feeds each endpoint through an :class:`asyncio.Queue` and collects
what the endpoint writes on a shared queue. A ``None`` placed on an incoming
queue means the device side has gone away.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Generic, Optional, Tuple, TypeVar, Union

from .proto import IpEndpoint

log = logging.getLogger(__name__)

T = TypeVar("T")

BytesLike = Union[bytes, bytearray, memoryview]

TcpIncoming = "asyncio.Queue[Optional[bytes]]"
TcpOutgoing = "asyncio.Queue[Tuple[IpEndpoint, bytes]]"
UdpIncoming = "asyncio.Queue[Optional[Tuple[IpEndpoint, bytes]]]"
UdpOutgoing = "asyncio.Queue[Tuple[IpEndpoint, IpEndpoint, bytes]]"


class _Receiver(Generic[T]):
    """Receiving end of a queue that can be closed from either side."""

    def __init__(self, queue: "asyncio.Queue[Optional[T]]"):
        self._queue = queue
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop waiting for new items; items already queued can still be received."""
        self._closed = True

    async def recv(self) -> Optional[T]:
        """Return the next item, or ``None`` once the channel is closed and drained."""
        if self._closed:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return None
        else:
            item = await self._queue.get()
        if item is None:
            self._closed = True
        return item


class TcpReadHalf:
    """Reading side of a TCP connection accepted by the device."""

    def __init__(self, receiver: "asyncio.Queue[Optional[bytes]]", peer_addr: IpEndpoint):
        self._receiver: _Receiver[bytes] = _Receiver(receiver)
        self.peer_addr = peer_addr
        self._buffer = b""

    @property
    def closed(self) -> bool:
        return self._receiver.closed

    async def read(self, n: int = -1) -> bytes:
        """Read up to ``n`` bytes (a whole chunk when ``n`` is negative).

        Returns ``b""`` at end of stream.
        """
        if n == 0:
            return b""
        while not self._buffer:
            data = await self._receiver.recv()
            if data is None:
                return b""
            self._buffer = bytes(data)
        if n < 0:
            n = len(self._buffer)
        chunk, self._buffer = self._buffer[:n], self._buffer[n:]
        return chunk

    def close(self) -> None:
        self._receiver.close()


class TcpWriteHalf:
    """Writing side of a TCP connection; data goes back to the device tagged with the local address."""

    def __init__(self, sender: "asyncio.Queue[Tuple[IpEndpoint, bytes]]", local_addr: IpEndpoint):
        self._sender = sender
        self.local_addr = local_addr

    async def write(self, data: BytesLike) -> int:
        """Queue ``data`` for the device and return how many bytes were taken."""
        await self._sender.put((self.local_addr, bytes(data)))
        return len(data)

    async def shutdown(self) -> None:
        """Tell the device to close the connection by sending an empty chunk."""
        await self.write(b"")


class TcpStream:
    """A TCP connection from a local client to ``peer_addr``."""

    def __init__(
        self,
        receiver: "asyncio.Queue[Optional[bytes]]",
        sender: "asyncio.Queue[Tuple[IpEndpoint, bytes]]",
        local_addr: IpEndpoint,
        peer_addr: IpEndpoint,
    ):
        self.local_addr = local_addr
        self.peer_addr = peer_addr
        self.reader = TcpReadHalf(receiver, peer_addr)
        self.writer = TcpWriteHalf(sender, local_addr)

    def into_split(self) -> tuple[TcpReadHalf, TcpWriteHalf]:
        return self.reader, self.writer

    async def read(self, n: int = -1) -> bytes:
        return await self.reader.read(n)

    async def write(self, data: BytesLike) -> int:
        return await self.writer.write(data)

    async def shutdown(self) -> None:
        """Stop reading and ask the device to close the connection."""
        self.reader.close()
        await self.writer.shutdown()


class UdpWriteHalf:
    """Sends datagrams back to local clients as if from ``peer_addr``'s side."""

    def __init__(
        self,
        sender: "asyncio.Queue[Tuple[IpEndpoint, IpEndpoint, bytes]]",
        peer_addr: IpEndpoint,
    ):
        self._sender = sender
        self.peer_addr = peer_addr

    async def send_to(self, data: BytesLike, source: IpEndpoint) -> int:
        """Queue a datagram for the local client at ``source``; returns its length."""
        await self._sender.put((source, self.peer_addr, bytes(data)))
        return len(data)


class UdpSocket:
    """Datagrams sent by local clients to ``peer_addr``."""

    def __init__(
        self,
        peer_addr: IpEndpoint,
        receiver: "asyncio.Queue[Optional[Tuple[IpEndpoint, bytes]]]",
        sender: "asyncio.Queue[Tuple[IpEndpoint, IpEndpoint, bytes]]",
    ):
        self.peer_addr = peer_addr
        self._receiver: _Receiver[Tuple[IpEndpoint, bytes]] = _Receiver(receiver)
        self._writer = UdpWriteHalf(sender, peer_addr)

    async def recv_from(self) -> tuple[IpEndpoint, bytes]:
        """Return ``(source, data)``; raises :class:`BrokenPipeError` once closed."""
        item = await self._receiver.recv()
        if item is None:
            raise BrokenPipeError(f"udp socket for {self.peer_addr} is closed")
        source, data = item
        return source, bytes(data)

    async def send_to(self, data: BytesLike, source: IpEndpoint) -> int:
        return await self._writer.send_to(data, source)

    def writer(self) -> UdpWriteHalf:
        return UdpWriteHalf(self._writer._sender, self.peer_addr)

    async def close(self) -> None:
        """Ask the device to drop this socket and stop receiving."""
        await self._writer.send_to(b"", self.peer_addr)
        self._receiver.close()