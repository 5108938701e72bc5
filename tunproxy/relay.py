"""Relaying of device connections to the proxy server.

TCP connections are tunnelled one by one over TLS with a Trojan CONNECT
header. Connections to the proxy server itself are passed through untouched.
UDP datagrams are grouped by local client; each client gets its own
UDP-associate tunnel.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
from typing import Awaitable, Callable, Coroutine, Optional, Tuple

from .client import open_tls_connection
from .proto import (
    CONNECT,
    IpEndpoint,
    ProtocolError,
    encode_trojan_request,
    encode_udp_header,
    parse_udp_packet,
)
from .streams import TcpReadHalf, TcpStream, TcpWriteHalf, UdpSocket, UdpWriteHalf

log = logging.getLogger(__name__)

CHUNK_SIZE = 65536
UDP_IDLE_TIMEOUT = 120.0
SESSION_QUEUE_SIZE = 1024

Connector = Callable[[], Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]
_SessionItem = Optional[Tuple[IpEndpoint, bytes]]


def _shutdown(writer: asyncio.StreamWriter) -> None:
    """Half-close the write side where the transport allows it, else close it."""
    try:
        if writer.can_write_eof():
            writer.write_eof()
        else:
            writer.close()
    except (OSError, RuntimeError):
        writer.close()


async def _copy_to_remote(local: TcpReadHalf, remote: asyncio.StreamWriter) -> None:
    while True:
        data = await local.read(CHUNK_SIZE)
        if not data:
            return
        try:
            remote.write(data)
            await remote.drain()
        except OSError as err:
            log.info("write to remote failed: %s", err)
            return


async def tcp_local_to_remote(
    local: TcpReadHalf, remote: asyncio.StreamWriter, password: str
) -> None:
    """Send the CONNECT header, then everything the local client writes."""
    request = encode_trojan_request(CONNECT, password, local.peer_addr)
    try:
        remote.write(request)
        await remote.drain()
    except OSError as err:
        log.error("send request to remote server failed:%s", err)
        _shutdown(remote)
        return
    await _copy_to_remote(local, remote)
    local.close()
    _shutdown(remote)
    log.info("local to remote closed")


async def tcp_remote_to_local(remote: asyncio.StreamReader, local: TcpWriteHalf) -> None:
    """Copy everything the remote sends to the local client, then close it."""
    while True:
        try:
            data = await remote.read(CHUNK_SIZE)
        except OSError as err:
            log.info("read from remote failed: %s", err)
            break
        if not data:
            break
        await local.write(data)
    log.info("remote to local closed")
    await local.shutdown()


async def _direct_local_to_remote(local: TcpReadHalf, remote: asyncio.StreamWriter) -> None:
    await _copy_to_remote(local, remote)
    _shutdown(remote)
    local.close()


async def start_tcp(
    local: TcpStream,
    ssl_context,
    server_addr: IpEndpoint,
    server_name: str,
    password: str,
) -> None:
    """Relay one accepted TCP connection until both directions are done."""
    peer_host, peer_port = local.peer_addr[0], local.peer_addr[1]
    if ipaddress.ip_address(peer_host) == ipaddress.ip_address(server_addr[0]):
        try:
            remote_reader, remote_writer = await asyncio.open_connection(peer_host, peer_port)
        except OSError as err:
            log.error("direct connection to %s failed: %s", local.peer_addr, err)
            await local.shutdown()
            return
        local_read, local_write = local.into_split()
        try:
            await asyncio.gather(
                _direct_local_to_remote(local_read, remote_writer),
                tcp_remote_to_local(remote_reader, local_write),
            )
        finally:
            remote_writer.close()
        return

    try:
        reader, writer = await open_tls_connection(ssl_context, server_addr, server_name)
    except OSError as err:
        log.error("connect to proxy server failed: %s", err)
        return
    read_half, write_half = local.into_split()
    try:
        await asyncio.gather(
            tcp_local_to_remote(read_half, writer, password),
            tcp_remote_to_local(reader, write_half),
        )
    finally:
        writer.close()


class UdpDispatcher:
    """Routes datagrams from local clients into one tunnel per client.

    ``sockets`` maps a destination to the writer that answers for it;
    ``sessions`` maps a local client to the queue feeding its tunnel.
    """

    def __init__(
        self,
        ssl_context,
        server_addr: IpEndpoint,
        server_name: str,
        request: bytes,
        connect: Optional[Connector] = None,
        idle_timeout: float = UDP_IDLE_TIMEOUT,
    ):
        self.ssl_context = ssl_context
        self.server_addr = server_addr
        self.server_name = server_name
        self.request = bytes(request)
        self.idle_timeout = idle_timeout
        self._connect: Connector = connect or (
            lambda: open_tls_connection(self.ssl_context, self.server_addr, self.server_name)
        )
        self.sockets: dict[IpEndpoint, UdpWriteHalf] = {}
        self.sessions: dict[IpEndpoint, asyncio.Queue[_SessionItem]] = {}
        self._tasks: set[asyncio.Task] = set()

    def _spawn(self, coro: Coroutine) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def add_socket(self, writer: UdpWriteHalf) -> None:
        log.info("add socket for %s", writer.peer_addr)
        self.sockets[writer.peer_addr] = writer

    async def dispatch(self, source: IpEndpoint, target: IpEndpoint, data: bytes) -> None:
        """Forward a datagram from ``source`` to ``target`` through the source's tunnel."""
        log.info("found data %s - %s %d bytes", source, target, len(data))
        local = self.sockets.get(target)
        if local is None:
            log.error("socket:%s not found in cache", target)
            return
        queue = self.sessions.get(source)
        if queue is None:
            log.info("remote for %s not found", source)
            queue = asyncio.Queue(SESSION_QUEUE_SIZE)
            self.sessions[source] = queue
            self._spawn(self._local_to_remote(queue, source, local))
        await queue.put((target, bytes(data)))

    def close(self, address: IpEndpoint, is_remote: bool) -> None:
        """Drop the tunnel of a local client, or the socket of a destination."""
        log.info("close %s %s", address, is_remote)
        if not is_remote:
            self.sockets.pop(address, None)
            return
        queue = self.sessions.pop(address, None)
        if queue is None:
            return
        try:
            queue.put_nowait(None)
        except asyncio.QueueFull:
            self._spawn(queue.put(None))

    async def _local_to_remote(
        self,
        queue: "asyncio.Queue[_SessionItem]",
        source: IpEndpoint,
        local: UdpWriteHalf,
    ) -> None:
        try:
            reader, writer = await self._connect()
        except OSError as err:
            log.error("udp connect to proxy server failed: %s", err)
            self.close(source, True)
            return
        try:
            writer.write(self.request)
            await writer.drain()
        except OSError as err:
            log.error("udp send handshake failed:%s", err)
            writer.close()
            self.close(source, True)
            return
        self._spawn(self._remote_to_local(reader, writer, local, source))
        log.info("local to remote started for %s", source)
        while (item := await queue.get()) is not None:
            target, data = item
            if not data:
                log.info("empty data found")
                continue
            try:
                header = encode_udp_header(target, len(data))
            except ValueError as err:
                log.error("cannot frame udp packet: %s", err)
                continue
            try:
                writer.write(header + data)
                await writer.drain()
            except OSError:
                break
        _shutdown(writer)
        log.info("remote shutdown now for %s", source)

    async def _remote_to_local(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        local: UdpWriteHalf,
        source: IpEndpoint,
    ) -> None:
        buffer = b""
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(reader.read(CHUNK_SIZE), self.idle_timeout)
                except (asyncio.TimeoutError, OSError):
                    chunk = b""
                if not chunk:
                    log.info("%s read from remote failed", source)
                    break
                buffer += chunk
                while (packet := parse_udp_packet(buffer)) is not None:
                    await local.send_to(packet.payload, source)
                    log.info(
                        "%s - %s get one packet with size:%d",
                        packet.address,
                        source,
                        packet.length,
                    )
                    buffer = buffer[packet.offset :]
        except ProtocolError as err:
            log.error("invalid protocol to %s: %s", source, err)
        self.close(source, True)
        writer.close()


async def start_udp(local: UdpSocket, dispatcher: UdpDispatcher) -> None:
    """Feed datagrams from a device socket to the dispatcher until it goes idle or closes."""
    target = local.peer_addr
    log.info("start udp listening for %s", target)
    while True:
        try:
            source, data = await asyncio.wait_for(local.recv_from(), dispatcher.idle_timeout)
        except (asyncio.TimeoutError, BrokenPipeError):
            log.info("udp read from local failed")
            break
        await dispatcher.dispatch(source, target, data)
    log.info("udp socket:%s closed", target)
    await local.close()
    dispatcher.close(target, False)