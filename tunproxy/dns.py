"""DNS relay: answers local queries from a cache and forwards misses.

Names in the blocked set go to a trusted resolver through the proxy tunnel;
everything else goes straight to an untrusted resolver over UDP.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from typing import Awaitable, Callable, Iterable, Optional, Protocol, Union

import dns.exception
import dns.message
import dns.name
import dns.rdatatype

from .client import open_tls_connection
from .proto import IpEndpoint, ProtocolError, encode_udp_header, parse_udp_packet

log = logging.getLogger(__name__)

RESPONSE_QUEUE_SIZE = 1024


class _DatagramSender(Protocol):
    async def send_to(self, data: bytes, source: IpEndpoint) -> int: ...


def is_blocked(blocked: Iterable[str] | set[str], name: str) -> bool:
    """Tell whether ``name`` or one of its parent domains is in ``blocked``.

    The top-level label on its own is never checked.
    """
    labels = name.split(".")
    if name.endswith("."):
        labels = labels[:-1]
    for start in range(len(labels) - 1):
        candidate = ".".join(labels[start:])
        if candidate in blocked:
            log.info("test domain:%s blocked", candidate)
            return True
    return False


def _name_text(name: dns.name.Name) -> str:
    try:
        return name.to_unicode()
    except (dns.exception.DNSException, UnicodeError):
        return name.to_text()


def message_key(message: dns.message.Message) -> str:
    """Cache key of a message: the first question's name and type."""
    question = message.question[0]
    return f"{_name_text(question.name)}|{dns.rdatatype.to_text(question.rdtype)}"


class DnsItem:
    """Cached answer for one question, with the clients waiting for it."""

    def __init__(self, message: dns.message.Message, clock: Callable[[], float] = time.monotonic):
        self.message = message
        self._clock = clock
        self.expire = clock()
        self.clients: list[tuple[IpEndpoint, int]] = []

    def has_response(self) -> bool:
        return len(self.message.answer) > 0

    def add_client(self, client: IpEndpoint, message_id: int) -> None:
        self.clients.append((client, message_id))

    async def notify(self, message: dns.message.Message, socket: _DatagramSender) -> None:
        """Send a fresh answer to every waiting client and cache it."""
        clients, self.clients = self.clients, []
        for source, message_id in clients:
            message.id = message_id
            message.additional = []
            message.authority = []
            await socket.send_to(message.to_wire(), source)
            log.info("send response to %s", source)
        if message.answer:
            self.expire = self._clock() + message.answer[0].ttl
        self.message = message

    async def respond(self, socket: _DatagramSender, source: IpEndpoint, message_id: int) -> bool:
        """Answer from the cache if possible.

        Returns ``True`` when the query still has to be sent upstream: either
        nothing is cached yet, or the cached answer has expired.
        """
        if not self.has_response():
            self.add_client(source, message_id)
            return True
        remaining = max(0.0, self.expire - self._clock())
        for rrset in self.message.answer:
            rrset.ttl = int(remaining)
        self.message.id = message_id
        await socket.send_to(self.message.to_wire(), source)
        return remaining <= 0


class _Closed(enum.Enum):
    TRUST = "trust"
    DISTRUST = "distrust"


_Response = Union[dns.message.Message, _Closed]


class _DistrustProtocol(asyncio.DatagramProtocol):
    def __init__(self, responses: "asyncio.Queue[_Response]"):
        self._responses = responses
        self._transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport) -> None:
        self._transport = transport

    def datagram_received(self, data: bytes, addr) -> None:
        try:
            message = dns.message.from_wire(data)
        except (dns.exception.DNSException, ValueError):
            log.error("parse dns response from distrusted failed")
            return
        try:
            self._responses.put_nowait(message)
        except asyncio.QueueFull:
            log.error("dns response queue is full, dropping response")

    def error_received(self, exc: Exception) -> None:
        log.error("recv from untrusted socket failed:%s", exc)
        if self._transport is not None:
            self._transport.close()

    def connection_lost(self, exc: Optional[Exception]) -> None:
        try:
            self._responses.put_nowait(_Closed.DISTRUST)
        except asyncio.QueueFull:
            log.error("dns response queue is full, dropping close notice")


Connector = Callable[[], Awaitable[tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


class DnsRelay:
    """Serves DNS queries arriving on a local UDP socket of the tun device."""

    def __init__(
        self,
        local,
        ssl_context,
        server_addr: IpEndpoint,
        server_name: str,
        request: bytes,
        trusted_addr: IpEndpoint,
        distrusted_addr: IpEndpoint,
        blocked_domains: Iterable[str],
        connect: Optional[Connector] = None,
    ):
        self.local = local
        self.ssl_context = ssl_context
        self.server_addr = server_addr
        self.server_name = server_name
        self.request = bytes(request)
        self.trusted_addr = trusted_addr
        self.distrusted_addr = distrusted_addr
        self.blocked_domains = set(blocked_domains)
        self._connect = connect or (
            lambda: open_tls_connection(self.ssl_context, self.server_addr, self.server_name)
        )
        self._responses: asyncio.Queue[_Response] = asyncio.Queue(RESPONSE_QUEUE_SIZE)
        self._store: dict[str, DnsItem] = {}
        self._distrust: Optional[asyncio.DatagramTransport] = None
        self._trust: Optional[asyncio.StreamWriter] = None
        self._trust_readers: set[asyncio.Task] = set()

    async def _start_distrust(self) -> asyncio.DatagramTransport:
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _DistrustProtocol(self._responses), local_addr=("0.0.0.0", 0)
        )
        return transport

    async def _start_trust(self) -> asyncio.StreamWriter:
        reader, writer = await self._connect()
        try:
            writer.write(self.request)
            await writer.drain()
        except (OSError, ConnectionError):
            log.error("send handshake to remote server failed")
            writer.close()
            raise
        task = asyncio.get_running_loop().create_task(self._read_trust(reader))
        self._trust_readers.add(task)
        task.add_done_callback(self._trust_readers.discard)
        return writer

    async def _read_trust(self, reader: asyncio.StreamReader) -> None:
        buffer = b""
        try:
            while True:
                chunk = await reader.read(65536)
                if not chunk:
                    log.error("read from trust dns server failed")
                    break
                buffer += chunk
                while (packet := parse_udp_packet(buffer)) is not None:
                    buffer = buffer[packet.offset :]
                    try:
                        message = dns.message.from_wire(packet.payload)
                    except (dns.exception.DNSException, ValueError):
                        continue
                    await self._responses.put(message)
        except ProtocolError as err:
            log.error("invalid protocol close now: %s", err)
        except (OSError, ConnectionError) as err:
            log.error("read from trust dns server failed: %s", err)
        await self._responses.put(_Closed.TRUST)

    def _item(self, message: dns.message.Message) -> DnsItem:
        key = message_key(message)
        item = self._store.get(key)
        if item is None:
            item = self._store[key] = DnsItem(message)
        return item

    async def _handle_query(self, source: IpEndpoint, data: bytes) -> None:
        try:
            message = dns.message.from_wire(data)
        except (dns.exception.DNSException, ValueError):
            return
        if len(message.question) != 1:
            return
        if not await self._item(message).respond(self.local, source, message.id):
            return
        name = _name_text(message.question[0].name)
        if is_blocked(self.blocked_domains, name):
            header = encode_udp_header(self.trusted_addr, len(data))
            try:
                self._trust.write(header + data)
                await self._trust.drain()
            except (OSError, ConnectionError):
                self._trust.close()
        else:
            self._distrust.sendto(data, self.distrusted_addr)

    async def _handle_response(self, item: _Response) -> None:
        if item is _Closed.DISTRUST:
            self._distrust = await self._start_distrust()
        elif item is _Closed.TRUST:
            if self._trust is not None:
                self._trust.close()
            self._trust = await self._start_trust()
        elif item.question:
            await self._item(item).notify(item, self.local)

    async def run(self) -> None:
        """Serve queries until the local socket closes, then raise :class:`ConnectionError`."""
        loop = asyncio.get_running_loop()
        local_task: Optional[asyncio.Task] = None
        response_task: Optional[asyncio.Task] = None
        try:
            self._distrust = await self._start_distrust()
            self._trust = await self._start_trust()
            while True:
                if local_task is None:
                    local_task = loop.create_task(self.local.recv_from())
                if response_task is None:
                    response_task = loop.create_task(self._responses.get())
                done, _ = await asyncio.wait(
                    {local_task, response_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if response_task in done:
                    item = response_task.result()
                    response_task = None
                    await self._handle_response(item)
                if local_task in done:
                    task, local_task = local_task, None
                    try:
                        source, data = task.result()
                    except BrokenPipeError as err:
                        log.error("recv from local udp failed:%s", err)
                        raise ConnectionError("dns relay stopped: local socket closed") from err
                    await self._handle_query(source, data)
        finally:
            pending = [t for t in (local_task, response_task, *self._trust_readers) if t is not None]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            if self._distrust is not None:
                self._distrust.close()
            if self._trust is not None:
                self._trust.close()