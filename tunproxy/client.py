"""Client helpers: password digest, speed reporting, plain DNS lookup and TLS connections."""

from __future__ import annotations

import asyncio
import hashlib
import ipaddress
import logging
import ssl
from typing import Optional

import dns.exception
import dns.message
import dns.rdatatype

from .proto import IpEndpoint

log = logging.getLogger(__name__)

RESOLVE_ID = 1
RESOLVE_TIMEOUT = 5.0
_INFO_LEVELS = frozenset({"Debug", "Info", "Trace"})


def digest_password(password: str) -> str:
    """Return the hex SHA-224 digest the server expects in place of the password."""
    return hashlib.sha224(password.encode("utf-8")).hexdigest()


def speed_and_unit(speed: float) -> tuple[float, str]:
    """Scale a speed given in KB/s to MB/s when it reaches 1024."""
    if speed >= 1024.0:
        return speed / 1024.0, "MB"
    return speed, "KB"


def format_speed_message(rx_speed: float, tx_speed: float) -> str:
    """Build the status line shown to the user for the current transfer rates."""
    rx, rx_unit = speed_and_unit(rx_speed)
    tx, tx_unit = speed_and_unit(tx_speed)
    return f"上行速度:{rx:.1f}{rx_unit}/s, 下行速度:{tx:.1f}{tx_unit}/s"


def show_info(level: str) -> bool:
    """Tell whether packet details should be logged at this log level."""
    return level in _INFO_LEVELS


class _ResolveProtocol(asyncio.DatagramProtocol):
    def __init__(self, future: "asyncio.Future[bytes]"):
        self._future = future

    def datagram_received(self, data: bytes, addr) -> None:
        if not self._future.done():
            self._future.set_result(data)

    def error_received(self, exc: Exception) -> None:
        if not self._future.done():
            self._future.set_exception(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if not self._future.done():
            self._future.set_exception(exc or ConnectionError("dns socket closed"))


async def resolve(name: str, dns_server: IpEndpoint, timeout: float = RESOLVE_TIMEOUT) -> list[str]:
    """Look up the A records of ``name`` at the DNS server ``(host, port)``.

    Raises :class:`dns.exception.Timeout` when no answer arrives in time and
    :class:`dns.exception.DNSException` when the answer does not match the query.
    """
    query = dns.message.make_query(name, dns.rdatatype.A)
    query.id = RESOLVE_ID
    wire = query.to_wire()

    host, port = dns_server[0], dns_server[1]
    bind_host = "0.0.0.0" if ipaddress.ip_address(host).version == 4 else "::"
    loop = asyncio.get_running_loop()
    future: asyncio.Future[bytes] = loop.create_future()
    transport, _ = await loop.create_datagram_endpoint(
        lambda: _ResolveProtocol(future), local_addr=(bind_host, 0)
    )
    try:
        transport.sendto(wire, (host, port))
        try:
            data = await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            log.error("dns query timeout")
            raise dns.exception.Timeout(timeout=timeout) from None
    finally:
        transport.close()

    response = dns.message.from_wire(data)
    if response.id != RESOLVE_ID:
        log.error("dns response id not match")
        raise dns.exception.DNSException("dns response id does not match the query")
    return [
        rdata.address
        for rrset in response.answer
        if rrset.rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA)
        for rdata in rrset
    ]


def create_ssl_context() -> ssl.SSLContext:
    """Client TLS context with safe defaults and the system's trusted roots."""
    return ssl.create_default_context(ssl.Purpose.SERVER_AUTH)


async def open_tls_connection(
    ssl_context: ssl.SSLContext, server_addr: IpEndpoint, server_name: str
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Connect to the proxy server over TLS, verifying it as ``server_name``."""
    return await asyncio.open_connection(
        server_addr[0], server_addr[1], ssl=ssl_context, server_hostname=server_name
    )