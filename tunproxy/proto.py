"""Wire format of the Trojan protocol: request headers and UDP-associate frames."""

from __future__ import annotations

import ipaddress
import struct
from dataclasses import dataclass
from typing import Tuple, Union

CONNECT = 0x01
PING = 0x02
UDP_ASSOCIATE = 0x03
MAX_PACKET_SIZE = 1450

IPV4 = 0x01
DOMAIN = 0x03
IPV6 = 0x04

CRLF = b"\r\n"

IpEndpoint = Tuple[str, int]


class ProtocolError(ValueError):
    """Raised when bytes on the wire do not follow the protocol."""


@dataclass(frozen=True)
class DomainAddress:
    """A destination given by host name rather than IP address."""

    host: str
    port: int


Address = Union[IpEndpoint, DomainAddress]


@dataclass(frozen=True)
class UdpPacket:
    """One UDP-associate frame.

    ``offset`` is the number of bytes the whole frame occupies in the
    buffer it was parsed from.
    """

    address: IpEndpoint
    length: int
    offset: int
    payload: bytes


def _check_port(port: int) -> int:
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"port out of range: {port}")
    return port


def encode_address(address: Address) -> bytes:
    """Encode an address in SOCKS5 form: type byte, address, big-endian port."""
    if isinstance(address, DomainAddress):
        name = address.host.encode("utf-8")
        if len(name) > 0xFF:
            raise ValueError("domain name is longer than 255 bytes")
        return bytes([DOMAIN, len(name)]) + name + struct.pack("!H", _check_port(address.port))
    host, port = address[0], address[1]
    ip = ipaddress.ip_address(host)
    atyp = IPV4 if ip.version == 4 else IPV6
    return bytes([atyp]) + ip.packed + struct.pack("!H", _check_port(port))


def _u16(buffer: bytes) -> int:
    return (buffer[0] << 8) | buffer[1]


def parse_address(atyp: int, buffer: bytes) -> tuple[int, Address]:
    """Parse the address that follows the type byte ``atyp``.

    Returns the number of bytes consumed and the address. IP addresses come
    back as ``(host, port)``; a domain that is an IP literal is returned as
    an IP address too.
    """
    if atyp == IPV4:
        if len(buffer) < 6:
            raise ProtocolError("invalid ipv4 address")
        host = str(ipaddress.IPv4Address(bytes(buffer[:4])))
        return 6, (host, _u16(buffer[4:6]))
    if atyp == DOMAIN:
        if not buffer:
            raise ProtocolError("invalid domain address")
        length = buffer[0]
        if len(buffer) < length + 3:
            raise ProtocolError("invalid domain address")
        domain = bytes(buffer[1 : length + 1]).decode("utf-8", errors="replace")
        port = _u16(buffer[length + 1 : length + 3])
        try:
            ip = ipaddress.ip_address(domain)
        except ValueError:
            return length + 3, DomainAddress(domain, port)
        return length + 3, (str(ip), port)
    if atyp == IPV6:
        if len(buffer) < 18:
            raise ProtocolError("invalid ipv6 address")
        host = str(ipaddress.IPv6Address(bytes(buffer[:16])))
        return 18, (host, _u16(buffer[16:18]))
    raise ProtocolError(f"invalid address type: {atyp}")


def encode_trojan_request(command: int, password: Union[str, bytes], address: Address) -> bytes:
    """Build a Trojan request header: password, CRLF, command, address, CRLF."""
    raw = password.encode() if isinstance(password, str) else bytes(password)
    return raw + CRLF + bytes([command]) + encode_address(address) + CRLF


def encode_udp_header(address: Address, length: int) -> bytes:
    """Build the header that precedes a UDP payload of ``length`` bytes."""
    if not 0 <= length <= 0xFFFF:
        raise ValueError(f"udp payload length out of range: {length}")
    return encode_address(address) + struct.pack("!H", length) + CRLF


def parse_udp_packet(buffer: bytes) -> UdpPacket | None:
    """Parse one UDP-associate frame from the start of ``buffer``.

    Returns ``None`` when more data is needed and raises
    :class:`ProtocolError` when the data is malformed.
    """
    if len(buffer) < 11:
        return None
    atyp = buffer[0]
    rest = buffer[1:]
    size, address = parse_address(atyp, rest)
    rest = rest[size:]
    if len(rest) < 4:
        return None
    length = _u16(rest)
    if length > MAX_PACKET_SIZE:
        raise ProtocolError(f"udp packet size {length} is too long")
    if len(rest) < length + 4:
        return None
    if bytes(rest[2:4]) != CRLF:
        raise ProtocolError("expected CRLF after udp packet length")
    if isinstance(address, DomainAddress):
        raise ProtocolError("udp packet only accepts ip addresses")
    offset = 1 + size + 4 + length
    return UdpPacket(
        address=address,
        length=length,
        offset=offset,
        payload=bytes(rest[4 : 4 + length]),
    )