"""Destination filtering, traffic accounting and buffer sizing for the tun device."""

from __future__ import annotations

import ipaddress
import time
from typing import Callable, Union

IpLike = Union[str, ipaddress.IPv4Address, ipaddress.IPv6Address]

DEFAULT_CHANNEL_BUFFER = 1024
RX_BUFFER_PACKETS = 128


def _ip(address: IpLike) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
    if isinstance(address, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return address
    return ipaddress.ip_address(address)


def is_private_v4(address: IpLike) -> bool:
    """Tell whether an address must not be proxied unless private traffic is allowed.

    Every IPv6 address counts as private here; IPv4 addresses are private when
    they fall in a reserved, local, multicast or broadcast range.
    """
    ip = _ip(address)
    if ip.version != 4:
        return True
    a, b, _, _ = ip.packed
    return (
        a == 0  # 0.0.0.0/8
        or a == 10  # 10.0.0.0/8
        or a == 127  # 127.0.0.0/8
        or (a == 169 and b == 254)  # 169.254.0.0/16
        or (a == 172 and b & 0xF0 == 16)  # 172.16.0.0/12
        or (a == 192 and b == 168)  # 192.168.0.0/16
        or a & 0xF0 == 224  # 224.0.0.0/4
        or a & 0xF0 == 240  # 240.0.0.0/4
        or ip.packed == b"\xff\xff\xff\xff"
    )


class AddressFilter:
    """Decides which destinations the device accepts connections for."""

    def __init__(self, allow_private: bool = False):
        self.allow_private = allow_private
        self.black_ips: set[ipaddress.IPv4Address | ipaddress.IPv6Address] = set()
        self.white_ips: set[ipaddress.IPv4Address | ipaddress.IPv6Address] = set()

    def add_black_ip(self, address: IpLike) -> None:
        self.black_ips.add(_ip(address))

    def add_white_ip(self, address: IpLike) -> None:
        self.white_ips.add(_ip(address))

    def set_allow_private(self, allow: bool) -> None:
        self.allow_private = allow

    def allowed(self, address: IpLike, port: int) -> bool:
        """Port 0 and blacklisted addresses are refused; whitelisted ones always pass."""
        ip = _ip(address)
        if port == 0 or ip in self.black_ips:
            return False
        if ip in self.white_ips:
            return True
        return self.allow_private or not is_private_v4(ip)


class TrafficMeter:
    """Counts bytes in each direction and reports the rate since the last report."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.rx_bytes = 0
        self.tx_bytes = 0
        self._begin = clock()

    def add_rx(self, count: int) -> None:
        self.rx_bytes += count

    def add_tx(self, count: int) -> None:
        self.tx_bytes += count

    @staticmethod
    def _rate(count: int, elapsed: float) -> float:
        if elapsed > 0:
            return count / elapsed / 1024.0
        return float("nan") if count == 0 else float("inf")

    def calculate_speed(self) -> tuple[float, float]:
        """Return (rx, tx) in KiB per second and restart the measurement."""
        now = self._clock()
        elapsed = now - self._begin
        speeds = (self._rate(self.rx_bytes, elapsed), self._rate(self.tx_bytes, elapsed))
        self.rx_bytes = 0
        self.tx_bytes = 0
        self._begin = now
        return speeds


class BufferSizes:
    """Socket and channel buffer sizes, never below the floors the MTU sets."""

    def __init__(self, mtu: int, channel: int = DEFAULT_CHANNEL_BUFFER):
        if mtu <= 0:
            raise ValueError(f"mtu must be positive: {mtu}")
        self.mtu = mtu
        self.channel = channel
        self.tcp_rx = mtu * RX_BUFFER_PACKETS
        self.tcp_tx = mtu * channel
        self.udp_rx = mtu * RX_BUFFER_PACKETS
        self.udp_tx = mtu * channel

    @property
    def _rx_floor(self) -> int:
        return self.mtu * RX_BUFFER_PACKETS

    @property
    def _tx_floor(self) -> int:
        return self.mtu * self.channel

    @property
    def udp_rx_packets(self) -> int:
        return self.udp_rx // self.mtu

    @property
    def udp_tx_packets(self) -> int:
        return self.udp_tx // self.mtu

    def resize_tcp(self, rx: int, tx: int) -> None:
        self.tcp_rx = max(rx, self._rx_floor)
        self.tcp_tx = max(tx, self._tx_floor)

    def resize_channel(self, channel: int) -> None:
        """Grow the channel size (it never shrinks) and raise the buffer floors with it."""
        self.channel = max(channel, self.channel)
        self.resize_tcp(self.tcp_rx, self.tcp_tx)
        self.resize_udp(self.udp_rx, self.udp_tx)

    def resize_udp(self, rx: int, tx: int) -> None:
        self.udp_rx = max(rx, self._rx_floor)
        self.udp_tx = max(tx, self._tx_floor)