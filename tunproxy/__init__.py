"""Asyncio pieces of a Trojan-protocol client: wire format, domain lists, filtering, streams, DNS and relaying."""

__version__ = "0.1.0"

__all__ = ["client", "dns", "domains", "filter", "proto", "relay", "streams"]