# tunproxy

Asyncio building blocks for a Trojan-protocol client. The client takes TCP
connections, UDP datagrams and DNS queries that were captured from a tunnel
device and relays them through a TLS proxy server.

## Modules

### `tunproxy.proto`

Encodes and parses the Trojan wire format.

- `encode_trojan_request(command, password, address)` builds a request
  header: the password bytes, CRLF, the command byte, the address, and CRLF.
  The password is used exactly as given. To get the hex digest that servers
  expect, use `tunproxy.client.digest_password`.
- `encode_address` and `parse_address` handle SOCKS5-style addresses.
  - An IP endpoint is a `(host, port)` tuple.
  - A name is a `DomainAddress(host, port)`.
  - A domain field that holds an IP literal is parsed as an IP endpoint.
- `encode_udp_header(address, length)` builds the header of a UDP-associate
  frame.
- `parse_udp_packet(buffer)` parses the frame at the start of `buffer`.
  - It returns a `UdpPacket` with `address`, `length`, `offset` and `payload`.
    `offset` is the number of bytes the frame takes up.
  - It returns `None` when more bytes are needed.
  - It raises `ProtocolError` for malformed data, payloads over 1450 bytes,
    and domain addresses.
- The constants `CONNECT`, `PING` and `UDP_ASSOCIATE` are the command codes.

### `tunproxy.domains`

Holds client settings and the blocked-domain set.

- `Options` is a dataclass of client settings: hostname, password, port, MTU,
  DNS servers, log level and others.
- `DomainContext` holds the set of blocked domains.
  - `add_domain` and `remove_domain` record the user's changes as JSON lists
    in a store.
  - `merge_domains` applies the stored changes and drops entries that change
    nothing.
  - `search_domain` returns up to ten matching domains in sorted order.
- There are two stores:
  - `MemoryStore` keeps values in memory.
  - `FileStore` keeps all keys in one JSON object in a file, and writes it
    atomically.
- `parse_domain_list(text)` reads one domain per line and skips blank lines.

### `tunproxy.filter`

Decides which destinations are intercepted, and tracks traffic and buffers.

- `is_private_v4` is true for reserved, private, loopback, link-local,
  multicast and broadcast IPv4 ranges, and for every IPv6 address.
- `AddressFilter.allowed(address, port)` makes the decision:
  - port 0 and black-listed addresses are refused;
  - white-listed addresses are accepted;
  - private addresses are accepted only when `allow_private` is set.
- `TrafficMeter` counts received and sent bytes. `calculate_speed()` returns
  the rates in KiB/s since the last call and then resets the counters.
- `BufferSizes` holds the TCP and UDP buffer sizes and the channel size. None
  of them drops below the floor set by the MTU, and the channel size only
  grows.

### `tunproxy.streams`

Stream types backed by `asyncio.Queue`. A device side feeds them and reads
from them.

- TCP:
  - `TcpStream` splits into `TcpReadHalf` and `TcpWriteHalf` with
    `into_split()`.
  - An empty write, which `shutdown()` sends, asks the device to close the
    connection.
- UDP:
  - `UdpSocket.recv_from()` returns `(source, data)`. It raises
    `BrokenPipeError` once the socket is closed.
  - `UdpSocket.writer()` gives a `UdpWriteHalf` for sending replies.

### `tunproxy.client`

General helpers.

- `digest_password` returns the SHA-224 hex digest of a password.
- `speed_and_unit` and `format_speed_message` format speed reports in KB or
  MB per second.
- `show_info(level)` is true for the levels `"Debug"`, `"Info"` and
  `"Trace"`.
- `resolve(name, dns_server, timeout=5.0)` looks up A records at a plain UDP
  DNS server.
  - It raises `dns.exception.Timeout` when no answer arrives in time.
  - It raises `dns.exception.DNSException` when the response id does not
    match.
- `create_ssl_context()` returns a client TLS context that uses the system's
  trusted roots.
- `open_tls_connection` connects to the proxy server over TLS and returns the
  stream reader and writer.

### `tunproxy.dns`

Splits DNS traffic between two resolvers.

- `DnsRelay.run()` serves queries that arrive on a device `UdpSocket`.
  - Answers are cached per question, using `DnsItem`, until their TTL
    expires.
  - A name on the blocked list, or under a blocked parent domain (see
    `is_blocked`), is sent through the proxy tunnel to the trusted resolver.
  - Every other name goes over UDP to the untrusted resolver.
  - The upstream links are reopened when they close.
  - `run()` raises `ConnectionError` when the local socket closes.
- `message_key` returns the cache key: the question name and type.

### `tunproxy.relay`

Moves traffic between the device and the proxy server.

- `start_tcp` relays one accepted `TcpStream`.
  - It sends a Trojan CONNECT header over a TLS connection to the proxy, then
    copies data in both directions.
  - Connections to the proxy server's own address are passed straight
    through over plain TCP.
- `tcp_local_to_remote` and `tcp_remote_to_local` are the two copy
  directions.
- `UdpDispatcher` handles UDP.
  - Each local client gets its own UDP-associate tunnel.
  - Replies are routed back through the `UdpWriteHalf` registered for each
    destination.
- `start_udp` feeds a device `UdpSocket` into the dispatcher until the socket
  closes or stays idle for 120 seconds.

## What the package does not do

There is no tunnel device or TCP/IP stack here. Nothing reads IP packets or
creates `TcpStream` and `UdpSocket` objects from them. The caller supplies
the queues.

There is no command-line program, no main loop that connects all the pieces,
and no user interface. Settings in `Options` are not read from anywhere by
the package itself.

## Install

```
pip install .
```

For the tests:

```
pip install ".[test]"
pytest
```

## Example

```python
from tunproxy.client import digest_password
from tunproxy.proto import CONNECT, encode_trojan_request, encode_udp_header, parse_udp_packet

password = "password"
header = encode_trojan_request(CONNECT, digest_password(password), ("93.184.216.34", 443))

frame = encode_udp_header(("8.8.8.8", 53), 5) + b"hello"
packet = parse_udp_packet(frame)
print(packet.address, packet.payload, packet.offset)  # ('8.8.8.8', 53) b'hello' 18
```