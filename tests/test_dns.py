import asyncio

import dns.message
import dns.rrset
import pytest

from tunproxy.dns import DnsItem, DnsRelay, is_blocked, message_key
from tunproxy.proto import UDP_ASSOCIATE, encode_trojan_request, encode_udp_header, parse_udp_packet
from tunproxy.streams import UdpSocket

PEER = ("10.0.0.1", 53)


class _UdpServer(asyncio.DatagramProtocol):
    def __init__(self, handler):
        self.handler = handler
        self.requests = []
        self.transport = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.requests.append(data)
        reply = self.handler(data)
        if reply is not None:
            self.transport.sendto(reply, addr)


async def _start_udp_server(handler):
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        lambda: _UdpServer(handler), local_addr=("127.0.0.1", 0)
    )
    return transport, protocol, transport.get_extra_info("sockname")[:2]


def _answer(data, address, ttl=60):
    query = dns.message.from_wire(data)
    response = dns.message.make_response(query)
    response.answer.append(dns.rrset.from_text(query.question[0].name, ttl, "IN", "A", address))
    return response.to_wire()


def _query(name, message_id):
    query = dns.message.make_query(name, "A")
    query.id = message_id
    return query


def _response(query, address, ttl):
    response = dns.message.make_response(query)
    response.answer.append(dns.rrset.from_text(query.question[0].name, ttl, "IN", "A", address))
    return response


def _local():
    incoming = asyncio.Queue()
    outgoing = asyncio.Queue()
    return UdpSocket(PEER, incoming, outgoing), incoming, outgoing


async def _start_trust_server(request, frames, address):
    async def handle(reader, writer):
        try:
            header = await reader.readexactly(len(request))
            frames.append(("header", header))
            buffer = b""
            while True:
                chunk = await reader.read(4096)
                if not chunk:
                    break
                buffer += chunk
                while (packet := parse_udp_packet(buffer)) is not None:
                    buffer = buffer[packet.offset :]
                    frames.append(("frame", packet))
                    reply = _answer(packet.payload, address)
                    writer.write(encode_udp_header(packet.address, len(reply)) + reply)
                    await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[:2]


REQUEST = encode_trojan_request(UDP_ASSOCIATE, "0" * 56, ("0.0.0.0", 0))


def test_is_blocked_matches_parent_domains():
    blocked = {"google.com"}
    assert is_blocked(blocked, "google.com") is True
    assert is_blocked(blocked, "www.google.com.") is True
    assert is_blocked(blocked, "a.b.google.com") is True


def test_is_blocked_rejects_other_names():
    blocked = {"google.com"}
    assert is_blocked(blocked, "notgoogle.com") is False
    assert is_blocked(blocked, "google.org") is False
    assert is_blocked(blocked, "com") is False


def test_is_blocked_never_checks_top_level_label():
    assert is_blocked({"com"}, "google.com") is False
    assert is_blocked({"com"}, "com.") is False


def test_message_key():
    assert message_key(_query("example.com", 1)) == "example.com.|A"
    assert message_key(_query("example.com", 1)) == message_key(_query("example.com.", 9))


@pytest.mark.asyncio
async def test_respond_without_answer_queues_client():
    local, _, outgoing = _local()
    item = DnsItem(_query("example.com", 5))
    assert item.has_response() is False
    assert await item.respond(local, ("10.0.0.5", 1000), 5) is True
    assert item.clients == [(("10.0.0.5", 1000), 5)]
    assert outgoing.empty()


@pytest.mark.asyncio
async def test_notify_sends_to_every_waiting_client():
    local, _, outgoing = _local()
    query = _query("example.com", 5)
    item = DnsItem(query, clock=lambda: 0.0)
    item.add_client(("10.0.0.5", 1000), 11)
    item.add_client(("10.0.0.6", 1001), 22)
    response = _response(query, "192.0.2.1", 300)
    response.additional.append(dns.rrset.from_text("ns.example.com.", 60, "IN", "A", "192.0.2.53"))

    await item.notify(response, local)

    sent = [outgoing.get_nowait() for _ in range(2)]
    assert [s[0] for s in sent] == [("10.0.0.5", 1000), ("10.0.0.6", 1001)]
    assert all(s[1] == PEER for s in sent)
    messages = [dns.message.from_wire(s[2]) for s in sent]
    assert [m.id for m in messages] == [11, 22]
    assert all(m.additional == [] for m in messages)
    assert messages[0].answer[0][0].address == "192.0.2.1"
    assert item.clients == []
    assert item.has_response() is True
    assert item.expire == 300


@pytest.mark.asyncio
async def test_respond_from_cache_counts_down_ttl():
    now = [0.0]
    local, _, outgoing = _local()
    query = _query("example.com", 5)
    item = DnsItem(query, clock=lambda: now[0])
    await item.notify(_response(query, "192.0.2.1", 300), local)

    now[0] = 100.0
    assert await item.respond(local, ("10.0.0.5", 1000), 33) is False
    source, _, wire = outgoing.get_nowait()
    message = dns.message.from_wire(wire)
    assert source == ("10.0.0.5", 1000)
    assert message.id == 33
    assert message.answer[0].ttl == 200

    now[0] = 400.0
    assert await item.respond(local, ("10.0.0.5", 1000), 34) is True
    message = dns.message.from_wire(outgoing.get_nowait()[2])
    assert message.answer[0].ttl == 0


@pytest.mark.asyncio
async def test_relay_forwards_to_untrusted_and_caches():
    udp_transport, udp_protocol, udp_addr = await _start_udp_server(
        lambda data: _answer(data, "192.0.2.7")
    )
    frames = []
    server, server_addr = await _start_trust_server(REQUEST, frames, "192.0.2.9")
    local, incoming, outgoing = _local()
    relay = DnsRelay(
        local,
        None,
        server_addr,
        "localhost",
        REQUEST,
        ("192.0.2.53", 53),
        udp_addr,
        {"blocked.test"},
        connect=lambda: asyncio.open_connection(*server_addr),
    )
    task = asyncio.create_task(relay.run())
    try:
        incoming.put_nowait((("10.0.0.5", 4000), _query("example.org", 77).to_wire()))
        source, peer, wire = await asyncio.wait_for(outgoing.get(), 5)
        message = dns.message.from_wire(wire)
        assert source == ("10.0.0.5", 4000)
        assert peer == PEER
        assert message.id == 77
        assert [r.address for r in message.answer[0]] == ["192.0.2.7"]

        incoming.put_nowait((("10.0.0.5", 4001), _query("example.org", 78).to_wire()))
        source, _, wire = await asyncio.wait_for(outgoing.get(), 5)
        cached = dns.message.from_wire(wire)
        assert source == ("10.0.0.5", 4001)
        assert cached.id == 78
        assert cached.answer[0].ttl <= 60
        assert len(udp_protocol.requests) == 1
        assert all(kind == "header" for kind, _ in frames)

        incoming.put_nowait(None)
        with pytest.raises(ConnectionError):
            await asyncio.wait_for(task, 5)
    finally:
        task.cancel()
        udp_transport.close()
        server.close()


@pytest.mark.asyncio
async def test_relay_sends_blocked_names_through_tunnel():
    udp_transport, udp_protocol, udp_addr = await _start_udp_server(
        lambda data: _answer(data, "192.0.2.7")
    )
    frames = []
    server, server_addr = await _start_trust_server(REQUEST, frames, "192.0.2.9")
    trusted_addr = ("192.0.2.53", 53)
    local, incoming, outgoing = _local()
    relay = DnsRelay(
        local,
        None,
        server_addr,
        "localhost",
        REQUEST,
        trusted_addr,
        udp_addr,
        {"blocked.test"},
        connect=lambda: asyncio.open_connection(*server_addr),
    )
    task = asyncio.create_task(relay.run())
    try:
        query = _query("www.blocked.test", 91)
        incoming.put_nowait((("10.0.0.5", 5000), query.to_wire()))
        source, _, wire = await asyncio.wait_for(outgoing.get(), 5)
        message = dns.message.from_wire(wire)
        assert source == ("10.0.0.5", 5000)
        assert message.id == 91
        assert [r.address for r in message.answer[0]] == ["192.0.2.9"]

        assert frames[0] == ("header", REQUEST)
        packet = frames[1][1]
        assert packet.address == trusted_addr
        assert dns.message.from_wire(packet.payload).id == 91
        assert udp_protocol.requests == []

        incoming.put_nowait(None)
        with pytest.raises(ConnectionError):
            await asyncio.wait_for(task, 5)
    finally:
        task.cancel()
        udp_transport.close()
        server.close()