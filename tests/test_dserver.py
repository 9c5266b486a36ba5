"""
Tests for DNS query handling on the listener side
"""
import asyncio

import dns.flags
import dns.message
import dns.rcode
import dns.rdatatype
import pytest

from core.dserver import UDPQueryProtocol, _stream_handler, build_response
from core.patterns import RecordType
from core.resolver import UpstreamError


def make_resolve(answers=None, error=None):
    calls = []

    async def resolve(hostname, record_type):
        calls.append((hostname, record_type))
        if error is not None:
            raise error
        return (answers or {}).get((hostname, record_type), [])

    resolve.calls = calls
    return resolve


def query(name, rdtype="A"):
    return dns.message.make_query(name, rdtype)


class TestBuildResponse:

    @pytest.mark.asyncio
    async def test_a_answer(self):
        resolve = make_resolve({("api.test.com", RecordType.A): ["10.0.0.1", "10.0.0.2"]})
        request = query("api.test.com")
        wire = await build_response(request.to_wire(), resolve, 300)
        response = dns.message.from_wire(wire)
        assert request.is_response(response)
        assert response.rcode() == dns.rcode.NOERROR
        assert response.flags & dns.flags.RA
        rrset = response.answer[0]
        assert rrset.ttl == 300
        assert rrset.rdtype == dns.rdatatype.A
        assert sorted(r.address for r in rrset) == ["10.0.0.1", "10.0.0.2"]
        assert resolve.calls == [("api.test.com", RecordType.A)]

    @pytest.mark.asyncio
    async def test_aaaa_answer(self):
        resolve = make_resolve({("v6.test", RecordType.AAAA): ["2001:db8::1"]})
        wire = await build_response(query("v6.test", "AAAA").to_wire(), resolve, 60)
        response = dns.message.from_wire(wire)
        assert [r.address for r in response.answer[0]] == ["2001:db8::1"]

    @pytest.mark.asyncio
    async def test_no_addresses_is_empty_noerror(self):
        wire = await build_response(query("nothing.test").to_wire(), make_resolve(), 60)
        response = dns.message.from_wire(wire)
        assert response.rcode() == dns.rcode.NOERROR
        assert response.answer == []

    @pytest.mark.asyncio
    async def test_resolve_failure_is_servfail(self):
        resolve = make_resolve(error=UpstreamError("all upstream servers failed"))
        wire = await build_response(query("example.org").to_wire(), resolve, 60)
        assert dns.message.from_wire(wire).rcode() == dns.rcode.SERVFAIL

    @pytest.mark.asyncio
    async def test_unsupported_type_is_notimp(self):
        resolve = make_resolve()
        wire = await build_response(query("example.org", "MX").to_wire(), resolve, 60)
        assert dns.message.from_wire(wire).rcode() == dns.rcode.NOTIMP
        assert resolve.calls == []

    @pytest.mark.asyncio
    async def test_invalid_addresses_are_skipped(self):
        resolve = make_resolve({("mixed.test", RecordType.A): ["not-an-ip", "10.0.0.9"]})
        wire = await build_response(query("mixed.test").to_wire(), resolve, 60)
        response = dns.message.from_wire(wire)
        assert [r.address for r in response.answer[0]] == ["10.0.0.9"]

    @pytest.mark.asyncio
    async def test_garbage_is_dropped(self):
        assert await build_response(b"\x00\x01garbage", make_resolve(), 60) is None


class TestListeners:

    @pytest.mark.asyncio
    async def test_udp_protocol_replies(self):
        resolve = make_resolve({("udp.test", RecordType.A): ["192.0.2.1"]})
        loop = asyncio.get_running_loop()
        server_transport, _ = await loop.create_datagram_endpoint(
            lambda: UDPQueryProtocol(resolve, 30), local_addr=("127.0.0.1", 0))
        received = loop.create_future()

        class Client(asyncio.DatagramProtocol):
            def datagram_received(self, data, addr):
                received.set_result(data)

        port = server_transport.get_extra_info("sockname")[1]
        client_transport, _ = await loop.create_datagram_endpoint(Client, remote_addr=("127.0.0.1", port))
        try:
            request = query("udp.test")
            client_transport.sendto(request.to_wire())
            response = dns.message.from_wire(await asyncio.wait_for(received, 2))
            assert [r.address for r in response.answer[0]] == ["192.0.2.1"]
        finally:
            client_transport.close()
            server_transport.close()

    @pytest.mark.asyncio
    async def test_tcp_connection_serves_several_queries(self):
        resolve = make_resolve({("one.test", RecordType.A): ["192.0.2.1"], ("two.test", RecordType.A): ["192.0.2.2"]})
        server = await asyncio.start_server(lambda r, w: _stream_handler(r, w, resolve, 30), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            answers = []
            for name in ("one.test", "two.test"):
                data = query(name).to_wire()
                writer.write(len(data).to_bytes(2, "big") + data)
                await writer.drain()
                length = int.from_bytes(await reader.readexactly(2), "big")
                response = dns.message.from_wire(await reader.readexactly(length))
                answers.append(response.answer[0][0].address)
            writer.close()
            await writer.wait_closed()
            assert answers == ["192.0.2.1", "192.0.2.2"]
        finally:
            server.close()
            await server.wait_closed()
