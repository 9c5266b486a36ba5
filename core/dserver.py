import asyncio
import logging
import ssl
from typing import Awaitable, Callable, List, Optional

import dns.exception
import dns.flags
import dns.message
import dns.name
import dns.rcode
import dns.rdata
import dns.rdataclass
import dns.rdatatype
import dns.rrset

from core.patterns import RecordType
from utils.config import ServerSettings


ResolveCallback = Callable[[str, RecordType], Awaitable[List[str]]]

QUERY_TYPES = {
    dns.rdatatype.A: RecordType.A,
    dns.rdatatype.AAAA: RecordType.AAAA,
}

logger = logging.getLogger("hostsd.server")


def _answer_rrset(qname: dns.name.Name, rdtype: int, ttl: int, addresses: List[str]) -> Optional[dns.rrset.RRset]:
    rrset = dns.rrset.RRset(qname, dns.rdataclass.IN, rdtype)
    for addr in addresses:
        try:
            rrset.add(dns.rdata.from_text(dns.rdataclass.IN, rdtype, addr), ttl)
        except (dns.exception.DNSException, ValueError) as e:
            logger.warning("Skipping invalid %s address %r for %s: %s", dns.rdatatype.to_text(rdtype), addr, qname, e)
    return rrset if len(rrset) else None


async def build_response(data: bytes, resolve: ResolveCallback, ttl: int) -> Optional[bytes]:
    """Answer one wire-format query. Returns None for input that is not a DNS query."""
    try:
        request = dns.message.from_wire(data)
    except dns.exception.DNSException as e:
        logger.debug("Dropping undecodable query: %s", e)
        return None

    response = dns.message.make_response(request)
    response.flags |= dns.flags.RA
    if not request.question:
        response.set_rcode(dns.rcode.FORMERR)
        return response.to_wire()

    question = request.question[0]
    record_type = QUERY_TYPES.get(question.rdtype)
    if record_type is None or question.rdclass != dns.rdataclass.IN:
        logger.debug("Unsupported query %s %s", question.name, dns.rdatatype.to_text(question.rdtype))
        response.set_rcode(dns.rcode.NOTIMP)
        return response.to_wire()

    hostname = question.name.to_text(omit_final_dot=True)
    try:
        addresses = await resolve(hostname, record_type)
    except Exception as e:
        logger.error("Error resolving %s (%s): %s", hostname, record_type.name, e)
        response.set_rcode(dns.rcode.SERVFAIL)
        return response.to_wire()

    rrset = _answer_rrset(question.name, question.rdtype, ttl, addresses or [])
    if rrset is not None:
        response.answer.append(rrset)
    return response.to_wire()


class UDPQueryProtocol(asyncio.DatagramProtocol):
    def __init__(self, resolve: ResolveCallback, ttl: int):
        self.resolve = resolve
        self.ttl = ttl
        self.transport = None

    def connection_made(self, transport):
        self.transport = transport
        logger.debug("UDP listener started")

    def datagram_received(self, data, addr):
        logger.debug(f"Received UDP DNS query from {addr}")
        asyncio.create_task(self._handle(data, addr))

    async def _handle(self, data: bytes, addr):
        try:
            response = await build_response(data, self.resolve, self.ttl)
            if response is None:
                return
            self.transport.sendto(response, addr)
            logger.debug(f"Sent UDP DNS response to {addr}")
        except Exception as e:
            logger.error(f"Error handling UDP DNS query from {addr}: {e}")


async def _stream_handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, resolve: ResolveCallback, ttl: int):
    """Serve length-prefixed queries on one TCP or DoT connection until the client closes it."""
    peer = writer.get_extra_info('peername')
    logger.debug(f"Accepted stream connection from {peer}")
    try:
        while True:
            try:
                length_bytes = await reader.readexactly(2)
            except asyncio.IncompleteReadError:
                break
            length = int.from_bytes(length_bytes, 'big')
            data = await reader.readexactly(length)
            response = await build_response(data, resolve, ttl)
            if response is None:
                break
            writer.write(len(response).to_bytes(2, 'big') + response)
            await writer.drain()
            logger.debug(f"Sent stream DNS response to {peer}")
    except Exception as e:
        logger.error(f"Error handling stream DNS query from {peer}: {e}")
    finally:
        try:
            writer.close()
            await writer.wait_closed()
        except (OSError, ssl.SSLError) as e:
            logger.debug(f"Error closing connection from {peer}: {e}")


def make_tls_context(cert_file: str, key_file: str) -> ssl.SSLContext:
    ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    ctx.load_cert_chain(cert_file, key_file)
    return ctx


async def run_server(settings: ServerSettings, resolve: ResolveCallback):
    """Serve DNS on UDP and TCP (and DoT when enabled) until cancelled."""
    loop = asyncio.get_running_loop()

    udp_transport, _ = await loop.create_datagram_endpoint(
        lambda: UDPQueryProtocol(resolve, settings.ttl),
        local_addr=(settings.host, settings.port)
    )
    logger.info(f"DNS UDP listener running on {settings.host}:{settings.port}")

    servers = []
    try:
        tcp_server = await asyncio.start_server(lambda r, w: _stream_handler(r, w, resolve, settings.ttl),
                                                settings.host, settings.port)
        servers.append(tcp_server)
        logger.info(f"DNS TCP listener running on {settings.host}:{settings.port}")

        if settings.dot_enabled:
            tls_ctx = make_tls_context(settings.tls_cert, settings.tls_key)
            dot_server = await asyncio.start_server(lambda r, w: _stream_handler(r, w, resolve, settings.ttl),
                                                    settings.host, settings.dot_port, ssl=tls_ctx)
            servers.append(dot_server)
            logger.info(f"DNS DoT listener running on {settings.host}:{settings.dot_port}")

        await asyncio.gather(*(s.serve_forever() for s in servers))
    finally:
        udp_transport.close()
        for s in servers:
            s.close()
            await s.wait_closed()
