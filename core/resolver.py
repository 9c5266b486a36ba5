import asyncio
import ipaddress
import logging
import socket
import ssl
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

import aiohttp
import dns.exception
import dns.message
import dns.rcode
import dns.rdatatype
from aioquic.asyncio.client import connect as quic_connect
from aioquic.asyncio.protocol import QuicConnectionProtocol
from aioquic.quic.configuration import QuicConfiguration
from aioquic.quic.events import QuicEvent, StreamDataReceived
from cachetools import TTLCache

from core.patterns import RecordType


DEFAULT_PORTS = {
    'udp': 53,
    'tcp': 53,
    'tls': 853,
    'https': 443,
    'quic': 853,
}

RDTYPES = {
    RecordType.A: dns.rdatatype.A,
    RecordType.AAAA: dns.rdatatype.AAAA,
}


class UpstreamError(Exception):
    """Raised when no upstream server produced a usable answer."""


def split_hostport(hostport: str, default_port: int = 53) -> Tuple[str, int]:
    """Split 'host:port' and handle IPv6 '[::1]:port' notation.

    Returns (host, port). A bare IPv6 literal ('::1') is returned with the default port.
    """
    if not hostport:
        return "", default_port
    host = hostport
    port = default_port
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError(f"invalid server address {hostport!r}")
        host = hostport[1:end]
        rest = hostport[end + 1:]
        if rest.startswith(":"):
            port = int(rest[1:])
    elif hostport.count(":") == 1:
        h, p = hostport.rsplit(":", 1)
        host = h
        port = int(p)
    return host, int(port)


def normalize_server_address(server: str) -> str:
    """Add the default DNS port to plain server addresses.

    '127.0.0.1' -> '127.0.0.1:53', '::1' -> '[::1]:53'. Scheme-prefixed
    addresses ('tls://1.1.1.1', 'https://...') are returned unchanged.
    """
    server = server.strip()
    if "://" in server:
        return server
    if server.startswith("["):
        return server if "]:" in server else f"{server}:53"
    if server.count(":") == 1:
        return server
    if ":" in server:
        return f"[{server}]:53"
    return f"{server}:53"


@dataclass(frozen=True)
class UpstreamServer:
    protocol: str
    host: str
    port: int
    url: str = ""

    def __str__(self) -> str:
        if self.protocol == 'https':
            return self.url
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{self.protocol}://{host}:{self.port}"


def parse_server(address: str) -> UpstreamServer:
    address = address.strip()
    if "://" not in address:
        host, port = split_hostport(normalize_server_address(address), DEFAULT_PORTS['udp'])
        return UpstreamServer('udp', host, port)
    parsed = urlparse(address)
    scheme = parsed.scheme.lower()
    if scheme not in DEFAULT_PORTS:
        raise ValueError(f"unsupported upstream protocol {scheme!r} in {address!r}")
    if not parsed.hostname:
        raise ValueError(f"missing host in upstream address {address!r}")
    port = parsed.port or DEFAULT_PORTS[scheme]
    if scheme == 'https':
        path = parsed.path if parsed.path not in ("", "/") else "/dns-query"
        netloc = parsed.netloc
        url = f"https://{netloc}{path}"
        if parsed.query:
            url += f"?{parsed.query}"
        return UpstreamServer(scheme, parsed.hostname, port, url)
    return UpstreamServer(scheme, parsed.hostname, port)


def extract_addresses(response: dns.message.Message, rdtype: int) -> List[str]:
    """Collect A/AAAA addresses of the requested type from the answer section, in order."""
    addresses = []
    for rrset in response.answer:
        if rrset.rdtype != rdtype:
            continue
        for rdata in rrset:
            addresses.append(rdata.address)
    return addresses


class _DoQClientProtocol(QuicConnectionProtocol):
    """Collects one DNS response per QUIC stream."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._buffers: Dict[int, bytearray] = {}
        self._waiters: Dict[int, asyncio.Future] = {}

    async def query(self, data: bytes) -> bytes:
        stream_id = self._quic.get_next_available_stream_id()
        waiter = asyncio.get_running_loop().create_future()
        self._buffers[stream_id] = bytearray()
        self._waiters[stream_id] = waiter
        self._quic.send_stream_data(stream_id, len(data).to_bytes(2, "big") + data, end_stream=True)
        self.transmit()
        return await asyncio.shield(waiter)

    def quic_event_received(self, event: QuicEvent) -> None:
        if isinstance(event, StreamDataReceived):
            buf = self._buffers.get(event.stream_id)
            if buf is None:
                return
            buf.extend(event.data)
            if event.end_stream:
                waiter = self._waiters.pop(event.stream_id)
                del self._buffers[event.stream_id]
                if not waiter.done():
                    waiter.set_result(bytes(buf))


class UpstreamClient:
    """Async DNS client querying upstream servers over UDP/TCP/DoT/DoH/DoQ.

    Servers are tried in the configured order; the first server that returns
    a valid response wins. Each attempt is bounded by `timeout` seconds.

    Logging:
      DEBUG logs cover each attempt and the hostname resolution of upstream
      servers; a WARNING is logged for every failed server.
    """

    def __init__(self,
                 servers: Iterable[str],
                 timeout: float = 5.0,
                 host_cache_ttl: int = 300,
                 host_cache_max_size: int = 256):
        self.servers = [parse_server(s) for s in servers]
        if not self.servers:
            raise ValueError("at least one upstream server is required")
        self.timeout = float(timeout)
        self.logger = logging.getLogger("hostsd.upstream")
        # upstream server hostname -> IP
        self._host_cache = TTLCache(maxsize=host_cache_max_size, ttl=host_cache_ttl)

    async def lookup(self, domain: str, record_type: RecordType) -> List[str]:
        """Return the addresses of record_type for domain. Raises UpstreamError when every server fails."""
        rdtype = RDTYPES[RecordType(record_type)]
        last_exc: Optional[BaseException] = None
        for server in self.servers:
            try:
                self.logger.debug("querying %s for %s (%s)", server, domain, dns.rdatatype.to_text(rdtype))
                start = time.time()
                response = await asyncio.wait_for(self.query(server, domain, rdtype), timeout=self.timeout)
                self.logger.debug("%s answered in %.3fs", server, time.time() - start)
            except asyncio.TimeoutError as e:
                last_exc = e
                self.logger.warning("timeout querying %s for %s", server, domain)
                continue
            except (OSError, EOFError, ssl.SSLError, dns.exception.DNSException, aiohttp.ClientError, UpstreamError) as e:
                last_exc = e
                self.logger.warning("upstream %s failed for %s: %s", server, domain, e)
                continue
            rcode = response.rcode()
            if rcode not in (dns.rcode.NOERROR, dns.rcode.NXDOMAIN):
                last_exc = UpstreamError(f"{server} returned {dns.rcode.to_text(rcode)}")
                self.logger.warning("upstream %s returned %s for %s", server, dns.rcode.to_text(rcode), domain)
                continue
            return extract_addresses(response, rdtype)
        raise UpstreamError(f"all upstream servers failed for {domain}: {last_exc}") from last_exc

    async def query(self, server: UpstreamServer, domain: str, rdtype: int) -> dns.message.Message:
        """Send one query to one server and return the decoded response."""
        request = dns.message.make_query(domain, rdtype)
        if server.protocol == 'quic':
            # DoQ requires message id 0
            request.id = 0
        data = request.to_wire()
        proto = server.protocol
        if proto == "udp":
            wire = await self._forward_udp(server, data)
        elif proto == "tcp":
            wire = await self._forward_tcp(server, data)
        elif proto == "tls":
            wire = await self._forward_tls(server, data)
        elif proto == "https":
            wire = await self._forward_https(server, data)
        elif proto == "quic":
            wire = await self._forward_quic(server, data)
        else:
            raise ValueError(f"Unsupported protocol {proto}")
        response = dns.message.from_wire(wire)
        if not request.is_response(response):
            raise UpstreamError(f"{server} sent a response that does not match the query")
        return response

    # --- forwarding implementations ------------------------------------------------

    async def _forward_udp(self, server: UpstreamServer, data: bytes) -> bytes:
        resolved = await self._resolve_upstream_ip(server.host)
        family = socket.AF_INET6 if self._is_ipv6_address(resolved) else socket.AF_INET
        loop = asyncio.get_running_loop()
        on_response = loop.create_future()

        class _Proto(asyncio.DatagramProtocol):
            def connection_made(self, transport):
                try:
                    transport.sendto(data)
                except OSError as e:
                    if not on_response.done():
                        on_response.set_exception(e)

            def datagram_received(self, data, addr):
                if not on_response.done():
                    on_response.set_result(data)

            def error_received(self, exc):
                if not on_response.done():
                    on_response.set_exception(exc)

            def connection_lost(self, exc):
                if exc and not on_response.done():
                    on_response.set_exception(exc)

        transport, _ = await loop.create_datagram_endpoint(_Proto, remote_addr=(resolved, server.port), family=family)
        try:
            return await on_response
        finally:
            transport.close()

    async def _exchange_stream(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, data: bytes) -> bytes:
        try:
            writer.write(len(data).to_bytes(2, "big") + data)
            await writer.drain()
            length_bytes = await reader.readexactly(2)
            length = int.from_bytes(length_bytes, "big")
            return await reader.readexactly(length)
        finally:
            writer.close()
            await writer.wait_closed()

    async def _forward_tcp(self, server: UpstreamServer, data: bytes) -> bytes:
        resolved = await self._resolve_upstream_ip(server.host)
        reader, writer = await asyncio.open_connection(resolved, server.port)
        return await self._exchange_stream(reader, writer, data)

    async def _forward_tls(self, server: UpstreamServer, data: bytes) -> bytes:
        resolved = await self._resolve_upstream_ip(server.host)
        ssl_ctx = ssl.create_default_context()
        reader, writer = await asyncio.open_connection(resolved, server.port, ssl=ssl_ctx, server_hostname=server.host)
        return await self._exchange_stream(reader, writer, data)

    async def _forward_https(self, server: UpstreamServer, data: bytes) -> bytes:
        headers = {
            "Accept": "application/dns-message",
            "Content-Type": "application/dns-message",
            "User-Agent": "hostsd/1.0",
        }
        async with aiohttp.ClientSession() as session:
            async with session.post(server.url, data=data, headers=headers) as resp:
                resp.raise_for_status()
                content_type = resp.headers.get("Content-Type", "")
                if "application/dns-message" not in content_type.lower():
                    self.logger.debug("DoH response content-type %r from %s; continuing", content_type, server)
                return await resp.read()

    async def _forward_quic(self, server: UpstreamServer, data: bytes) -> bytes:
        resolved = await self._resolve_upstream_ip(server.host)
        configuration = QuicConfiguration(is_client=True, alpn_protocols=["doq"], verify_mode=ssl.CERT_REQUIRED,
                                          server_name=server.host)
        async with quic_connect(resolved, server.port, configuration=configuration,
                                create_protocol=_DoQClientProtocol) as client:
            resp = await client.query(data)
        if len(resp) < 2:
            raise UpstreamError("Invalid DoQ response")
        resp_len = int.from_bytes(resp[:2], "big")
        return resp[2:2 + resp_len]

    # --- name resolution helpers --------------------------------------------------

    def _is_ipv6_address(self, addr: str) -> bool:
        try:
            return ipaddress.ip_address(addr).version == 6
        except ValueError:
            return False

    async def _resolve_upstream_ip(self, hostname: str) -> str:
        """Return a single IP address for an upstream server hostname, using the cache."""
        try:
            ipaddress.ip_address(hostname)
            return hostname
        except ValueError:
            pass
        cached = self._host_cache.get(hostname)
        if cached:
            self.logger.debug("resolved %s from cache -> %s", hostname, cached)
            return cached
        self.logger.debug("resolving upstream hostname: %s", hostname)
        infos = await asyncio.get_running_loop().getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
        for info in infos:
            addr = info[4][0]
            if addr:
                self._host_cache[hostname] = addr
                self.logger.debug("system resolver returned %s for %s", addr, hostname)
                return addr
        raise UpstreamError(f"Unable to resolve upstream hostname: {hostname}")
