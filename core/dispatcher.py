import logging
import os
from dataclasses import dataclass
from logging.handlers import TimedRotatingFileHandler
from typing import List, Mapping, Optional, Protocol

from core.hosts import HostTable, SystemHostsTable, build_host_table, build_system_hosts
from core.patterns import RecordType
from utils.config import ResolutionConfig


CHANNEL_CONFIG = 'config.hosts'
CHANNEL_SYSTEM = 'system.hosts'
CHANNEL_UPSTREAM = 'upstream'


class Upstream(Protocol):
    async def lookup(self, domain: str, record_type: RecordType) -> List[str]:
        ...


@dataclass(frozen=True)
class ResolverContext:
    """Everything the dispatcher reads per query. Built once, never mutated."""
    config: Optional[ResolutionConfig] = None
    hosts: Optional[HostTable] = None
    system_hosts: Optional[SystemHostsTable] = None


def build_context(config: Optional[ResolutionConfig],
                  system_hosts_mapping: Optional[Mapping[str, str]] = None) -> ResolverContext:
    """Derive the host tables from a loaded config and a parsed hosts file (either may be absent)."""
    hosts = build_host_table(config.hosts) if config is not None else None
    system_hosts = build_system_hosts(system_hosts_mapping) if system_hosts_mapping else None
    return ResolverContext(config=config, hosts=hosts, system_hosts=system_hosts)


def setup_query_log(directory: str, backup_count: int = 7) -> logging.Logger:
    """Attach a midnight-rotated file handler for resolution events to the hostsd.queries logger."""
    os.makedirs(directory, exist_ok=True)
    qlog = logging.getLogger("hostsd.queries")
    qlog.setLevel(logging.INFO)
    if not any(isinstance(h, TimedRotatingFileHandler) for h in qlog.handlers):
        fh = TimedRotatingFileHandler(os.path.join(directory, "queries.log"), when="midnight", backupCount=backup_count)
        fh.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
        qlog.addHandler(fh)
    return qlog


class ResolutionDispatcher:
    """Three-tier resolution: config hosts, then system hosts, then upstream.

    A miss in the first two tiers (including a domain match without an address
    of the requested family) falls through to the next tier. The upstream
    result is returned as is and its errors propagate unchanged.
    """

    def __init__(self, context: ResolverContext, upstream: Upstream, query_logger: Optional[logging.Logger] = None):
        self._context = context
        self.upstream = upstream
        self.logger = logging.getLogger("hostsd.dispatcher")
        self._query_logger = query_logger

    @property
    def context(self) -> ResolverContext:
        return self._context

    def reload(self, context: ResolverContext) -> None:
        # single reference assignment: readers see the old or the new context, never a mix
        self._context = context
        self.logger.info("Resolver context reloaded (%d config hosts, %d system hosts)",
                         len(context.hosts or ()), len(context.system_hosts or ()))

    def _log_event(self, channel: str, hostname: str, record_type: RecordType, addresses) -> None:
        self.logger.info("[channel: %s] Resolved %s (%s) -> %s", channel, hostname, record_type.name, list(addresses))
        if self._query_logger:
            self._query_logger.info("%s\t%s\t%s\t%s", channel, hostname, record_type.name, ",".join(addresses))

    async def resolve(self, hostname: str, record_type: RecordType) -> List[str]:
        record_type = RecordType(record_type)
        ctx = self._context
        self.logger.debug("DNS query received: %s (type: %s, code: %d)", hostname, record_type.name, int(record_type))

        if ctx.hosts is not None:
            addrs = ctx.hosts.lookup(hostname, record_type)
            if addrs:
                self._log_event(CHANNEL_CONFIG, hostname, record_type, addrs)
                return list(addrs)
            self.logger.debug("No match found in config hosts for %s (%s)", hostname, record_type.name)
        else:
            self.logger.debug("Config hosts not available, skipping")

        if ctx.system_hosts:
            addr = ctx.system_hosts.lookup(hostname, record_type)
            if addr:
                self._log_event(CHANNEL_SYSTEM, hostname, record_type, [addr])
                return [addr]
            self.logger.debug("No match found in system hosts for %s (%s)", hostname, record_type.name)
        else:
            self.logger.debug("System hosts not enabled or empty, skipping")

        self.logger.debug("Querying upstream DNS servers for %s (%s)", hostname, record_type.name)
        try:
            addrs = await self.upstream.lookup(hostname, record_type)
        except Exception as e:
            self.logger.error("Failed to resolve %s (%s) from upstream: %s", hostname, record_type.name, e)
            raise
        if addrs:
            self._log_event(CHANNEL_UPSTREAM, hostname, record_type, addrs)
        else:
            self.logger.warning("No results found for %s (%s) from upstream", hostname, record_type.name)
        return addrs
