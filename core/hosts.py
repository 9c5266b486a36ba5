import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterator, List, Mapping, Optional, Pattern, Tuple

from core.patterns import (
    PatternKind,
    RecordType,
    classify_pattern,
    compile_pattern,
    is_ipv6,
    match_exact,
    match_regex,
    match_wildcard,
    query_forms,
)
from utils.config import AddressList, HostValue, SingleAddress, TypedAddresses


logger = logging.getLogger("hostsd.hosts")


@dataclass(frozen=True)
class HostEntry:
    """A hosts pattern with its addresses. `compiled` is only set for regex entries."""
    domain: str
    ipv4: Tuple[str, ...] = ()
    ipv6: Tuple[str, ...] = ()
    kind: PatternKind = PatternKind.EXACT
    compiled: Optional[Pattern] = None

    def addresses_for(self, record_type: RecordType) -> Tuple[str, ...]:
        return self.ipv4 if record_type == RecordType.A else self.ipv6

    def matches(self, domain: str) -> bool:
        if self.kind is PatternKind.REGEX:
            return match_regex(domain, self.compiled)
        if self.kind is PatternKind.WILDCARD:
            return match_wildcard(domain, self.domain)
        return match_exact(domain, self.domain)


def _make_entry(raw_pattern: str, ipv4: Tuple[str, ...], ipv6: Tuple[str, ...]) -> Optional[HostEntry]:
    """Classify and build an entry; returns None when a regex pattern fails to compile."""
    pattern = raw_pattern.strip()
    kind = classify_pattern(pattern)
    compiled = None
    if kind is PatternKind.REGEX:
        try:
            compiled = compile_pattern(pattern)
        except re.error as e:
            logger.warning("Failed to compile regex hosts pattern %s: %s", pattern, e)
            return None
    return HostEntry(domain=pattern.lower(), ipv4=ipv4, ipv6=ipv6, kind=kind, compiled=compiled)


def split_by_family(addresses) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
    v4, v6 = [], []
    for addr in addresses:
        (v6 if is_ipv6(addr) else v4).append(addr)
    return tuple(v4), tuple(v6)


def resolve_value(value: HostValue) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
    """Return (ipv4, ipv6) for a decoded hosts value."""
    if isinstance(value, SingleAddress):
        return split_by_family([value.address] if value.address else [])
    if isinstance(value, AddressList):
        return split_by_family(value.addresses)
    if isinstance(value, TypedAddresses):
        return tuple(value.a), tuple(value.aaaa)
    return (), ()


class HostTable:
    """Immutable snapshot of the configured hosts patterns.

    Exact patterns are kept in a dict for direct lookup; wildcard and regex
    patterns are kept in configuration order and scanned after exact ones.
    """

    def __init__(self, entries: List[HostEntry]):
        exact: Dict[str, HostEntry] = {}
        patterns = []
        for entry in entries:
            if entry.kind is PatternKind.EXACT:
                exact[entry.domain] = entry
            else:
                patterns.append(entry)
        self._exact = exact
        self._patterns = tuple(patterns)
        self._entries = tuple(entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[HostEntry]:
        return iter(self._entries)

    def lookup(self, domain: str, record_type: RecordType) -> Optional[Tuple[str, ...]]:
        """Return the addresses of the requested family for domain, or None if nothing matches."""
        for form in query_forms(domain):
            entry = self._exact.get(form)
            if entry is not None:
                addrs = entry.addresses_for(record_type)
                if addrs:
                    return addrs
        for entry in self._patterns:
            if entry.matches(domain):
                addrs = entry.addresses_for(record_type)
                if addrs:
                    return addrs
        return None


def build_host_table(hosts: Mapping[str, HostValue]) -> HostTable:
    entries = []
    seen = set()
    for raw_pattern, value in hosts.items():
        key = raw_pattern.strip().lower()
        if not key or key in seen:
            continue
        ipv4, ipv6 = resolve_value(value)
        if not ipv4 and not ipv6:
            continue
        entry = _make_entry(raw_pattern, ipv4, ipv6)
        if entry is None:
            continue
        seen.add(key)
        entries.append(entry)
    logger.debug("Built hosts table with %d entries", len(entries))
    return HostTable(entries)


# ---------- system hosts ----------

class SystemHostsTable:
    """Single-address-per-domain view of a parsed hosts file."""

    def __init__(self, entries: List[HostEntry]):
        self._entries = tuple(entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[HostEntry]:
        return iter(self._entries)

    @staticmethod
    def _address(entry: HostEntry) -> str:
        return (entry.ipv4 or entry.ipv6)[0]

    def _accepts(self, entry: HostEntry, record_type: RecordType) -> bool:
        return is_ipv6(self._address(entry)) == (record_type == RecordType.AAAA)

    def lookup(self, domain: str, record_type: RecordType) -> Optional[str]:
        forms = query_forms(domain)
        logger.debug("Looking up %s in system hosts (type %s, %d entries)", forms[1], record_type.name, len(self._entries))
        for entry in self._entries:
            if entry.kind is PatternKind.EXACT and entry.matches(domain):
                if self._accepts(entry, record_type):
                    logger.debug("Exact system hosts match: %s -> %s", entry.domain, self._address(entry))
                    return self._address(entry)
                logger.debug("System hosts address family mismatch for %s: %s", entry.domain, self._address(entry))
        for entry in self._entries:
            if entry.kind is PatternKind.EXACT:
                continue
            if entry.matches(domain) and self._accepts(entry, record_type):
                logger.debug("%s system hosts match: pattern=%s, domain=%s", entry.kind.value.capitalize(), entry.domain, forms[0])
                return self._address(entry)
        return None


def split_hosts_key(key: str) -> str:
    """'frontend:4' -> 'frontend'; keys without a type suffix are returned as is."""
    idx = key.rfind(':')
    if idx > 0:
        return key[:idx]
    return key


def build_system_hosts(mapping: Mapping[str, str]) -> SystemHostsTable:
    """Build the system hosts table from 'domain[:type]' -> address pairs. First domain seen wins."""
    entries = []
    seen = set()
    for key, address in mapping.items():
        raw_domain = split_hosts_key(key).strip()
        if not raw_domain:
            continue
        domain = raw_domain.lower()
        if domain in seen:
            continue
        address = (address or '').strip()
        if not address:
            continue
        seen.add(domain)
        ipv4, ipv6 = split_by_family([address])
        entry = _make_entry(raw_domain, ipv4, ipv6)
        if entry is not None:
            entries.append(entry)
    logger.debug("Parsed %d unique entries from system hosts (total mappings: %d)", len(entries), len(mapping))
    return SystemHostsTable(entries)
