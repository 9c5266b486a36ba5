import ipaddress
import logging
from typing import Dict, Iterable


logger = logging.getLogger("hostsd.hostsfile")


def parse_hosts_lines(lines: Iterable[str]) -> Dict[str, str]:
    """Parse hosts-format lines into a 'name:4' / 'name:6' -> IP mapping.

    Each line is `IP name [alias...]`; '#' starts a comment. The first address
    seen for a given name and family is kept.
    """
    mapping: Dict[str, str] = {}
    for line in lines:
        line = line.split('#', 1)[0].strip()
        if not line:
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        ip = parts[0]
        try:
            version = ipaddress.ip_address(ip.split('%', 1)[0]).version
        except ValueError:
            logger.debug("Skipping hosts line without a valid address: %s", line)
            continue
        for name in parts[1:]:
            key = f"{name}:{version}"
            if key not in mapping:
                mapping[key] = ip
    return mapping


def parse_hosts_file(path: str) -> Dict[str, str]:
    """Read and parse a hosts file. OSError propagates to the caller."""
    with open(path, 'r', encoding='utf-8', errors='ignore') as f:
        mapping = parse_hosts_lines(f)
    logger.debug("Read %d mappings from hosts file %s", len(mapping), path)
    return mapping
