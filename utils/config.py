import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

import yaml


DEFAULT_HOST = '0.0.0.0'
DEFAULT_PORT = 53
DEFAULT_TTL = 500
DEFAULT_DOT_PORT = 853
DEFAULT_UPSTREAM_TIMEOUT = '5s'
DEFAULT_UPSTREAM_SERVERS = ('114.114.114.114:53',)
DEFAULT_SYSTEM_HOSTS_FILE = '/etc/hosts'
DEFAULT_QUERY_LOG_DIR = '/var/log/hostsd'


class ConfigError(Exception):
    pass


# ---------- hosts values ----------

@dataclass(frozen=True)
class SingleAddress:
    """`example.com: 1.2.3.4` - family decided by the address itself."""
    address: str


@dataclass(frozen=True)
class AddressList:
    """`example.com: [1.2.3.4, 2001:db8::1]` - family decided per address."""
    addresses: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TypedAddresses:
    """`example.com: {a: [...], aaaa: [...]}` - family decided by the key."""
    a: Tuple[str, ...] = ()
    aaaa: Tuple[str, ...] = ()


HostValue = Union[SingleAddress, AddressList, TypedAddresses]


def _address_items(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return ()
    items = []
    for item in value:
        if item is None or isinstance(item, (dict, list)):
            continue
        text = str(item).strip()
        if text:
            items.append(text)
    return tuple(items)


def decode_host_value(raw: Any) -> HostValue:
    """Turn a raw YAML hosts value into one of the HostValue shapes.

    Unrecognized shapes decode to an empty AddressList so the entry carries no addresses.
    """
    if isinstance(raw, str):
        return SingleAddress(raw.strip())
    if isinstance(raw, list):
        return AddressList(_address_items(raw))
    if isinstance(raw, dict):
        return TypedAddresses(a=_address_items(raw.get('a')), aaaa=_address_items(raw.get('aaaa')))
    return AddressList()


# ---------- durations ----------

_DURATION_PART = re.compile(r'(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)')
_DURATION_UNITS = {
    'ns': 1e-9,
    'us': 1e-6,
    'µs': 1e-6,
    'μs': 1e-6,
    'ms': 1e-3,
    's': 1.0,
    'm': 60.0,
    'h': 3600.0,
}


def parse_duration(text: str) -> float:
    """Parse a Go style duration ('5s', '500ms', '1m30s') into seconds.

    Raises ValueError for anything else.
    """
    s = (text or '').strip()
    sign = 1.0
    if s and s[0] in '+-':
        sign = -1.0 if s[0] == '-' else 1.0
        s = s[1:]
    if s == '0':
        return 0.0
    if not s:
        raise ValueError(f"invalid duration {text!r}")
    total = 0.0
    pos = 0
    while pos < len(s):
        m = _DURATION_PART.match(s, pos)
        if not m:
            raise ValueError(f"invalid duration {text!r}")
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    return sign * total


# ---------- config file ----------

@dataclass(frozen=True)
class ServerConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    ttl: int = DEFAULT_TTL


@dataclass(frozen=True)
class TLSConfig:
    cert: str = ''
    key: str = ''


@dataclass(frozen=True)
class DoTConfig:
    enabled: bool = False
    port: int = DEFAULT_DOT_PORT
    tls: TLSConfig = field(default_factory=TLSConfig)


@dataclass(frozen=True)
class SystemHostsConfig:
    disabled: bool = False
    file_path: str = DEFAULT_SYSTEM_HOSTS_FILE


@dataclass(frozen=True)
class UpstreamConfig:
    servers: Tuple[str, ...] = DEFAULT_UPSTREAM_SERVERS
    timeout: str = DEFAULT_UPSTREAM_TIMEOUT

    @property
    def timeout_seconds(self) -> float:
        try:
            return parse_duration(self.timeout)
        except ValueError:
            return parse_duration(DEFAULT_UPSTREAM_TIMEOUT)


@dataclass(frozen=True)
class LoggingConfig:
    verbose: bool = False
    query_log: bool = False
    query_log_dir: str = DEFAULT_QUERY_LOG_DIR


@dataclass(frozen=True)
class ResolutionConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    dot: DoTConfig = field(default_factory=DoTConfig)
    hosts: Mapping[str, HostValue] = field(default_factory=lambda: MappingProxyType({}))
    system_hosts: SystemHostsConfig = field(default_factory=SystemHostsConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _section(data: Mapping, name: str) -> Dict[str, Any]:
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"failed to parse config file: '{name}' must be a mapping")
    return value


def _int(section: Mapping, key: str, fallback: int) -> int:
    value = section.get(key)
    if not value:
        return fallback
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"failed to parse config file: invalid integer for '{key}': {value!r}")


def _str(section: Mapping, key: str, fallback: str = '') -> str:
    value = section.get(key)
    if value is None or value == '':
        return fallback
    return str(value).strip()


def _servers(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return ()
    return tuple(str(s).strip() for s in value if s is not None and str(s).strip())


def parse_config(data: Optional[Mapping]) -> ResolutionConfig:
    """Build a ResolutionConfig from decoded YAML, applying defaults for missing keys."""
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigError("failed to parse config file: top level must be a mapping")

    server = _section(data, 'server')
    dot = _section(data, 'dot')
    tls = _section(dot, 'tls')
    system_hosts = _section(data, 'system_hosts')
    upstream = _section(data, 'upstream')
    log_cfg = _section(data, 'logging')
    raw_hosts = _section(data, 'hosts')

    system_hosts_disabled = bool(system_hosts.get('disabled', False))
    system_hosts_path = _str(system_hosts, 'file_path')
    # default hosts file only applies while the tier is enabled
    if not system_hosts_disabled and not system_hosts_path:
        system_hosts_path = DEFAULT_SYSTEM_HOSTS_FILE

    hosts = {}
    for pattern, value in raw_hosts.items():
        hosts[str(pattern)] = decode_host_value(value)

    return ResolutionConfig(
        server=ServerConfig(
            host=_str(server, 'host', DEFAULT_HOST),
            port=_int(server, 'port', DEFAULT_PORT),
            ttl=_int(server, 'ttl', DEFAULT_TTL),
        ),
        dot=DoTConfig(
            enabled=bool(dot.get('enabled', False)),
            port=_int(dot, 'port', DEFAULT_DOT_PORT),
            tls=TLSConfig(cert=_str(tls, 'cert'), key=_str(tls, 'key')),
        ),
        hosts=MappingProxyType(hosts),
        system_hosts=SystemHostsConfig(disabled=system_hosts_disabled, file_path=system_hosts_path),
        upstream=UpstreamConfig(
            servers=_servers(upstream.get('servers')) or DEFAULT_UPSTREAM_SERVERS,
            timeout=_str(upstream, 'timeout', DEFAULT_UPSTREAM_TIMEOUT),
        ),
        logging=LoggingConfig(
            verbose=bool(log_cfg.get('verbose', False)),
            query_log=bool(log_cfg.get('query_log', False)),
            query_log_dir=_str(log_cfg, 'query_log_dir', DEFAULT_QUERY_LOG_DIR),
        ),
    )


def load_config(path: str) -> ResolutionConfig:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            text = f.read()
    except OSError as e:
        raise ConfigError(f"failed to read config file: {e}") from e
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse config file: {e}") from e
    return parse_config(data)


# ---------- effective server settings ----------

@dataclass(frozen=True)
class ServerSettings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    ttl: int = DEFAULT_TTL
    dot_enabled: bool = False
    dot_port: int = DEFAULT_DOT_PORT
    tls_cert: str = ''
    tls_key: str = ''
    upstream_servers: Tuple[str, ...] = DEFAULT_UPSTREAM_SERVERS
    upstream_timeout: float = 5.0
    system_hosts_enabled: bool = True
    system_hosts_file: str = DEFAULT_SYSTEM_HOSTS_FILE


def merge_settings(config: Optional[ResolutionConfig],
                   host: Optional[str] = None,
                   port: Optional[int] = None,
                   ttl: Optional[int] = None,
                   dot: Optional[bool] = None,
                   dot_port: Optional[int] = None,
                   tls_cert: Optional[str] = None,
                   tls_key: Optional[str] = None,
                   upstream: Optional[Iterable[str]] = None,
                   disable_system_hosts: Optional[bool] = None,
                   system_hosts_file: Optional[str] = None) -> ServerSettings:
    """Combine command line/env overrides with the config file.

    Overrides that are None (or empty) fall back to the config file, then to defaults.
    """
    cfg = config or ResolutionConfig()
    upstream_servers = tuple(s for s in (upstream or ()) if s) or cfg.upstream.servers or DEFAULT_UPSTREAM_SERVERS
    disabled = bool(disable_system_hosts) or cfg.system_hosts.disabled

    settings = ServerSettings(
        host=host or cfg.server.host,
        port=port or cfg.server.port,
        ttl=ttl or cfg.server.ttl,
        dot_enabled=bool(dot) or cfg.dot.enabled,
        dot_port=dot_port or cfg.dot.port,
        tls_cert=tls_cert or cfg.dot.tls.cert,
        tls_key=tls_key or cfg.dot.tls.key,
        upstream_servers=upstream_servers,
        upstream_timeout=cfg.upstream.timeout_seconds,
        system_hosts_enabled=not disabled,
        system_hosts_file=system_hosts_file or cfg.system_hosts.file_path or DEFAULT_SYSTEM_HOSTS_FILE,
    )
    if settings.dot_enabled and not (settings.tls_cert and settings.tls_key):
        raise ConfigError("TLS certificate and key are required when DoT is enabled "
                          "(use --tls-cert and --tls-key or the config file)")
    return settings
