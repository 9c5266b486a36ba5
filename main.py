import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Optional

from core.dispatcher import ResolutionDispatcher, build_context, setup_query_log
from core.dserver import run_server
from core.patterns import RecordType
from core.resolver import UpstreamClient, UpstreamError, normalize_server_address
from utils.config import ConfigError, ResolutionConfig, ServerSettings, load_config, merge_settings, parse_duration
from utils.hostsfile import parse_hosts_file


def _env_bool(name: str) -> bool:
    return os.environ.get(name, '').strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name: str) -> Optional[int]:
    value = os.environ.get(name)
    return int(value) if value else None


def _env_list(name: str):
    value = os.environ.get(name, '')
    return [v.strip() for v in value.split(',') if v.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hostsd", description="A DNS server with hosts overrides, and a DNS client")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    srv = sub.add_parser("server", help="Start a DNS server")
    srv.add_argument("-c", "--config", default=os.environ.get("DNS_CONFIG"), help="Path to configuration file (YAML)")
    srv.add_argument("-p", "--port", type=int, default=_env_int("DNS_PORT"), help="DNS server port (UDP/TCP), default 53")
    srv.add_argument("--host", default=os.environ.get("DNS_HOST"), help="DNS server host, default 0.0.0.0")
    srv.add_argument("--ttl", type=int, default=_env_int("DNS_TTL"), help="TTL for DNS responses in seconds, default 500")
    srv.add_argument("--dot", action="store_true", default=_env_bool("DNS_DOT"), help="Enable DNS-over-TLS (DoT)")
    srv.add_argument("--dot-port", type=int, default=_env_int("DNS_DOT_PORT"), help="DoT server port, default 853")
    srv.add_argument("--tls-cert", default=os.environ.get("DNS_TLS_CERT"), help="TLS certificate file (required for DoT)")
    srv.add_argument("--tls-key", default=os.environ.get("DNS_TLS_KEY"), help="TLS private key file (required for DoT)")
    srv.add_argument("-u", "--upstream", action="append", default=None, help="Upstream DNS server (repeatable)")
    srv.add_argument("--disable-system-hosts", action="store_true", default=_env_bool("DNS_DISABLE_SYSTEM_HOSTS"),
                     help="Disable system hosts file lookup (enabled by default)")
    srv.add_argument("--system-hosts-file", default=os.environ.get("DNS_SYSTEM_HOSTS_FILE"),
                     help="Path to system hosts file, default /etc/hosts")

    cli = sub.add_parser("client", help="Query DNS servers")
    cli.add_argument("-s", "--server", action="append", default=None, help="DNS server address (plain, tls://, https://, quic://)")
    cli.add_argument("-d", "--domain", help="Domain name to query")
    cli.add_argument("-t", "--type", default="A", help="Query type (A, AAAA)")
    cli.add_argument("--timeout", default=os.environ.get("DNS_TIMEOUT", "5s"), help="Query timeout, e.g. 5s")
    cli.add_argument("--plain", action="store_true", default=_env_bool("DNS_PLAIN"), help="Output only IP addresses, one per line")
    return parser


def load_system_hosts(settings: ServerSettings):
    if not settings.system_hosts_enabled:
        return None
    try:
        mapping = parse_hosts_file(settings.system_hosts_file)
    except OSError as e:
        logging.warning(f"Failed to load system hosts file {settings.system_hosts_file}: {e}")
        return None
    logging.info(f"Loaded system hosts file: {settings.system_hosts_file} ({len(mapping)} mappings)")
    return mapping


def reload_context(dispatcher: ResolutionDispatcher, config_path: Optional[str], settings: ServerSettings):
    config = dispatcher.context.config
    if config_path:
        try:
            config = load_config(config_path)
        except ConfigError as e:
            logging.error(f"Reload failed, keeping current configuration: {e}")
            return
    dispatcher.reload(build_context(config, load_system_hosts(settings)))


def run_server_command(args) -> int:
    config: Optional[ResolutionConfig] = None
    if args.config:
        try:
            config = load_config(args.config)
        except ConfigError as e:
            logging.error(f"failed to load config: {e}")
            return 1
        logging.info(f"Loaded configuration from {args.config}")
        if config.logging.verbose:
            logging.getLogger().setLevel(logging.DEBUG)

    upstream = args.upstream or _env_list("DNS_UPSTREAM")
    try:
        settings = merge_settings(
            config,
            host=args.host,
            port=args.port,
            ttl=args.ttl,
            dot=args.dot,
            dot_port=args.dot_port,
            tls_cert=args.tls_cert,
            tls_key=args.tls_key,
            upstream=upstream,
            disable_system_hosts=args.disable_system_hosts,
            system_hosts_file=args.system_hosts_file,
        )
    except ConfigError as e:
        logging.error(str(e))
        return 1

    query_logger = None
    if config is not None and config.logging.query_log:
        try:
            query_logger = setup_query_log(config.logging.query_log_dir)
        except OSError as e:
            logging.warning(f"Failed to init query log: {e}")

    try:
        client = UpstreamClient(settings.upstream_servers, timeout=settings.upstream_timeout)
    except ValueError as e:
        logging.error(f"Invalid upstream configuration: {e}")
        return 1
    dispatcher = ResolutionDispatcher(build_context(config, load_system_hosts(settings)), client, query_logger=query_logger)

    if settings.dot_enabled:
        logging.info(f"Starting DNS server on {settings.host}:{settings.port} (UDP/TCP) and DoT on {settings.host}:{settings.dot_port}")
    else:
        logging.info(f"Starting DNS server on {settings.host}:{settings.port} (UDP/TCP)")

    async def _serve():
        loop = asyncio.get_running_loop()
        task = asyncio.current_task()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, task.cancel)
        loop.add_signal_handler(signal.SIGHUP, reload_context, dispatcher, args.config, settings)
        try:
            await run_server(settings, dispatcher.resolve)
        except asyncio.CancelledError:
            logging.info("Shutting down DNS server...")

    asyncio.run(_serve())
    return 0


def run_client_command(args) -> int:
    if not args.domain:
        print("Error: domain is required", file=sys.stderr)
        return 1
    query_type = args.type.upper()
    if query_type not in RecordType.__members__:
        print(f"Error: unsupported query type: {query_type} (supported: A, AAAA)", file=sys.stderr)
        return 1
    try:
        timeout = parse_duration(args.timeout)
    except ValueError as e:
        print(f"Error: invalid timeout format: {e}", file=sys.stderr)
        return 1

    servers = args.server or _env_list("DNS_SERVER") or ["114.114.114.114:53"]
    try:
        client = UpstreamClient([normalize_server_address(s) for s in servers], timeout=timeout)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    try:
        ips = asyncio.run(client.lookup(args.domain, RecordType[query_type]))
    except UpstreamError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if not ips:
        if not args.plain:
            print(f"No {query_type} records found for {args.domain}")
        return 0
    if args.plain:
        for ip in ips:
            print(ip)
    else:
        print(f"{query_type} records for {args.domain}:")
        for ip in ips:
            print(f"  {ip}")
    return 0


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='[%(levelname)s] %(message)s')

    if args.command == "server":
        return run_server_command(args)
    return run_client_command(args)


if __name__ == "__main__":
    sys.exit(main())
