"""
Tests for the command line interface
"""
from unittest.mock import AsyncMock, patch

import pytest

import main
from core.dispatcher import ResolutionDispatcher, build_context
from core.patterns import RecordType
from core.resolver import UpstreamClient, UpstreamError
from utils.config import merge_settings, parse_config


class TestParser:

    def test_server_env_defaults(self, monkeypatch):
        monkeypatch.setenv("DNS_PORT", "5353")
        monkeypatch.setenv("DNS_HOST", "127.0.0.1")
        monkeypatch.setenv("DNS_DOT", "true")
        monkeypatch.setenv("DNS_SYSTEM_HOSTS_FILE", "/tmp/hosts")
        args = main.build_parser().parse_args(["server"])
        assert args.port == 5353
        assert args.host == "127.0.0.1"
        assert args.dot is True
        assert args.system_hosts_file == "/tmp/hosts"
        assert args.ttl is None

    def test_flags_beat_env(self, monkeypatch):
        monkeypatch.setenv("DNS_PORT", "5353")
        args = main.build_parser().parse_args(["server", "-p", "1053", "-u", "8.8.8.8", "-u", "tls://1.1.1.1"])
        assert args.port == 1053
        assert args.upstream == ["8.8.8.8", "tls://1.1.1.1"]

    def test_client_defaults(self, monkeypatch):
        monkeypatch.delenv("DNS_TIMEOUT", raising=False)
        monkeypatch.delenv("DNS_PLAIN", raising=False)
        args = main.build_parser().parse_args(["client", "-d", "example.com"])
        assert args.type == "A"
        assert args.timeout == "5s"
        assert args.plain is False

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            main.build_parser().parse_args([])


class TestClientCommand:

    def run(self, *argv):
        return main.main(["client", *argv])

    def test_prints_records(self, capsys):
        with patch.object(UpstreamClient, "lookup", new_callable=AsyncMock) as mock_lookup:
            mock_lookup.return_value = ["93.184.216.34", "93.184.216.35"]
            assert self.run("-d", "example.com", "-s", "8.8.8.8") == 0
        mock_lookup.assert_awaited_once_with("example.com", RecordType.A)
        out = capsys.readouterr().out
        assert out == "A records for example.com:\n  93.184.216.34\n  93.184.216.35\n"

    def test_plain_output(self, capsys):
        with patch.object(UpstreamClient, "lookup", new_callable=AsyncMock) as mock_lookup:
            mock_lookup.return_value = ["2001:db8::1"]
            assert self.run("-d", "example.com", "-t", "aaaa", "--plain") == 0
        assert capsys.readouterr().out == "2001:db8::1\n"

    def test_no_records(self, capsys):
        with patch.object(UpstreamClient, "lookup", new_callable=AsyncMock) as mock_lookup:
            mock_lookup.return_value = []
            assert self.run("-d", "example.com") == 0
        assert capsys.readouterr().out == "No A records found for example.com\n"

    def test_upstream_failure(self, capsys):
        with patch.object(UpstreamClient, "lookup", new_callable=AsyncMock) as mock_lookup:
            mock_lookup.side_effect = UpstreamError("all upstream servers failed for example.com: timeout")
            assert self.run("-d", "example.com") == 1
        assert "all upstream servers failed" in capsys.readouterr().err

    def test_domain_required(self, capsys):
        assert self.run() == 1
        assert "domain is required" in capsys.readouterr().err

    def test_unsupported_type(self, capsys):
        assert self.run("-d", "example.com", "-t", "MX") == 1
        assert "unsupported query type" in capsys.readouterr().err

    def test_invalid_timeout(self, capsys):
        assert self.run("-d", "example.com", "--timeout", "soon") == 1
        assert "invalid timeout" in capsys.readouterr().err

    def test_bad_server(self, capsys):
        assert self.run("-d", "example.com", "-s", "ftp://example.com") == 1
        assert "unsupported upstream protocol" in capsys.readouterr().err


class TestServerCommand:

    def test_missing_config_fails(self, tmp_path):
        assert main.main(["server", "-c", str(tmp_path / "missing.yaml")]) == 1

    def test_dot_without_cert_fails(self, monkeypatch):
        monkeypatch.delenv("DNS_TLS_CERT", raising=False)
        monkeypatch.delenv("DNS_TLS_KEY", raising=False)
        assert main.main(["server", "--dot"]) == 1

    def test_load_system_hosts(self, tmp_path):
        path = tmp_path / "hosts"
        path.write_text("10.0.0.5 box\n")
        settings = merge_settings(None, system_hosts_file=str(path))
        assert main.load_system_hosts(settings) == {"box:4": "10.0.0.5"}
        missing = merge_settings(None, system_hosts_file=str(tmp_path / "nope"))
        assert main.load_system_hosts(missing) is None
        disabled = merge_settings(None, disable_system_hosts=True, system_hosts_file=str(path))
        assert main.load_system_hosts(disabled) is None

    def test_reload_context_rereads_config(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text("hosts:\n  a.test: 1.1.1.1\n")
        settings = merge_settings(None, disable_system_hosts=True)
        dispatcher = ResolutionDispatcher(build_context(parse_config({})), AsyncMock())
        main.reload_context(dispatcher, str(config_path), settings)
        assert dispatcher.context.hosts.lookup("a.test", RecordType.A) == ("1.1.1.1",)

    def test_reload_keeps_context_on_bad_config(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text("hosts: [broken\n")
        settings = merge_settings(None, disable_system_hosts=True)
        ctx = build_context(parse_config({"hosts": {"a.test": "1.1.1.1"}}))
        dispatcher = ResolutionDispatcher(ctx, AsyncMock())
        main.reload_context(dispatcher, str(config_path), settings)
        assert dispatcher.context is ctx
