"""Unit tests for configuration and logging setup."""
import logging

from marketcall.config import DEFAULT_ICE_SERVERS, CallConfig
from marketcall.logging_config import setup_logging
from marketcall.main import build_parser


class TestCallConfig:
    """Test environment-driven call settings."""

    def test_defaults(self, monkeypatch):
        for name in ("MARKETCALL_ICE_SERVERS", "MARKETCALL_END_TIMEOUT_SEC", "MARKETCALL_ANNOUNCE_SDP_CANDIDATES"):
            monkeypatch.delenv(name, raising=False)

        config = CallConfig.from_env()

        assert config.ice_servers == DEFAULT_ICE_SERVERS
        assert config.end_signal_timeout == 2.0
        assert config.announce_sdp_candidates is True

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("MARKETCALL_ICE_SERVERS", "stun:a.example:3478, turn:b.example:3478")
        monkeypatch.setenv("MARKETCALL_END_TIMEOUT_SEC", "0.5")
        monkeypatch.setenv("MARKETCALL_ANNOUNCE_SDP_CANDIDATES", "off")
        monkeypatch.setenv("MARKETCALL_TURN_USERNAME", "user")
        monkeypatch.setenv("MARKETCALL_TURN_CREDENTIAL", "secret")

        config = CallConfig.from_env()

        assert config.ice_servers == ("stun:a.example:3478", "turn:b.example:3478")
        assert config.end_signal_timeout == 0.5
        assert config.announce_sdp_candidates is False

        servers = config.rtc_configuration().iceServers
        assert [s.urls for s in servers] == ["stun:a.example:3478", "turn:b.example:3478"]
        assert servers[0].username is None
        assert servers[1].username == "user"
        assert servers[1].credential == "secret"

    def test_bad_timeout_falls_back(self, monkeypatch):
        monkeypatch.setenv("MARKETCALL_END_TIMEOUT_SEC", "soon")

        assert CallConfig.from_env().end_signal_timeout == 2.0


class TestLoggingAndCli:
    """Test logging levels and command line defaults."""

    def test_rtc_loggers_quiet_by_default(self, monkeypatch):
        monkeypatch.delenv("MARKETCALL_RTC_DEBUG", raising=False)

        setup_logging("debug")

        assert logging.getLogger("aiortc").level == logging.WARNING
        assert logging.getLogger("aioice").level == logging.WARNING

    def test_cli_defaults_from_env(self, monkeypatch):
        monkeypatch.setenv("MARKETCALL_RELAY_URL", "ws://relay.example/relay")
        monkeypatch.setenv("MARKETCALL_USER", "seller-7")

        args = build_parser().parse_args([])

        assert args.relay_url == "ws://relay.example/relay"
        assert args.user == "seller-7"
        assert args.log_level is None

    def test_cli_flags(self):
        args = build_parser().parse_args(["--relay-url", "ws://x/relay", "--user", "buyer-1", "--log-level", "debug"])

        assert (args.relay_url, args.user, args.log_level) == ("ws://x/relay", "buyer-1", "debug")
