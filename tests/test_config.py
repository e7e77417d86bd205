import pytest

from looptunnel.config import TunnelConfig
from looptunnel.tunnel.endpoint import Endpoint, TransportKind
from looptunnel.tunnel.protocol import BUFFER_SIZE, DEFAULT_PORT, POLL_TIMEOUT


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "LISTEN",
        "BACKLOG",
        "BUFFER_SIZE",
        "POLL_TIMEOUT",
        "HANDSHAKE_TIMEOUT",
        "CONNECT_TIMEOUT",
        "STATUS_HOST",
        "STATUS_PORT",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(f"LOOPTUNNEL_{name}", raising=False)


def test_defaults():
    config = TunnelConfig.from_env()
    assert config.endpoint == Endpoint.vsock(DEFAULT_PORT)
    assert config.buffer_size == BUFFER_SIZE
    assert config.poll_timeout == POLL_TIMEOUT
    assert config.handshake_timeout is None
    assert config.status_port is None
    assert config.log_level == "INFO"


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("LOOPTUNNEL_LISTEN", "unix:/tmp/vm.sock_5001")
    monkeypatch.setenv("LOOPTUNNEL_POLL_TIMEOUT", "2.5")
    monkeypatch.setenv("LOOPTUNNEL_HANDSHAKE_TIMEOUT", "5")
    monkeypatch.setenv("LOOPTUNNEL_STATUS_PORT", "9100")
    monkeypatch.setenv("LOOPTUNNEL_LOG_LEVEL", "debug")

    config = TunnelConfig.from_env()

    assert config.endpoint.kind == TransportKind.UNIX
    assert config.endpoint.path == "/tmp/vm.sock_5001"
    assert config.poll_timeout == 2.5
    assert config.handshake_timeout == 5.0
    assert config.status_port == 9100
    assert config.log_level == "DEBUG"


def test_handshake_timeout_can_be_disabled(monkeypatch):
    monkeypatch.setenv("LOOPTUNNEL_HANDSHAKE_TIMEOUT", "none")
    assert TunnelConfig.from_env().handshake_timeout is None


def test_bad_number(monkeypatch):
    monkeypatch.setenv("LOOPTUNNEL_BACKLOG", "lots")
    with pytest.raises(ValueError, match="LOOPTUNNEL_BACKLOG"):
        TunnelConfig.from_env()


@pytest.mark.parametrize(
    "field, value",
    [("buffer_size", 0), ("poll_timeout", 0), ("backlog", -1), ("status_port", 70000)],
)
def test_validate_rejects(field, value):
    config = TunnelConfig()
    setattr(config, field, value)
    with pytest.raises(ValueError):
        config.validate()
