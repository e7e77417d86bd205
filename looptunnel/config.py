"""Runtime configuration: module defaults, LOOPTUNNEL_* environment overrides."""

import os
from dataclasses import dataclass, field
from typing import Optional

from .tunnel.endpoint import Endpoint
from .tunnel.protocol import BUFFER_SIZE, LISTEN_BACKLOG, MAX_LINE_LENGTH, POLL_TIMEOUT


ENV_PREFIX = "LOOPTUNNEL_"
DEFAULT_STATUS_HOST = "127.0.0.1"
DEFAULT_STATUS_PORT = 8765
DEFAULT_LOG_LEVEL = "INFO"


def _env(name: str) -> Optional[str]:
    value = os.environ.get(ENV_PREFIX + name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    value = _env(name)
    if value is None:
        return default
    if value.lower() in ("none", "off", "0"):
        return None
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {value!r}")


def _env_int(name: str, default: int) -> int:
    value = _env(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {value!r}")


@dataclass
class TunnelConfig:
    """Everything `looptunnel serve` needs to run."""

    endpoint: Endpoint = field(default_factory=Endpoint.vsock)
    backlog: int = LISTEN_BACKLOG
    buffer_size: int = BUFFER_SIZE
    poll_timeout: float = POLL_TIMEOUT
    handshake_timeout: Optional[float] = None
    connect_timeout: Optional[float] = None
    max_line_length: int = MAX_LINE_LENGTH
    status_host: str = DEFAULT_STATUS_HOST
    status_port: Optional[int] = None  # None disables the status API
    log_level: str = DEFAULT_LOG_LEVEL

    @classmethod
    def from_env(cls) -> "TunnelConfig":
        """Build a config from defaults plus LOOPTUNNEL_* variables.

        Recognized: LISTEN, BACKLOG, BUFFER_SIZE, POLL_TIMEOUT,
        HANDSHAKE_TIMEOUT, CONNECT_TIMEOUT, STATUS_HOST, STATUS_PORT,
        LOG_LEVEL.
        """
        config = cls()

        listen = _env("LISTEN")
        if listen is not None:
            config.endpoint = Endpoint.parse(listen)

        config.backlog = _env_int("BACKLOG", config.backlog)
        config.buffer_size = _env_int("BUFFER_SIZE", config.buffer_size)
        config.poll_timeout = _env_float("POLL_TIMEOUT", config.poll_timeout) or POLL_TIMEOUT
        config.handshake_timeout = _env_float("HANDSHAKE_TIMEOUT", config.handshake_timeout)
        config.connect_timeout = _env_float("CONNECT_TIMEOUT", config.connect_timeout)
        config.status_host = _env("STATUS_HOST") or config.status_host

        status_port = _env("STATUS_PORT")
        if status_port is not None:
            config.status_port = _env_int("STATUS_PORT", DEFAULT_STATUS_PORT)

        config.log_level = (_env("LOG_LEVEL") or config.log_level).upper()
        return config

    def validate(self):
        """Raises ValueError on settings the server cannot run with."""
        if self.buffer_size <= 0:
            raise ValueError("buffer_size must be positive")
        if self.poll_timeout <= 0:
            raise ValueError("poll_timeout must be positive")
        if self.backlog <= 0:
            raise ValueError("backlog must be positive")
        if self.max_line_length <= 0:
            raise ValueError("max_line_length must be positive")
        if self.status_port is not None and not 0 <= self.status_port <= 65535:
            raise ValueError(f"Invalid status port {self.status_port}")
