"""
Tunnel error taxonomy.

Startup errors are raised to whoever called TunnelServer.start(). Everything
that happens inside a session is contained there and recorded as a
TunnelRuntimeError for logging and the status API.
"""

import errno
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class TunnelError(Exception):
    """Base class for all tunnel errors."""


class TunnelStartupError(TunnelError):
    """The listening socket could not be set up. The server did not start."""

    def __init__(self, message: str, cause: Optional[OSError] = None):
        super().__init__(message)
        self.cause = cause
        self.errno = cause.errno if cause is not None else None


class SocketCreationError(TunnelStartupError):
    pass


class BindError(TunnelStartupError):
    pass


class ListenError(TunnelStartupError):
    pass


class TunnelProtocolError(TunnelError):
    """A control line did not match `CONNECT <port>`.

    The exception message is what gets sent back in the ERROR response.
    """

    def __init__(self, message: str, line: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.line = line


class DestinationUnreachableError(TunnelError):
    """Neither loopback address family accepted a connection."""

    def __init__(self, port: int, last_error: Optional[OSError] = None):
        super().__init__(f"Cannot connect to localhost:{port}: {last_error}")
        self.port = port
        self.last_error = last_error


class TunnelRefusedError(TunnelError):
    """The tunnel server answered with an ERROR line."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SessionPhase(str, Enum):
    """Where in a session's life an operational error happened."""

    HANDSHAKE_READ = "handshake_read"
    HANDSHAKE_PROTOCOL = "handshake_protocol"
    CONNECT_LOCAL = "connect_local"
    BRIDGE = "bridge"
    ACCEPT = "accept"


@dataclass
class TunnelRuntimeError:
    """Record of a contained, per-session (or accept loop) failure."""

    phase: SessionPhase
    message: str
    target_port: Optional[int] = None
    connection_id: Optional[str] = None
    errno: Optional[int] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "message": self.message,
            "target_port": self.target_port,
            "connection_id": self.connection_id,
            "errno": self.errno,
            "timestamp": self.timestamp,
        }


_DISCONNECT_ERRNOS = frozenset(
    {
        errno.ECONNRESET,
        errno.EPIPE,
        errno.ENOTCONN,
        errno.ESHUTDOWN,
        errno.ECONNABORTED,
        errno.ETIMEDOUT,
    }
)


def is_disconnect_errno(err: Optional[int]) -> bool:
    """True for errnos that just mean the other side went away."""
    return err in _DISCONNECT_ERRNOS


def is_disconnect_error(error: BaseException) -> bool:
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True
    if isinstance(error, OSError):
        return is_disconnect_errno(error.errno)
    return False
