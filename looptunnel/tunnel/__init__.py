"""
Looptunnel Tunnel Module

Lets a guest VM reach services bound to the host's loopback interface over a
hypervisor socket (virtio-vsock), without routing through an IP network.

Architecture:
- Guest connects to the tunnel endpoint (vsock port 5001 by default)
- Guest sends "CONNECT <port>\\r\\n"
- Server connects to 127.0.0.1:<port> (falling back to ::1)
- Server answers "OK\\r\\n" and relays bytes both ways until either side closes

Usage:
    from looptunnel.tunnel import TunnelServer, Endpoint

    server = TunnelServer(Endpoint.vsock(5001))
    server.start()

    # ... guests open tunnels ...

    server.stop()
"""

from .protocol import (
    DEFAULT_PORT,
    BUFFER_SIZE,
    MAX_LINE_LENGTH,
    POLL_TIMEOUT,
    ConnectCommand,
    ResponseType,
    encode_error,
    encode_ok,
    parse_command,
)

from .errors import (
    TunnelError,
    TunnelStartupError,
    SocketCreationError,
    BindError,
    ListenError,
    TunnelProtocolError,
    DestinationUnreachableError,
    TunnelRefusedError,
    TunnelRuntimeError,
    SessionPhase,
)

from .endpoint import Endpoint, TransportKind
from .resolver import connect_to_localhost
from .relay import RelayEndReason, RelayResult, bridge_sockets
from .session import SessionState, TunnelSession
from .listener import TunnelServer
from .client import open_tunnel, check_tunnel

__all__ = [
    # Protocol constants
    "DEFAULT_PORT",
    "BUFFER_SIZE",
    "MAX_LINE_LENGTH",
    "POLL_TIMEOUT",
    # Protocol types
    "ConnectCommand",
    "ResponseType",
    # Protocol functions
    "encode_ok",
    "encode_error",
    "parse_command",
    # Errors
    "TunnelError",
    "TunnelStartupError",
    "SocketCreationError",
    "BindError",
    "ListenError",
    "TunnelProtocolError",
    "DestinationUnreachableError",
    "TunnelRefusedError",
    "TunnelRuntimeError",
    "SessionPhase",
    # Transport
    "Endpoint",
    "TransportKind",
    # Server side
    "connect_to_localhost",
    "bridge_sockets",
    "RelayEndReason",
    "RelayResult",
    "SessionState",
    "TunnelSession",
    "TunnelServer",
    # Client side
    "open_tunnel",
    "check_tunnel",
]
