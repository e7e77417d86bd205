"""
Tunnel client helpers.

Opens a tunnel through a TunnelServer: connect to the endpoint, send
`CONNECT <port>`, wait for the answer. After OK the returned socket is a
plain byte pipe to localhost:<port> on the server side.
"""

import logging
import socket
from typing import Optional

from .endpoint import Endpoint, create_connection
from .errors import TunnelProtocolError, TunnelRefusedError
from .protocol import MAX_LINE_LENGTH, ConnectCommand, ResponseType, parse_response, read_line

logger = logging.getLogger(__name__)


def open_tunnel(
    endpoint: Endpoint,
    port: int,
    timeout: Optional[float] = 10.0,
) -> socket.socket:
    """Open a tunnel to `port` on the server's loopback interface.

    Args:
        endpoint: Tunnel server endpoint
        port: Destination port on the server side
        timeout: Timeout for connecting and for the handshake; the returned
            socket is switched back to blocking mode

    Returns:
        Connected socket positioned right after the OK line

    Raises:
        TunnelRefusedError: the server answered ERROR
        TunnelProtocolError: the server sent something unexpected
        OSError: the endpoint could not be reached
    """
    sock = create_connection(endpoint, timeout=timeout)
    try:
        sock.sendall(ConnectCommand(port=port).encode())

        line = read_line(sock, MAX_LINE_LENGTH)
        if line is None:
            raise TunnelProtocolError("Connection closed before response")

        kind, message = parse_response(line)
        if kind == ResponseType.ERROR:
            raise TunnelRefusedError(message)

        sock.settimeout(None)
    except BaseException:
        sock.close()
        raise

    logger.debug(f"Tunnel open via {endpoint} to port {port}")
    return sock


def check_tunnel(endpoint: Endpoint, port: int, timeout: Optional[float] = 5.0) -> bool:
    """True if the server can currently reach localhost:<port>."""
    try:
        sock = open_tunnel(endpoint, port, timeout=timeout)
    except (OSError, TunnelRefusedError, TunnelProtocolError) as e:
        logger.debug(f"Tunnel check via {endpoint} to port {port} failed: {e}")
        return False
    sock.close()
    return True
