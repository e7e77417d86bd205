"""Resolve a tunnel destination port to a connected loopback socket."""

import logging
import socket
from typing import Optional

from .errors import DestinationUnreachableError

logger = logging.getLogger(__name__)

# IPv4 first: most local services bind IPv4 or dual-stack
LOOPBACK_ADDRESSES = (
    (socket.AF_INET, "127.0.0.1"),
    (socket.AF_INET6, "::1"),
)


def _connect(family: int, host: str, port: int, timeout: Optional[float]) -> socket.socket:
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.settimeout(timeout)
        sock.connect((host, port))
        sock.settimeout(None)
    except OSError:
        sock.close()
        raise
    return sock


def connect_to_localhost(port: int, timeout: Optional[float] = None) -> socket.socket:
    """Connect to a loopback service, trying 127.0.0.1 then ::1.

    Each address gets exactly one attempt. A local destination fails fast
    (nothing listening, wrong port), so there is no retry.

    Args:
        port: Validated destination port (1-65535)
        timeout: Optional connect timeout per attempt

    Returns:
        A connected, blocking socket with TCP_NODELAY set

    Raises:
        DestinationUnreachableError: if both attempts fail; carries the
            last OSError
    """
    last_error: Optional[OSError] = None

    for family, host in LOOPBACK_ADDRESSES:
        logger.debug(f"Trying {host} port {port}")
        try:
            sock = _connect(family, host, port, timeout)
        except OSError as e:
            logger.debug(f"Connect to {host} port {port} failed: {e}")
            last_error = e
            continue

        logger.debug(f"Connected to {host} port {port}")
        return sock

    raise DestinationUnreachableError(port, last_error)
