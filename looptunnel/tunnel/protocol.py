"""
Tunnel Protocol Definitions

This module defines the one-line control protocol spoken at the start of
every tunnel connection. The client names a loopback port, the server
answers once, and from then on the connection is a raw byte pipe.

Protocol Flow:
1. Client connects to the tunnel endpoint (vsock port 5001 by default)
2. Client sends "CONNECT <port>\\r\\n"
3. Server connects to localhost:<port> (IPv4 first, then IPv6)
4. Server replies "OK\\r\\n" or "ERROR <message>\\r\\n"
5. After OK the stream is relayed unframed in both directions

Message Format:
ASCII lines terminated by CRLF. A bare LF is accepted on input.
"""

import socket
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import TunnelProtocolError


class ResponseType(str, Enum):
    """Response verbs sent from server to client."""

    OK = "OK"  # Destination connected, relay follows
    ERROR = "ERROR"  # Request refused, connection closes


@dataclass
class ConnectCommand:
    """Request to open a tunnel to a loopback port on the server side."""

    port: int

    def encode(self) -> bytes:
        return f"{COMMAND_VERB} {self.port}{LINE_TERMINATOR}".encode("ascii")


# Constants
DEFAULT_PORT = 5001
COMMAND_VERB = "CONNECT"
LINE_TERMINATOR = "\r\n"
MAX_LINE_LENGTH = 256  # Bounds memory spent on a misbehaving peer
BUFFER_SIZE = 64 * 1024  # 64KB relay reads
POLL_TIMEOUT = 30.0  # Seconds between shutdown checks while relaying
LISTEN_BACKLOG = 10
MIN_PORT = 1
MAX_PORT = 65535

USAGE_MESSAGE = "Invalid command. Use: CONNECT <port>"
LINE_TOO_LONG_MESSAGE = "Command line too long"
ENCODING_MESSAGE = "Invalid command encoding"


def encode_ok() -> bytes:
    """Encode the success response."""
    return f"{ResponseType.OK.value}{LINE_TERMINATOR}".encode("ascii")


def encode_error(message: str) -> bytes:
    """Encode an error response carrying a human-readable message."""
    # The message must stay on one line
    message = " ".join(message.split())
    return f"{ResponseType.ERROR.value} {message}{LINE_TERMINATOR}".encode(
        "utf-8"
    )


def connect_failed_message(port: int) -> str:
    return f"Cannot connect to localhost:{port}"


def _parse_port(token: str) -> Optional[int]:
    # int() would also accept signs, underscores and non-ASCII digits
    if not (token.isascii() and token.isdigit()):
        return None
    port = int(token)
    if port < MIN_PORT or port > MAX_PORT:
        return None
    return port


def parse_command(line: str) -> ConnectCommand:
    """Parse a control line into a ConnectCommand.

    The line is trimmed and split on whitespace. The first token must be
    CONNECT (any case) and the second a decimal port in 1..65535. Tokens
    after the port are ignored.

    Raises:
        TunnelProtocolError: if the line does not match the grammar
    """
    parts = line.strip().split()
    if len(parts) < 2 or parts[0].upper() != COMMAND_VERB:
        raise TunnelProtocolError(USAGE_MESSAGE, line=line)

    port = _parse_port(parts[1])
    if port is None:
        raise TunnelProtocolError(USAGE_MESSAGE, line=line)

    return ConnectCommand(port=port)


def read_line(sock: socket.socket, max_length: int = MAX_LINE_LENGTH) -> Optional[bytes]:
    """Read one control line from a blocking socket, one byte at a time.

    Reading byte by byte guarantees that nothing past the terminator is
    consumed, so relay data sent right behind the command stays in the
    socket for the relay engine.

    Returns:
        The line without its terminator, or None if the peer closed the
        connection before sending anything. A peer that closes mid-line
        gets whatever it sent so far.

    Raises:
        TunnelProtocolError: if max_length bytes arrive without a newline
    """
    buffer = bytearray()

    while len(buffer) < max_length:
        byte = sock.recv(1)
        if not byte:
            return bytes(buffer) if buffer else None
        if byte == b"\n":
            if buffer.endswith(b"\r"):
                del buffer[-1]
            return bytes(buffer)
        buffer += byte

    raise TunnelProtocolError(LINE_TOO_LONG_MESSAGE, line=buffer.decode("latin-1"))


def decode_line(data: bytes) -> str:
    """Decode a raw control line.

    Raises:
        TunnelProtocolError: if the line is not ASCII
    """
    try:
        return data.decode("ascii")
    except UnicodeDecodeError:
        raise TunnelProtocolError(ENCODING_MESSAGE, line=data.decode("latin-1"))


def parse_response(line: bytes) -> tuple[ResponseType, str]:
    """Parse a server response line (without terminator).

    Returns:
        (ResponseType, message) where message is empty for OK.

    Raises:
        TunnelProtocolError: if the line is neither OK nor ERROR
    """
    text = line.decode("utf-8", errors="replace").strip()
    if text == ResponseType.OK.value:
        return ResponseType.OK, ""

    verb, _, message = text.partition(" ")
    if verb == ResponseType.ERROR.value:
        return ResponseType.ERROR, message

    raise TunnelProtocolError(f"Unexpected response: {text!r}", line=text)
