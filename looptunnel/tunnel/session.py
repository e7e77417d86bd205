"""
Per-connection tunnel session.

A session owns one accepted connection from start to finish:

    AWAITING_COMMAND --(valid CONNECT, destination up)--> RELAYING --> CLOSED
    AWAITING_COMMAND --(bad command or unreachable)-----> CLOSED

Nothing a session does can affect the server or any other session; every
failure ends in CLOSED and is reported through the on_error callback.
"""

import logging
import socket
import threading
import uuid
from enum import Enum
from typing import Callable, Optional

from .errors import (
    DestinationUnreachableError,
    SessionPhase,
    TunnelProtocolError,
    TunnelRuntimeError,
    is_disconnect_error,
)
from .protocol import (
    BUFFER_SIZE,
    MAX_LINE_LENGTH,
    POLL_TIMEOUT,
    connect_failed_message,
    decode_line,
    encode_error,
    encode_ok,
    parse_command,
    read_line,
)
from .relay import RelayResult, bridge_sockets
from .resolver import connect_to_localhost

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    AWAITING_COMMAND = "awaiting_command"
    RELAYING = "relaying"
    CLOSED = "closed"


class TunnelSession:
    """State for one accepted tunnel connection."""

    def __init__(
        self,
        client: socket.socket,
        stop_event: threading.Event,
        buffer_size: int = BUFFER_SIZE,
        poll_timeout: float = POLL_TIMEOUT,
        handshake_timeout: Optional[float] = None,
        connect_timeout: Optional[float] = None,
        max_line_length: int = MAX_LINE_LENGTH,
        on_error: Optional[Callable[[TunnelRuntimeError], None]] = None,
        on_relay_start: Optional[Callable[["TunnelSession"], None]] = None,
    ):
        self.client = client
        self.target: Optional[socket.socket] = None
        self.stop_event = stop_event
        self.buffer_size = buffer_size
        self.poll_timeout = poll_timeout
        self.handshake_timeout = handshake_timeout
        self.connect_timeout = connect_timeout
        self.max_line_length = max_line_length
        self.on_error = on_error
        self.on_relay_start = on_relay_start

        self.connection_id = str(uuid.uuid4())
        self.state = SessionState.AWAITING_COMMAND
        self.target_port: Optional[int] = None
        self.relay_result: Optional[RelayResult] = None

    def run(self) -> SessionState:
        """Drive the session to CLOSED. Never raises for per-session failures."""
        logger.debug(f"New tunnel connection id={self.connection_id}")
        try:
            self._handshake_and_relay()
        except Exception as e:
            # Last line of containment: a bug here must not reach the accept loop
            logger.error(
                f"Unexpected session failure id={self.connection_id}: {e}",
                exc_info=True,
            )
            self._report(SessionPhase.BRIDGE, f"Unexpected failure: {e}")
        finally:
            self.close()
        return self.state

    def _handshake_and_relay(self):
        command = self._read_command()
        if command is None:
            return

        self.target_port = command.port
        logger.debug(f"Connecting to localhost id={self.connection_id} port={command.port}")

        try:
            self.target = connect_to_localhost(command.port, timeout=self.connect_timeout)
        except DestinationUnreachableError as e:
            self._report(
                SessionPhase.CONNECT_LOCAL,
                f"Failed to connect to localhost:{command.port}: {e.last_error}",
                error=e.last_error,
            )
            self._send(encode_error(connect_failed_message(command.port)))
            return

        try:
            self.client.settimeout(None)
            self.client.sendall(encode_ok())
        except OSError as e:
            self._report(SessionPhase.HANDSHAKE_PROTOCOL, f"Failed to write OK response: {e}", error=e)
            return

        self.state = SessionState.RELAYING
        logger.info(f"Bridging tunnel id={self.connection_id} -> localhost:{command.port}")
        if self.on_relay_start:
            self.on_relay_start(self)

        self.relay_result = bridge_sockets(
            self.client,
            self.target,
            self.stop_event,
            buffer_size=self.buffer_size,
            poll_timeout=self.poll_timeout,
        )

        result = self.relay_result
        if result.error is not None:
            self._report(
                SessionPhase.BRIDGE,
                f"Relay ended with {result.reason.value}: {result.error}",
                error=result.error,
            )
        logger.info(
            f"Tunnel closed id={self.connection_id} port={command.port} "
            f"({result.reason.value}, {result.bytes_sent} bytes out, "
            f"{result.bytes_received} bytes back)"
        )

    def _read_command(self):
        try:
            self.client.settimeout(self.handshake_timeout)
            raw = read_line(self.client, self.max_line_length)
        except socket.timeout:
            self._report(SessionPhase.HANDSHAKE_READ, "Timeout waiting for CONNECT command")
            return None
        except OSError as e:
            self._report(SessionPhase.HANDSHAKE_READ, f"Failed to read CONNECT command: {e}", error=e)
            return None
        except TunnelProtocolError as e:
            self._reject(e)
            return None

        if raw is None:
            self._report(SessionPhase.HANDSHAKE_READ, "Failed to read CONNECT command: EOF")
            return None

        try:
            line = decode_line(raw)
            logger.debug(f"Received command id={self.connection_id}: {line.strip()}")
            return parse_command(line)
        except TunnelProtocolError as e:
            self._reject(e)
            return None

    def _reject(self, error: TunnelProtocolError):
        self._report(
            SessionPhase.HANDSHAKE_PROTOCOL,
            f"{error.message}: {error.line!r}",
        )
        self._send(encode_error(error.message))

    def _send(self, data: bytes):
        try:
            self.client.sendall(data)
        except OSError as e:
            logger.warning(f"Failed to send response id={self.connection_id}: {e}")

    def _report(self, phase: SessionPhase, message: str, error: Optional[BaseException] = None):
        runtime_error = TunnelRuntimeError(
            phase=phase,
            message=message,
            target_port=self.target_port,
            connection_id=self.connection_id,
            errno=getattr(error, "errno", None),
        )

        if phase == SessionPhase.BRIDGE and error is not None and is_disconnect_error(error):
            logger.warning(f"Tunnel disconnected id={self.connection_id} [{phase.value}]: {message}")
        else:
            logger.error(f"Tunnel error id={self.connection_id} [{phase.value}]: {message}")

        if self.on_error:
            try:
                self.on_error(runtime_error)
            except Exception as e:
                logger.debug(f"Error callback failed: {e}")

    @property
    def succeeded(self) -> bool:
        return self.relay_result is not None

    def close(self):
        """Close both sockets. Safe to call more than once."""
        for sock in (self.client, self.target):
            if sock is None:
                continue
            try:
                sock.close()
            except OSError as e:
                logger.debug(f"Error closing session socket: {e}")
        self.state = SessionState.CLOSED
