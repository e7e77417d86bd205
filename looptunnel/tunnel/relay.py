"""
Relay engine.

Copies bytes between two connected stream sockets until one side closes or
fails, then closes both. Both sockets are switched to non-blocking mode and
watched with poll(); a poll timeout is only a chance to notice server
shutdown, never an error. There is no idle timeout and no half-close: the
first EOF or error ends both directions.
"""

import logging
import select
import socket
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .protocol import BUFFER_SIZE, POLL_TIMEOUT

logger = logging.getLogger(__name__)

_READ_MASK = select.POLLIN
_ERROR_MASK = select.POLLERR | select.POLLHUP | select.POLLNVAL


class RelayEndReason(str, Enum):
    PEER_CLOSED = "peer_closed"
    READ_ERROR = "read_error"
    WRITE_ERROR = "write_error"
    HANGUP = "hangup"
    POLL_ERROR = "poll_error"
    SHUTDOWN = "shutdown"


@dataclass
class RelayResult:
    """How a relay ended and how much it moved."""

    reason: RelayEndReason
    bytes_sent: int = 0  # first socket -> second socket
    bytes_received: int = 0  # second socket -> first socket
    error: Optional[OSError] = None

    @property
    def clean(self) -> bool:
        return self.error is None


class SocketBridge:
    """Full-duplex byte pump between two sockets.

    The bridge owns both sockets once run() is called and closes them on
    return, whatever the outcome.
    """

    def __init__(
        self,
        first: socket.socket,
        second: socket.socket,
        stop_event: threading.Event,
        buffer_size: int = BUFFER_SIZE,
        poll_timeout: float = POLL_TIMEOUT,
    ):
        self.first = first
        self.second = second
        self.stop_event = stop_event
        self.buffer_size = buffer_size
        self.poll_timeout_ms = max(int(poll_timeout * 1000), 1)
        self._buffer = bytearray(buffer_size)

    def run(self) -> RelayResult:
        result = RelayResult(reason=RelayEndReason.SHUTDOWN)
        try:
            self.first.setblocking(False)
            self.second.setblocking(False)

            poller = select.poll()
            poller.register(self.first, _READ_MASK)
            poller.register(self.second, _READ_MASK)
            peers = {
                self.first.fileno(): (self.first, self.second, True),
                self.second.fileno(): (self.second, self.first, False),
            }

            while not self.stop_event.is_set():
                try:
                    events = poller.poll(self.poll_timeout_ms)
                except OSError as e:
                    result.reason = RelayEndReason.POLL_ERROR
                    result.error = e
                    break

                if not events:
                    # Timeout: loop around and re-check the stop signal
                    continue

                if self._dispatch(events, peers, result):
                    break
        finally:
            self.close()

        logger.debug(
            f"Relay ended ({result.reason.value}): "
            f"{result.bytes_sent} bytes out, {result.bytes_received} bytes back"
        )
        return result

    def _dispatch(self, events, peers, result: RelayResult) -> bool:
        """Handle one poll() result. Returns True when the relay must end."""
        hangup = False

        # Forward whatever is readable before honouring a hang-up. A socket
        # that is both readable and hung up is drained to EOF first.
        for fd, mask in events:
            if mask & _READ_MASK:
                src, dst, outbound = peers[fd]
                drain = bool(mask & _ERROR_MASK)
                reason = self._forward(src, dst, outbound, result, drain=drain)
                if reason is not None:
                    result.reason = reason
                    return True
            if mask & _ERROR_MASK:
                hangup = True

        if hangup:
            result.reason = RelayEndReason.HANGUP
            return True
        return False

    def _forward(
        self,
        src: socket.socket,
        dst: socket.socket,
        outbound: bool,
        result: RelayResult,
        drain: bool = False,
    ) -> Optional[RelayEndReason]:
        """Move one buffer from src to dst, or everything src holds when draining."""
        while True:
            try:
                count = src.recv_into(self._buffer)
            except BlockingIOError:
                # Spurious readiness, or nothing left to drain
                return None
            except OSError as e:
                result.error = e
                return RelayEndReason.READ_ERROR

            if count == 0:
                return RelayEndReason.PEER_CLOSED

            error = self._send_all(dst, memoryview(self._buffer)[:count])
            if error is not None:
                result.error = error
                return RelayEndReason.WRITE_ERROR

            if outbound:
                result.bytes_sent += count
            else:
                result.bytes_received += count

            if not drain:
                return None

    def _send_all(self, sock: socket.socket, data: memoryview) -> Optional[OSError]:
        """Write every byte to a non-blocking socket, waiting when it is full."""
        offset = 0
        total = len(data)

        while offset < total:
            try:
                offset += sock.send(data[offset:])
            except BlockingIOError:
                self._wait_writable(sock)
            except OSError as e:
                return e
        return None

    def _wait_writable(self, sock: socket.socket):
        poller = select.poll()
        poller.register(sock, select.POLLOUT)
        # Error and hang-up flags come back too; the next send() reports them
        poller.poll(self.poll_timeout_ms)

    def close(self):
        for sock in (self.first, self.second):
            try:
                sock.close()
            except OSError as e:
                logger.debug(f"Error closing relay socket: {e}")


def bridge_sockets(
    first: socket.socket,
    second: socket.socket,
    stop_event: threading.Event,
    buffer_size: int = BUFFER_SIZE,
    poll_timeout: float = POLL_TIMEOUT,
) -> RelayResult:
    """Relay bytes between two connected sockets until either side ends.

    Both sockets are closed when this returns.
    """
    bridge = SocketBridge(
        first,
        second,
        stop_event,
        buffer_size=buffer_size,
        poll_timeout=poll_timeout,
    )
    return bridge.run()
