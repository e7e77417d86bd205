"""
Tunnel Listener

Accepts tunnel connections on a vsock (or Unix, or TCP) endpoint and hands
each one to its own TunnelSession thread. A guest sends `CONNECT <port>`,
and the session bridges it to localhost:<port> on this side.

The accept loop runs on a dedicated thread so that no single connection can
hold it up. Shutdown is cooperative: stop() sets a shared event and closes
the listening socket; sessions that are already relaying notice the event at
their next poll timeout and close on their own.
"""

import errno
import logging
import os
import socket
import threading
import time
from collections import deque
from typing import Any, Callable, Dict, List, Optional

from .endpoint import Endpoint, TransportKind, prepare_unix_path
from .errors import (
    BindError,
    ListenError,
    SessionPhase,
    SocketCreationError,
    TunnelRuntimeError,
)
from .protocol import (
    BUFFER_SIZE,
    LISTEN_BACKLOG,
    MAX_LINE_LENGTH,
    POLL_TIMEOUT,
)
from .session import TunnelSession

logger = logging.getLogger(__name__)

ACCEPT_POLL_INTERVAL = 1.0  # Seconds; lets the accept loop see stop() promptly
ACCEPT_RETRY_DELAY = 0.1
MAX_RECENT_ERRORS = 50


class TunnelServer:
    """Listens for tunnel connections and relays them to loopback services.

    Example:
        server = TunnelServer(Endpoint.vsock(5001))
        server.start()
        ...
        server.stop()
    """

    def __init__(
        self,
        endpoint: Optional[Endpoint] = None,
        backlog: int = LISTEN_BACKLOG,
        buffer_size: int = BUFFER_SIZE,
        poll_timeout: float = POLL_TIMEOUT,
        handshake_timeout: Optional[float] = None,
        connect_timeout: Optional[float] = None,
        max_line_length: int = MAX_LINE_LENGTH,
        on_status_change: Optional[Callable[[bool], None]] = None,
        on_operational_error: Optional[Callable[[TunnelRuntimeError], None]] = None,
        on_connection_success: Optional[Callable[[], None]] = None,
    ):
        """Initialize the tunnel server.

        Args:
            endpoint: Where to listen (default: vsock port 5001, any CID)
            backlog: listen() backlog
            buffer_size: Relay read size per socket
            poll_timeout: Seconds between shutdown checks in each relay
            handshake_timeout: Max seconds to wait for the CONNECT line (None waits forever)
            connect_timeout: Max seconds per loopback connect attempt
            max_line_length: Longest accepted control line in bytes
            on_status_change: Called with True after start and False after stop
            on_operational_error: Called with every contained session/accept error
            on_connection_success: Called each time a session enters the relay phase
        """
        self.endpoint = endpoint or Endpoint.vsock()
        self.backlog = backlog
        self.buffer_size = buffer_size
        self.poll_timeout = poll_timeout
        self.handshake_timeout = handshake_timeout
        self.connect_timeout = connect_timeout
        self.max_line_length = max_line_length

        self.on_status_change = on_status_change
        self.on_operational_error = on_operational_error
        self.on_connection_success = on_connection_success

        self.listener_socket: Optional[socket.socket] = None
        self.accept_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._stop_event.set()
        self._lock = threading.RLock()

        # Counters and recent errors for the status API
        self._stats_lock = threading.Lock()
        self._active_sessions = 0
        self._total_sessions = 0
        self._relayed_sessions = 0
        self._failed_sessions = 0
        self._started_at: Optional[float] = None
        self._recent_errors: deque = deque(maxlen=MAX_RECENT_ERRORS)

    @property
    def running(self) -> bool:
        return not self._stop_event.is_set()

    @property
    def stop_event(self) -> threading.Event:
        """Shared shutdown signal handed to every session."""
        return self._stop_event

    @property
    def address(self):
        """The bound address (useful with TCP port 0)."""
        if self.listener_socket is None:
            return None
        return self.listener_socket.getsockname()

    def start(self):
        """Bind, listen and start the accept loop on a background thread.

        Raises:
            SocketCreationError, BindError, ListenError: the server did not start
        """
        with self._lock:
            if self.running:
                logger.warning(f"TunnelServer already running on {self.endpoint}")
                return

            logger.info(f"Creating tunnel socket on {self.endpoint}")
            self.listener_socket = self._create_listener()

            self._stop_event.clear()
            with self._stats_lock:
                self._started_at = time.time()
            self.accept_thread = threading.Thread(
                target=self._accept_loop,
                args=(self.listener_socket,),
                daemon=True,
                name=f"tunnel-listener-{self.endpoint}",
            )
            self.accept_thread.start()

            logger.info(f"TunnelServer listening on {self.endpoint}")

        self._notify_status(True)

    def _create_listener(self) -> socket.socket:
        try:
            sock = socket.socket(self.endpoint.family, socket.SOCK_STREAM)
        except OSError as e:
            logger.error(f"Socket creation failed for {self.endpoint}: {e}")
            raise SocketCreationError(f"Failed to create socket: {e}", e) from e

        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if self.endpoint.kind == TransportKind.UNIX:
                prepare_unix_path(self.endpoint.path)
            sock.bind(self.endpoint.bind_address())
        except OSError as e:
            sock.close()
            logger.error(f"Failed to bind {self.endpoint}: {e}")
            raise BindError(f"Failed to bind socket: {e}", e) from e

        try:
            sock.listen(self.backlog)
            sock.settimeout(ACCEPT_POLL_INTERVAL)
        except OSError as e:
            sock.close()
            logger.error(f"Failed to listen on {self.endpoint}: {e}")
            raise ListenError(f"Failed to listen: {e}", e) from e

        return sock

    def serve_forever(self):
        """Start if needed and block until stop() is called."""
        if not self.running:
            self.start()
        try:
            while self.accept_thread is not None and self.accept_thread.is_alive():
                self.accept_thread.join(timeout=ACCEPT_POLL_INTERVAL)
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")
        finally:
            self.stop()

    def stop(self):
        """Stop accepting and release the listening socket.

        Sessions already relaying are not interrupted; they exit at their
        next poll timeout.
        """
        with self._lock:
            if not self.running:
                return

            self._stop_event.set()

            # Shut down first: on Linux close() alone does not wake accept()
            if self.listener_socket:
                try:
                    self.listener_socket.shutdown(socket.SHUT_RDWR)
                except OSError:
                    pass
                try:
                    self.listener_socket.close()
                except OSError as e:
                    logger.debug(f"Error closing listener socket: {e}")
                self.listener_socket = None

            if self.accept_thread and self.accept_thread.is_alive():
                if self.accept_thread is not threading.current_thread():
                    self.accept_thread.join(timeout=2)
            self.accept_thread = None

            if self.endpoint.kind == TransportKind.UNIX and os.path.exists(self.endpoint.path):
                try:
                    os.unlink(self.endpoint.path)
                    logger.debug(f"Removed listener socket: {self.endpoint.path}")
                except OSError as e:
                    logger.warning(f"Failed to remove socket {self.endpoint.path}: {e}")

            logger.info(f"TunnelServer stopped on {self.endpoint}")

        self._notify_status(False)

    def _accept_loop(self, listener: socket.socket):
        """Accept connections and spawn a session thread for each."""
        logger.debug(f"Accept loop started for {self.endpoint}")

        while not self._stop_event.is_set():
            try:
                client, _ = listener.accept()
            except socket.timeout:
                continue
            except InterruptedError:
                continue
            except OSError as e:
                if self._stop_event.is_set() or e.errno in (errno.EBADF, errno.EINVAL):
                    break
                self._record_error(
                    TunnelRuntimeError(
                        phase=SessionPhase.ACCEPT,
                        message=f"accept() failed: {e}",
                        connection_id="accept-loop",
                        errno=e.errno,
                    )
                )
                logger.error(f"Accept error on {self.endpoint}: {e}")
                time.sleep(ACCEPT_RETRY_DELAY)
                continue

            self._dispatch(client)

        logger.debug(f"Accept loop ended for {self.endpoint}")

    def _dispatch(self, client: socket.socket):
        session = TunnelSession(
            client,
            self._stop_event,
            buffer_size=self.buffer_size,
            poll_timeout=self.poll_timeout,
            handshake_timeout=self.handshake_timeout,
            connect_timeout=self.connect_timeout,
            max_line_length=self.max_line_length,
            on_error=self._record_error,
            on_relay_start=self._on_relay_start,
        )
        with self._stats_lock:
            self._active_sessions += 1
            self._total_sessions += 1

        handler = threading.Thread(
            target=self._run_session,
            args=(session,),
            daemon=True,
            name=f"tunnel-session-{session.connection_id[:8]}",
        )
        try:
            handler.start()
        except RuntimeError as e:
            # Out of threads: drop this connection, keep accepting
            logger.error(f"Failed to start session thread: {e}")
            session.close()
            self._finish_session(session)

    def _run_session(self, session: TunnelSession):
        try:
            session.run()
        finally:
            self._finish_session(session)

    def _finish_session(self, session: TunnelSession):
        with self._stats_lock:
            self._active_sessions -= 1
            if session.succeeded:
                self._relayed_sessions += 1
            else:
                self._failed_sessions += 1

    def _on_relay_start(self, session: TunnelSession):
        if self.on_connection_success:
            try:
                self.on_connection_success()
            except Exception as e:
                logger.debug(f"Connection success callback failed: {e}")

    def _record_error(self, runtime_error: TunnelRuntimeError):
        with self._stats_lock:
            self._recent_errors.append(runtime_error)
        if self.on_operational_error:
            try:
                self.on_operational_error(runtime_error)
            except Exception as e:
                logger.debug(f"Operational error callback failed: {e}")

    def _notify_status(self, running: bool):
        if self.on_status_change:
            try:
                self.on_status_change(running)
            except Exception as e:
                logger.debug(f"Status callback failed: {e}")

    def recent_errors(self, limit: Optional[int] = None) -> List[TunnelRuntimeError]:
        """Most recent operational errors, oldest first."""
        with self._stats_lock:
            errors = list(self._recent_errors)
        if limit is not None:
            errors = errors[-limit:] if limit > 0 else []
        return errors

    def status(self) -> Dict[str, Any]:
        """Snapshot of the server state for the status API."""
        with self._stats_lock:
            return {
                "endpoint": str(self.endpoint),
                "running": self.running,
                "started_at": self._started_at,
                "active_sessions": self._active_sessions,
                "total_sessions": self._total_sessions,
                "relayed_sessions": self._relayed_sessions,
                "failed_sessions": self._failed_sessions,
                "recent_error_count": len(self._recent_errors),
            }
