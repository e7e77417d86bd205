"""Unit tests for the per-connection state machine."""

import socket
import threading

import pytest

from looptunnel.tunnel import session as session_module
from looptunnel.tunnel.errors import DestinationUnreachableError, SessionPhase
from looptunnel.tunnel.session import SessionState, TunnelSession
from tunnel_helpers import recv_all, recv_exact, recv_line


@pytest.fixture
def pair():
    outside, inside = socket.socketpair()
    yield outside, inside
    outside.close()
    inside.close()


def _run_in_thread(session):
    result = {}
    thread = threading.Thread(target=lambda: result.setdefault("state", session.run()), daemon=True)
    thread.start()
    return thread, result


class TestSessionStates:
    def test_relay_path(self, pair, echo_server):
        outside, inside = pair
        states = []
        session = TunnelSession(
            inside,
            threading.Event(),
            poll_timeout=0.2,
            on_relay_start=lambda s: states.append(s.state),
        )
        assert session.state == SessionState.AWAITING_COMMAND

        thread, result = _run_in_thread(session)
        outside.sendall(f"CONNECT {echo_server.port}\r\n".encode())
        assert recv_line(outside) == b"OK\r\n"
        outside.sendall(b"abc")
        assert recv_exact(outside, 3) == b"abc"

        outside.close()
        thread.join(timeout=5)

        assert states == [SessionState.RELAYING]
        assert result["state"] == SessionState.CLOSED
        assert session.succeeded
        assert session.target_port == echo_server.port
        assert session.relay_result.bytes_sent == 3

    def test_unreachable_path(self, pair, monkeypatch):
        outside, inside = pair
        errors = []

        def unreachable(port, timeout=None):
            raise DestinationUnreachableError(port, ConnectionRefusedError(111, "refused"))

        monkeypatch.setattr(session_module, "connect_to_localhost", unreachable)
        session = TunnelSession(inside, threading.Event(), on_error=errors.append)

        thread, result = _run_in_thread(session)
        outside.sendall(b"CONNECT 9999\r\n")
        assert recv_line(outside) == b"ERROR Cannot connect to localhost:9999\r\n"
        assert recv_all(outside) == b""
        thread.join(timeout=5)

        assert result["state"] == SessionState.CLOSED
        assert session.target is None
        assert not session.succeeded
        assert errors[0].phase == SessionPhase.CONNECT_LOCAL
        assert errors[0].target_port == 9999
        assert errors[0].errno == 111

    def test_protocol_error_path(self, pair):
        outside, inside = pair
        errors = []
        session = TunnelSession(inside, threading.Event(), on_error=errors.append)

        thread, result = _run_in_thread(session)
        outside.sendall(b"GET / HTTP/1.1\r\n")
        assert recv_line(outside) == b"ERROR Invalid command. Use: CONNECT <port>\r\n"
        thread.join(timeout=5)

        assert result["state"] == SessionState.CLOSED
        assert errors[0].phase == SessionPhase.HANDSHAKE_PROTOCOL

    def test_handshake_timeout(self, pair):
        outside, inside = pair
        errors = []
        session = TunnelSession(
            inside, threading.Event(), handshake_timeout=0.2, on_error=errors.append
        )

        thread, result = _run_in_thread(session)
        thread.join(timeout=5)

        assert result["state"] == SessionState.CLOSED
        assert errors[0].phase == SessionPhase.HANDSHAKE_READ
        assert "Timeout" in errors[0].message
        # No response is sent on a timeout
        assert recv_all(outside) == b""

    def test_failing_error_callback_is_contained(self, pair):
        outside, inside = pair

        def broken_callback(error):
            raise RuntimeError("callback bug")

        session = TunnelSession(inside, threading.Event(), on_error=broken_callback)
        thread, result = _run_in_thread(session)
        outside.sendall(b"NOPE\r\n")
        thread.join(timeout=5)

        assert result["state"] == SessionState.CLOSED
