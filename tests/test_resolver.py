"""Tests for loopback destination resolution."""

import socket

import pytest

from looptunnel.tunnel import resolver
from looptunnel.tunnel.errors import DestinationUnreachableError
from looptunnel.tunnel.resolver import connect_to_localhost
from tunnel_helpers import EchoServer, free_port


def _ipv6_loopback_available() -> bool:
    if not socket.has_ipv6:
        return False
    try:
        sock = socket.socket(socket.AF_INET6, socket.SOCK_STREAM)
        sock.bind(("::1", 0))
        sock.close()
        return True
    except OSError:
        return False


class TestConnectToLocalhost:
    def test_connects_over_ipv4(self, echo_server):
        sock = connect_to_localhost(echo_server.port)
        try:
            assert sock.family == socket.AF_INET
            assert sock.getpeername()[1] == echo_server.port
            assert sock.getsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY) != 0
            sock.sendall(b"hi")
            assert sock.recv(2) == b"hi"
        finally:
            sock.close()

    @pytest.mark.skipif(not _ipv6_loopback_available(), reason="IPv6 loopback not available")
    def test_falls_back_to_ipv6(self):
        server = EchoServer(family=socket.AF_INET6, host="::1")
        try:
            sock = connect_to_localhost(server.port)
            try:
                assert sock.family == socket.AF_INET6
            finally:
                sock.close()
        finally:
            server.close()

    def test_unreachable_raises_with_last_error(self):
        port = free_port()
        with pytest.raises(DestinationUnreachableError) as exc_info:
            connect_to_localhost(port)
        assert exc_info.value.port == port
        assert isinstance(exc_info.value.last_error, OSError)

    def test_failed_attempts_close_their_sockets(self, monkeypatch):
        real_socket = socket.socket
        created = []

        class TrackingSocket(real_socket):
            def __init__(self, *args, **kwargs):
                super().__init__(*args, **kwargs)
                created.append(self)

        port = free_port()
        monkeypatch.setattr(resolver.socket, "socket", TrackingSocket)

        with pytest.raises(DestinationUnreachableError):
            connect_to_localhost(port)

        assert created
        assert all(sock.fileno() == -1 for sock in created)

    def test_single_attempt_per_family(self, monkeypatch):
        attempts = []

        def failing_connect(family, host, port, timeout):
            attempts.append(host)
            raise ConnectionRefusedError(111, "Connection refused")

        monkeypatch.setattr(resolver, "_connect", failing_connect)

        with pytest.raises(DestinationUnreachableError):
            connect_to_localhost(9999)

        assert attempts == ["127.0.0.1", "::1"]
