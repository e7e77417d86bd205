import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from looptunnel.tunnel import Endpoint, TunnelServer
from tunnel_helpers import EchoServer


@pytest.fixture
def echo_server():
    server = EchoServer()
    yield server
    server.close()


@pytest.fixture
def tunnel_server():
    server = TunnelServer(Endpoint.tcp("127.0.0.1", 0), poll_timeout=0.2)
    server.start()
    yield server
    server.stop()


@pytest.fixture
def tunnel_endpoint(tunnel_server):
    host, port = tunnel_server.address[:2]
    return Endpoint.tcp(host, port)
