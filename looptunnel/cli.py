import argparse
import json
import logging
import os
import signal
import socket
import sys
import threading

import requests
import uvicorn

from .config import DEFAULT_STATUS_HOST, DEFAULT_STATUS_PORT, TunnelConfig
from .tunnel.client import open_tunnel
from .tunnel.endpoint import Endpoint
from .tunnel.errors import TunnelError, TunnelStartupError
from .tunnel.listener import TunnelServer
from .tunnel.protocol import BUFFER_SIZE

logger = logging.getLogger(__name__)


def build_server(config: TunnelConfig) -> TunnelServer:
    return TunnelServer(
        config.endpoint,
        backlog=config.backlog,
        buffer_size=config.buffer_size,
        poll_timeout=config.poll_timeout,
        handshake_timeout=config.handshake_timeout,
        connect_timeout=config.connect_timeout,
        max_line_length=config.max_line_length,
    )


def serve(config: TunnelConfig) -> int:
    server = build_server(config)
    try:
        server.start()
    except TunnelStartupError as e:
        logger.error(f"Could not start tunnel server on {config.endpoint}: {e}")
        return 1

    if config.status_port is None:
        signal.signal(signal.SIGTERM, lambda signum, frame: server.stop())
        server.serve_forever()
        return 0

    from . import server as status_server

    status_server.attach(server)
    logger.info(f"Status API at http://{config.status_host}:{config.status_port}")
    try:
        uvicorn.run(
            status_server.app,
            host=config.status_host,
            port=config.status_port,
            log_level=config.log_level.lower(),
        )
    finally:
        server.stop()
        status_server.attach(None)
    return 0


def connect(endpoint: Endpoint, port: int, timeout: float) -> int:
    """Pipe stdin/stdout through a tunnel (usable as an ssh ProxyCommand)."""
    try:
        sock = open_tunnel(endpoint, port, timeout=timeout)
    except (OSError, TunnelError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    stdin_fd = sys.stdin.fileno()
    stdout_fd = sys.stdout.fileno()

    def writer():
        try:
            while True:
                data = os.read(stdin_fd, BUFFER_SIZE)
                if not data:
                    break
                sock.sendall(data)
        except OSError:
            pass
        finally:
            try:
                sock.shutdown(socket.SHUT_WR)
            except OSError:
                pass

    t = threading.Thread(target=writer, daemon=True)
    t.start()

    try:
        while True:
            data = sock.recv(BUFFER_SIZE)
            if not data:
                break
            view = memoryview(data)
            while view:
                written = os.write(stdout_fd, view)
                view = view[written:]
    except OSError as e:
        logger.debug(f"Tunnel read ended: {e}")
    finally:
        sock.close()
    return 0


def show_status(host: str, port: int) -> int:
    url = f"http://{host}:{port}/api/status"
    try:
        resp = requests.get(url, timeout=5)
    except requests.RequestException as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if resp.status_code != 200:
        print(f"Status request failed ({resp.status_code}): {resp.text}", file=sys.stderr)
        return 1

    print(json.dumps(resp.json(), indent=2))
    return 0


def main(argv=None) -> int:
    try:
        config = TunnelConfig.from_env()
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    parser = argparse.ArgumentParser(description="Loopback tunnel over vsock")
    parser.add_argument("--log-level", type=str, default=config.log_level, help="Logging level")
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Run the tunnel server")
    serve_parser.add_argument("--listen", type=str, default=str(config.endpoint),
                              help="Endpoint to listen on (vsock:PORT, unix:PATH, tcp:HOST:PORT)")
    serve_parser.add_argument("--backlog", type=int, default=config.backlog, help="Listen backlog")
    serve_parser.add_argument("--poll-timeout", type=float, default=config.poll_timeout,
                              help="Seconds between shutdown checks in each relay")
    serve_parser.add_argument("--handshake-timeout", type=float, default=config.handshake_timeout,
                              help="Seconds to wait for the CONNECT line (default: no limit)")
    serve_parser.add_argument("--connect-timeout", type=float, default=config.connect_timeout,
                              help="Seconds per loopback connect attempt")
    serve_parser.add_argument("--status-host", type=str, default=config.status_host,
                              help="Host for the status API")
    serve_parser.add_argument("--status-port", type=int, default=config.status_port,
                              help="Port for the status API (disabled if omitted)")

    connect_parser = subparsers.add_parser("connect", help="Pipe stdin/stdout through a tunnel")
    connect_parser.add_argument("port", type=int, help="Destination port on the server side")
    connect_parser.add_argument("--endpoint", type=str, default=str(config.endpoint),
                                help="Tunnel server endpoint")
    connect_parser.add_argument("--timeout", type=float, default=10.0, help="Handshake timeout")

    status_parser = subparsers.add_parser("status", help="Show tunnel server status")
    status_parser.add_argument("--host", type=str, default=DEFAULT_STATUS_HOST, help="Status API host")
    status_parser.add_argument("--port", type=int, default=config.status_port or DEFAULT_STATUS_PORT,
                               help="Status API port")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        try:
            config.endpoint = Endpoint.parse(args.listen)
        except ValueError as e:
            parser.error(str(e))
        config.backlog = args.backlog
        config.poll_timeout = args.poll_timeout
        config.handshake_timeout = args.handshake_timeout
        config.connect_timeout = args.connect_timeout
        config.status_host = args.status_host
        config.status_port = args.status_port
        config.log_level = args.log_level.upper()
        try:
            config.validate()
        except ValueError as e:
            parser.error(str(e))
        return serve(config)
    elif args.command == "connect":
        try:
            endpoint = Endpoint.parse(args.endpoint)
        except ValueError as e:
            parser.error(str(e))
        return connect(endpoint, args.port, args.timeout)
    elif args.command == "status":
        return show_status(args.host, args.port)
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
