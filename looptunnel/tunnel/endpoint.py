"""
Tunnel endpoints.

The relay itself does not care what kind of stream socket it accepts on.
An Endpoint names the transport and address:

    vsock:5001          AF_VSOCK, any CID, port 5001
    vsock:3:5001        AF_VSOCK, CID 3, port 5001
    unix:/run/vm.sock   AF_UNIX stream socket at that path
    tcp:127.0.0.1:5001  plain TCP, used for tests and development

Firecracker forwards a guest's AF_VSOCK connection to port P into the Unix
socket at `{uds_path}_{P}`, so a host-side listener for a Firecracker guest
is a `unix:` endpoint (see Endpoint.firecracker()).
"""

import os
import socket
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple, Union

from .protocol import DEFAULT_PORT

HOST_CID = 2  # Well-known CID for the host in vsock


class TransportKind(str, Enum):
    VSOCK = "vsock"
    UNIX = "unix"
    TCP = "tcp"


@dataclass(frozen=True)
class Endpoint:
    """A stream socket address the tunnel server listens on or a client dials."""

    kind: TransportKind
    port: int = DEFAULT_PORT
    host: str = "127.0.0.1"
    cid: Optional[int] = None
    path: Optional[str] = None

    @classmethod
    def vsock(cls, port: int = DEFAULT_PORT, cid: Optional[int] = None) -> "Endpoint":
        return cls(kind=TransportKind.VSOCK, port=port, cid=cid)

    @classmethod
    def unix(cls, path: str) -> "Endpoint":
        return cls(kind=TransportKind.UNIX, path=str(path))

    @classmethod
    def tcp(cls, host: str = "127.0.0.1", port: int = DEFAULT_PORT) -> "Endpoint":
        return cls(kind=TransportKind.TCP, host=host, port=port)

    @classmethod
    def firecracker(cls, uds_path: str, port: int = DEFAULT_PORT) -> "Endpoint":
        """Host-side endpoint for guest vsock connections routed by Firecracker."""
        return cls.unix(f"{uds_path}_{port}")

    @classmethod
    def parse(cls, text: str) -> "Endpoint":
        """Parse `kind:address`. A bare number is a vsock port.

        Raises:
            ValueError: on an unknown kind or malformed address
        """
        text = text.strip()
        if text.isdigit():
            return cls.vsock(int(text))

        kind, sep, rest = text.partition(":")
        if not sep or not rest:
            raise ValueError(f"Invalid endpoint {text!r}, expected kind:address")

        kind = kind.lower()
        if kind == TransportKind.UNIX.value:
            return cls.unix(rest)

        if kind == TransportKind.VSOCK.value:
            parts = rest.split(":")
            if len(parts) == 1:
                return cls.vsock(_parse_int(parts[0], text))
            if len(parts) == 2:
                return cls.vsock(_parse_int(parts[1], text), cid=_parse_int(parts[0], text))
            raise ValueError(f"Invalid vsock endpoint {text!r}")

        if kind == TransportKind.TCP.value:
            host, sep, port = rest.rpartition(":")
            if not sep:
                raise ValueError(f"Invalid tcp endpoint {text!r}, expected tcp:host:port")
            host = host.strip("[]") or "127.0.0.1"
            return cls.tcp(host, _parse_int(port, text))

        raise ValueError(f"Unknown endpoint kind {kind!r} in {text!r}")

    @property
    def family(self) -> int:
        if self.kind == TransportKind.VSOCK:
            try:
                return socket.AF_VSOCK
            except AttributeError:
                raise OSError("AF_VSOCK is not available on this platform")
        if self.kind == TransportKind.UNIX:
            return socket.AF_UNIX
        if ":" in self.host:
            return socket.AF_INET6
        return socket.AF_INET

    def bind_address(self) -> Union[str, Tuple]:
        if self.kind == TransportKind.VSOCK:
            cid = self.cid if self.cid is not None else socket.VMADDR_CID_ANY
            return (cid, self.port)
        if self.kind == TransportKind.UNIX:
            return self.path
        return (self.host, self.port)

    def connect_address(self) -> Union[str, Tuple]:
        if self.kind == TransportKind.VSOCK:
            cid = self.cid if self.cid is not None else HOST_CID
            return (cid, self.port)
        return self.bind_address()

    def __str__(self) -> str:
        if self.kind == TransportKind.VSOCK:
            if self.cid is None:
                return f"vsock:{self.port}"
            return f"vsock:{self.cid}:{self.port}"
        if self.kind == TransportKind.UNIX:
            return f"unix:{self.path}"
        return f"tcp:{self.host}:{self.port}"


def _parse_int(value: str, text: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Invalid number {value!r} in endpoint {text!r}")


def prepare_unix_path(path: str):
    """Remove a stale socket file and make sure the parent directory exists."""
    if os.path.exists(path):
        os.unlink(path)
    Path(path).parent.mkdir(parents=True, exist_ok=True)


def create_connection(endpoint: Endpoint, timeout: Optional[float] = 10.0) -> socket.socket:
    """Open a stream connection to a tunnel endpoint.

    Raises:
        OSError: if the connection cannot be established
    """
    sock = socket.socket(endpoint.family, socket.SOCK_STREAM)
    try:
        sock.settimeout(timeout)
        sock.connect(endpoint.connect_address())
    except OSError:
        sock.close()
        raise
    return sock
