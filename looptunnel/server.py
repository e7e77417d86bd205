"""
Status API for a running tunnel server.

Served by uvicorn next to the tunnel listener when `looptunnel serve` is
given a status port. Read-only: it reports, it never controls.
"""

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Query

from .tunnel.listener import TunnelServer

logger = logging.getLogger(__name__)

app = FastAPI(title="looptunnel")

# The tunnel server being reported on; set by attach()
tunnel: Optional[TunnelServer] = None


def attach(server: Optional[TunnelServer]):
    """Point the status API at a tunnel server (None detaches)."""
    global tunnel
    tunnel = server


def _require_tunnel() -> TunnelServer:
    if tunnel is None:
        raise HTTPException(status_code=503, detail="No tunnel server attached")
    return tunnel


@app.get("/health")
def health():
    server = _require_tunnel()
    if not server.running:
        raise HTTPException(status_code=503, detail="Tunnel server not running")
    return {"status": "ok"}


@app.get("/api/status")
def get_status():
    return _require_tunnel().status()


@app.get("/api/errors")
def get_errors(limit: int = Query(20, ge=0, le=500)):
    server = _require_tunnel()
    return [error.to_dict() for error in server.recent_errors(limit)]
