# Author: PB and Claude
# Date: 2026-10-18
# License: (c) HRDAG, 2026, GPL-2 or newer
#
# ---
# src/ioserv/server.py

"""
Node API Service

REST API every node serves on its own address: identity and join for the
cluster, object IO against the local backend, lookup, stats and remote
commands. uvicorn runs it in a background thread owned by the node.
"""

from contextlib import asynccontextmanager
import errno
import logging
import threading
import time

from anyio import to_thread
import uvicorn
from fastapi import FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from ioserv.errors import (
    IOServError,
    MalformedAddress,
    MalformedIdentifier,
    NodeCreateError,
    ObjectNotFound,
)
from ioserv.parse import parse_addr, parse_numeric_id
from ioserv.types import CommandKind, IOCommand, RouteEntry

logger = logging.getLogger(__name__)

STARTUP_TIMEOUT = 10.0


# ============================================================================
# MODELS
# ============================================================================

class JoinRequest(BaseModel):
    id: str
    addr: str


class ExecRequest(BaseModel):
    id: str
    command: str


def _status_for(exc: IOServError) -> int:
    if isinstance(exc, ObjectNotFound):
        return 404
    if isinstance(exc, (MalformedIdentifier, MalformedAddress)):
        return 400
    if exc.code == -errno.ENODEV:
        return 503
    return 500


# ============================================================================
# APP
# ============================================================================

def create_app(node) -> FastAPI:
    """Build the API for `node` (an ioserv.node.Node)."""
    config = node.config
    pending = None
    if config.max_pending:
        pending = threading.BoundedSemaphore(config.max_pending * (config.io_thread_num or 1))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if config.io_thread_num:
            to_thread.current_default_thread_limiter().total_tokens = config.io_thread_num
        yield

    app = FastAPI(title="ioserv node", lifespan=lifespan)

    @app.exception_handler(IOServError)
    async def ioserv_error(request: Request, exc: IOServError):
        return JSONResponse(
            status_code=_status_for(exc),
            content={"detail": str(exc), "code": exc.code},
        )

    @app.get("/id")
    def identity():
        return node.identity()

    @app.post("/join")
    def join(req: JoinRequest):
        route = RouteEntry(id=parse_numeric_id(req.id), addr=parse_addr(req.addr))
        routes = node.accept_join(route)
        return {"routes": [r.to_dict() for r in routes]}

    @app.put("/objects/{hexid}")
    def write_object(hexid: str, offset: int = Form(0, ge=0), data: UploadFile = File(...)):
        key = parse_numeric_id(hexid)
        if pending is not None and not pending.acquire(blocking=False):
            raise HTTPException(status_code=503, detail="Too many pending writes")
        try:
            payload = data.file.read()
            reply = node.process(IOCommand(CommandKind.WRITE, key, offset, len(payload), payload))
        finally:
            if pending is not None:
                pending.release()
        return {"id": hexid, "size": reply.info["size"]}

    @app.get("/objects/{hexid}")
    def read_object(hexid: str, offset: int = Query(0, ge=0), size: int = Query(0, ge=0)):
        key = parse_numeric_id(hexid)
        reply = node.process(IOCommand(CommandKind.READ, key, offset, size))
        return Response(content=reply.data, media_type="application/octet-stream")

    @app.get("/objects/{hexid}/history")
    def read_history(hexid: str, offset: int = Query(0, ge=0), size: int = Query(0, ge=0)):
        key = parse_numeric_id(hexid)
        reply = node.process(IOCommand(CommandKind.HISTORY, key, offset, size))
        return Response(content=reply.data, media_type="application/octet-stream")

    @app.delete("/objects/{hexid}")
    def remove_object(hexid: str):
        key = parse_numeric_id(hexid)
        node.process(IOCommand(CommandKind.REMOVE, key))
        return {"id": hexid, "removed": True}

    @app.get("/lookup/{hexid}")
    def lookup(hexid: str):
        return node.describe_object(parse_numeric_id(hexid))

    @app.get("/stat")
    def stat():
        return node.local_stat().to_dict()

    @app.post("/exec")
    def execute(req: ExecRequest):
        parse_numeric_id(req.id)
        return node.exec_command(req.command).to_dict()

    return app


class NodeServer:
    """Runs a node's API with uvicorn in a background thread."""

    def __init__(self, node, startup_timeout: float = STARTUP_TIMEOUT):
        self.addr = node.addr
        self.startup_timeout = startup_timeout
        self.server = uvicorn.Server(uvicorn.Config(
            create_app(node),
            host=node.addr.host,
            port=node.addr.port,
            log_level="warning",
            log_config=None,
        ))
        self.thread = None

    def start(self) -> None:
        """
        Start listening, wait until the socket is bound.

        Raises:
            NodeCreateError: the address can't be bound
        """
        self.thread = threading.Thread(
            target=self.server.run, name=f"ioserv-{self.addr}", daemon=True
        )
        self.thread.start()

        deadline = time.monotonic() + self.startup_timeout
        while not self.server.started:
            if not self.thread.is_alive():
                raise NodeCreateError(f"Failed to listen on {self.addr}")
            if time.monotonic() > deadline:
                self.stop()
                raise NodeCreateError(f"Timed out starting listener on {self.addr}")
            time.sleep(0.05)
        logger.info(f"listening on {self.addr}")

    def stop(self) -> None:
        if self.thread is None:
            return
        self.server.should_exit = True
        self.thread.join(timeout=self.startup_timeout)
        self.thread = None
