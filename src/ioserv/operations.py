# Author: PB and Claude
# Date: 2026-10-18
# License: (c) HRDAG, 2026, GPL-2 or newer
#
# ---
# src/ioserv/operations.py

"""
ioserv Operations

Node bootstrap and one-shot operation dispatch. These functions turn merged
settings into a running node and drive the requested operations against it,
returning typed results.
"""

import logging
from pathlib import Path
from typing import Callable, Optional

from ioserv.backends import select_backend
from ioserv.config import IOServConfig, NodeConfig
from ioserv.errors import IOServError, JoinError, PeerAddError, TransformRegisterError
from ioserv.log import open_log_sink
from ioserv.node import Node, create_node
from ioserv.parse import parse_addr, parse_numeric_id
from ioserv.transform import TransformChain, build_transform_chain
from ioserv.types import (
    JOIN_NETWORK,
    OPERATION_ORDER,
    RC_SUCCESS,
    AddressSpec,
    OperationKind,
    OperationRequest,
    OperationResult,
    ZERO_ID,
)

logger = logging.getLogger(__name__)


def prepare(settings: IOServConfig) -> tuple[NodeConfig, list[AddressSpec], TransformChain]:
    """
    Build the node descriptor, remote list and transform chain from settings.

    Parsing happens first so a malformed address or id aborts before any
    file or store is opened.

    Raises:
        MalformedAddress, MalformedIdentifier, UnknownTransform,
        BackendInitError: bad settings (no partial config is returned)
        OSError: the log file can't be opened
    """
    addr = parse_addr(settings.addr) if settings.addr else None
    remotes = [parse_addr(r) for r in settings.remotes]
    node_id = parse_numeric_id(settings.id) if settings.id else ZERO_ID
    chain = build_transform_chain(settings.transforms)

    config = NodeConfig(addr=addr, id=node_id)
    if settings.wait_timeout is not None:
        config.wait_timeout = settings.wait_timeout
    if settings.log_mask is not None:
        config.log_mask = settings.log_mask
    if settings.resend_count is not None:
        config.resend_count = settings.resend_count
    if settings.max_pending is not None:
        config.max_pending = settings.max_pending
    if settings.io_threads is not None:
        config.io_thread_num = settings.io_threads
    if settings.join:
        config.join |= JOIN_NETWORK

    if settings.log_file:
        config.log_handler = open_log_sink(Path(settings.log_file), config.log_mask)

    try:
        config.backend = select_backend(
            Path(settings.root) if settings.root else None,
            use_kv=(settings.backend_kind == "kv"),
            num_bits=settings.bits,
        )
    except IOServError:
        if config.log_handler is not None:
            config.log_handler.close()
        raise

    return config, remotes, chain


def bootstrap(
    config: NodeConfig,
    remotes: list[AddressSpec],
    chain: TransformChain,
    node_factory: Callable[[NodeConfig], Node] = create_node,
) -> Node:
    """
    Create a node, register transforms, add remote peers and join if asked.

    Peer-add failures are soft: they're recorded in node.peer_errors and the
    remaining peers are still tried. Every other failure destroys the node
    and propagates.

    Raises:
        NodeCreateError: node can't be created
        TransformRegisterError: a transform was refused
        JoinError: join was requested and failed
    """
    node = node_factory(config)

    try:
        for engine in chain:
            node.add_transform(engine)
    except TransformRegisterError:
        node.destroy()
        raise

    for addr in remotes:
        try:
            node.add_state(addr)
        except PeerAddError as e:
            logger.error(f"{e} (code {e.code})")
            node.peer_errors.append(e)

    if config.joins:
        try:
            node.join()
        except JoinError:
            node.destroy()
            raise

    return node


def build_requests(
    write: str = None,
    read: str = None,
    history: str = None,
    remove: str = None,
    command: str = None,
    lookup: str = None,
    stat: bool = False,
    trans_id: Optional[bytes] = None,
    offset: int = 0,
    size: int = 0,
) -> list[OperationRequest]:
    """Queue the requested operations, sharing id and byte window."""
    queued = []
    for kind, path in (
        (OperationKind.WRITE, write),
        (OperationKind.READ, read),
        (OperationKind.HISTORY, history),
    ):
        if path:
            queued.append(OperationRequest(kind, path, trans_id, offset, size))
    if remove:
        queued.append(OperationRequest(OperationKind.REMOVE, remove, trans_id))
    if command:
        queued.append(OperationRequest(OperationKind.COMMAND, command, trans_id))
    if lookup:
        queued.append(OperationRequest(OperationKind.LOOKUP, lookup))
    if stat:
        queued.append(OperationRequest(OperationKind.STAT))
    return queued


def _run(node: Node, req: OperationRequest):
    if req.kind == OperationKind.WRITE:
        return node.write_file(req.path, req.id, req.offset, req.size)
    if req.kind == OperationKind.READ:
        return node.read_file(req.path, req.id, req.offset, req.size)
    if req.kind == OperationKind.HISTORY:
        return node.read_file(req.path, req.id, req.offset, req.size, history=True)
    if req.kind == OperationKind.REMOVE:
        return node.remove_file(req.path, req.id)
    if req.kind == OperationKind.COMMAND:
        return node.send_cmd(req.id, req.path)
    if req.kind == OperationKind.LOOKUP:
        return node.lookup(req.path)
    return node.request_stat()


def dispatch(node: Node, requests: list[OperationRequest]) -> list[OperationResult]:
    """
    Run requested operations in fixed order: write, read, history, remove,
    command, lookup, stat.

    Each operation runs even if an earlier one failed. Never raises for
    operation failures - check each result's returncode.
    """
    results = []
    for req in sorted(requests, key=lambda r: OPERATION_ORDER.index(r.kind)):
        try:
            detail = _run(node, req)
        except IOServError as e:
            logger.error(f"{req.kind.value} {req.path or ''} failed: {e} (code {e.code})")
            results.append(OperationResult(req.kind, req.path, e.code, error=str(e)))
            continue
        results.append(OperationResult(req.kind, req.path, RC_SUCCESS, detail=detail))
    return results


def first_failure(results: list[OperationResult]) -> int:
    """Exit code for a dispatch: the first failure's code, else 0."""
    for result in results:
        if not result.ok:
            return result.returncode
    return RC_SUCCESS
