# Author: PB and Claude
# Date: 2026-10-18
# License: (c) HRDAG, 2026, GPL-2 or newer
#
# ---
# src/ioserv/__init__.py

"""
ioserv - storage cluster node

A node of a content-addressed storage cluster: it listens on a network
address, joins a set of remote peers, stores objects in a local backend and
runs one-shot client operations (write, read, history, remove, command,
lookup, stat) against the cluster.

Basic usage:
    from ioserv import load_config, prepare, bootstrap, build_requests, dispatch

    settings = load_config(overrides={"node": {"addr": "127.0.0.1:1025:2"}})
    config, remotes, chain = prepare(settings)
    node = bootstrap(config, remotes, chain)
    results = dispatch(node, build_requests(stat=True))
    node.destroy()
"""

# Config
from ioserv.config import (
    IOServConfig,
    NodeConfig,
    load_config,
)

# Types
from ioserv.types import (
    AddressSpec,
    HistoryEntry,
    OperationKind,
    OperationResult,
    RouteEntry,
    StatReport,
    RC_SUCCESS,
)

# Errors
from ioserv.errors import (
    IOServError,
    JoinError,
    MalformedAddress,
    MalformedIdentifier,
    NodeCreateError,
    PeerAddError,
    TransferError,
)

# Operations
from ioserv.node import Node
from ioserv.operations import (
    bootstrap,
    build_requests,
    dispatch,
    prepare,
)

# CLI
from ioserv.cli import cli

__all__ = [
    # Config
    "IOServConfig",
    "NodeConfig",
    "load_config",
    # Types
    "AddressSpec",
    "HistoryEntry",
    "OperationKind",
    "OperationResult",
    "RouteEntry",
    "StatReport",
    "RC_SUCCESS",
    # Errors
    "IOServError",
    "JoinError",
    "MalformedAddress",
    "MalformedIdentifier",
    "NodeCreateError",
    "PeerAddError",
    "TransferError",
    # Operations
    "Node",
    "bootstrap",
    "build_requests",
    "dispatch",
    "prepare",
    # CLI
    "cli",
]
