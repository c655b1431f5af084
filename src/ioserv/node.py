# Author: PB and Claude
# Date: 2026-10-18
# License: (c) HRDAG, 2026, GPL-2 or newer
#
# ---
# src/ioserv/node.py

"""
ioserv Node

A node listens on its configured address, knows a set of peer states, and
routes every object id to the serving member that owns it on the id ring:
the member with the greatest id <= the object id, wrapping around to the
greatest id overall.

A node that joined the network is itself a serving member and stores objects
in its local backend. A node that didn't join is a client: it only relays
requests to the members it knows about.
"""

import errno
import logging
import os
import shlex
import signal
import subprocess
import threading
from datetime import datetime, timezone
from typing import Optional

import requests

from ioserv.config import NodeConfig
from ioserv.errors import (
    JoinError,
    NodeCreateError,
    ObjectNotFound,
    PeerAddError,
    TransferError,
    TransformRegisterError,
)
from ioserv.log import install_log_sink, remove_log_sink
from ioserv.peer_api import PeerAPIError, PeerClient, route_from_dict
from ioserv.server import NodeServer
from ioserv.transform import DEFAULT_TRANSFORM, TransformEngine, crypto_engine_init
from ioserv.types import (
    AddressSpec,
    CommandKind,
    CommandResult,
    IOCommand,
    IOReply,
    LookupResult,
    NodeStat,
    RouteEntry,
    StatReport,
    ZERO_ID,
)

logger = logging.getLogger(__name__)


def route_for(routes: list[RouteEntry], key: bytes) -> RouteEntry:
    """
    Pick the member owning `key`: greatest id <= key, else the greatest id.

    Raises:
        TransferError: no serving members are known
    """
    if not routes:
        raise TransferError("No storage members known", code=-errno.ENXIO)

    ordered = sorted(routes, key=lambda r: r.id)
    owner = ordered[-1]
    for route in ordered:
        if route.id > key:
            break
        owner = route
    return owner


def _remote_error(e: Exception, what: str) -> TransferError:
    """Translate a peer client failure into a TransferError."""
    if isinstance(e, PeerAPIError) and e.status_code == 404:
        return ObjectNotFound(f"{what}: {e}")
    if isinstance(e, requests.exceptions.Timeout):
        return TransferError(f"{what}: timed out", code=-errno.ETIMEDOUT)
    return TransferError(f"{what}: {e}")


class Node:
    """A storage cluster node built from a NodeConfig."""

    def __init__(self, config: NodeConfig):
        errors, warnings = config.validate()
        if errors:
            raise NodeCreateError(f"Invalid node config: {'; '.join(errors)}")

        self.config = config
        self.id = config.id
        self.addr = config.addr
        self.backend = config.backend
        self.transforms: list[TransformEngine] = []
        self.states: dict[AddressSpec, dict] = {}
        self.routes: dict[AddressSpec, RouteEntry] = {}
        self.peer_errors: list[PeerAddError] = []
        self.states_attempted = 0
        self.joined = False
        self.server: Optional[NodeServer] = None

        self._clients: dict[AddressSpec, PeerClient] = {}
        self._default_transform: Optional[TransformEngine] = None
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._destroyed = False

        if config.log_handler is not None:
            install_log_sink(config.log_handler)
        for w in warnings:
            logger.warning(w)
        logger.info(f"node {self.id.hex()} created at {self.addr}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start listening on the node address."""
        self.server = NodeServer(self)
        self.server.start()

    def stop(self) -> None:
        """Make serve_forever() return."""
        self._stop.set()

    def serve_forever(self) -> None:
        """Block serving cluster requests until SIGINT/SIGTERM, then destroy the node."""
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGTERM, lambda signum, frame: self.stop())
        logger.info(f"node {self.addr} serving")
        try:
            while not self._stop.wait(1):
                pass
        except KeyboardInterrupt:
            logger.info("interrupted")
        finally:
            self.destroy()

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        if self.server is not None:
            self.server.stop()
        for client in self._clients.values():
            client.close()
        if self.backend is not None:
            self.backend.close()
        logger.info(f"node {self.addr} destroyed")
        if self.config.log_handler is not None:
            remove_log_sink(self.config.log_handler)

    # ------------------------------------------------------------------
    # Transforms, states, routes
    # ------------------------------------------------------------------

    def add_transform(self, engine: TransformEngine) -> None:
        """
        Register a transform; registration order is priority order.

        Raises:
            TransformRegisterError: incomplete engine or duplicate name
        """
        missing = [
            name for name in ("init", "update", "final", "cleanup")
            if not callable(getattr(engine, name, None))
        ]
        if not engine.name or missing:
            raise TransformRegisterError(
                f"Transform '{engine.name}' is incomplete (missing {', '.join(missing) or 'name'})"
            )
        if any(t.name == engine.name for t in self.transforms):
            raise TransformRegisterError(f"Transform '{engine.name}' is already registered")
        self.transforms.append(engine)
        logger.info(f"transform {engine.name} registered")

    @property
    def default_transform(self) -> TransformEngine:
        if self._default_transform is None:
            self._default_transform = crypto_engine_init(DEFAULT_TRANSFORM)
        return self._default_transform

    def object_keys(self, name: str, id_: Optional[bytes] = None) -> list[tuple[str, bytes]]:
        """Ids an object name maps to: the explicit id, or one per transform."""
        if id_ is not None:
            return [("id", id_)]
        engines = self.transforms or [self.default_transform]
        return [(e.name, e.transform(name.encode())) for e in engines]

    def _client(self, addr: AddressSpec) -> PeerClient:
        client = self._clients.get(addr)
        if client is None:
            client = PeerClient(
                addr,
                timeout=self.config.wait_timeout,
                resend_count=self.config.resend_count,
            )
            self._clients[addr] = client
        return client

    def _merge_routes(self, routes) -> None:
        with self._lock:
            for route in routes:
                if route.addr == self.addr:
                    continue
                self.routes[route.addr] = route

    def add_state(self, addr: AddressSpec) -> dict:
        """
        Connect to a remote peer and learn its routes.

        Raises:
            PeerAddError: peer unreachable or its reply is unusable
        """
        self.states_attempted += 1
        if addr == self.addr:
            raise PeerAddError(f"Refusing to add own address {addr} as a peer", code=-errno.EINVAL)

        try:
            info = self._client(addr).id()
            peer_id = bytes.fromhex(info["id"])
            routes = [route_from_dict(r) for r in info.get("routes", [])]
        except requests.exceptions.Timeout as e:
            raise PeerAddError(f"Failed to add peer {addr}: {e}", code=-errno.ETIMEDOUT)
        except (PeerAPIError, requests.exceptions.RequestException) as e:
            raise PeerAddError(f"Failed to add peer {addr}: {e}")
        except (KeyError, ValueError) as e:
            raise PeerAddError(f"Peer {addr} sent an invalid identity: {e}", code=-errno.EPROTO)

        with self._lock:
            self.states[addr] = info
            if info.get("joined"):
                self.routes[addr] = RouteEntry(peer_id, addr)
        self._merge_routes(routes)
        logger.info(f"added peer {addr} id={peer_id.hex()} joined={bool(info.get('joined'))}")
        return info

    def join(self) -> None:
        """
        Become a serving member and announce it to every known peer.

        Raises:
            JoinError: no backend, no reachable peer, or every announce failed
        """
        if self.backend is None:
            raise JoinError("Can't join the network without a storage backend", code=-errno.ENODEV)
        if self.states_attempted and not self.states:
            raise JoinError(
                f"Can't join the network: none of {self.states_attempted} remote peers is reachable"
            )

        with self._lock:
            self.joined = True
            self.routes[self.addr] = RouteEntry(self.id, self.addr)

        accepted = 0
        last_error = None
        for addr in list(self.states):
            try:
                self._merge_routes(self._client(addr).join(self.id, self.addr))
                accepted += 1
            except (PeerAPIError, requests.exceptions.RequestException) as e:
                last_error = e
                logger.warning(f"join announce to {addr} failed: {e}")

        if self.states and not accepted:
            with self._lock:
                self.joined = False
                self.routes.pop(self.addr, None)
            raise JoinError(f"Can't join the network: every peer refused ({last_error})")

        logger.info(f"joined the network, {len(self.routes)} serving members known")

    def accept_join(self, route: RouteEntry) -> list[RouteEntry]:
        """Record a member announced via /join, return the known routes."""
        self._merge_routes([route])
        logger.info(f"member {route.addr} id={route.id.hex()} joined")
        return self.route_list()

    @property
    def last_peer_error(self) -> Optional[PeerAddError]:
        """The most recent peer-add failure, reported but never fatal."""
        return self.peer_errors[-1] if self.peer_errors else None

    def route_list(self) -> list[RouteEntry]:
        with self._lock:
            return list(self.routes.values())

    def route(self, key: bytes) -> RouteEntry:
        return route_for(self.route_list(), key)

    def identity(self) -> dict:
        return {
            "id": self.id.hex(),
            "addr": str(self.addr),
            "joined": self.joined,
            "routes": [r.to_dict() for r in self.route_list()],
        }

    # ------------------------------------------------------------------
    # Command processing
    # ------------------------------------------------------------------

    def process(self, cmd: IOCommand) -> IOReply:
        """Run a command against the local backend."""
        if self.backend is None:
            raise TransferError("Node has no storage backend", code=-errno.ENODEV)
        return self.backend.command_handler(cmd)

    def _is_local(self, route: RouteEntry) -> bool:
        return self.joined and route.addr == self.addr

    def _send(self, route: RouteEntry, cmd: IOCommand) -> IOReply:
        """Send a command to the member at `route`, locally when that's us."""
        if self._is_local(route):
            return self.process(cmd)

        client = self._client(route.addr)
        what = f"{cmd.kind.value} {cmd.id.hex()} on {route.addr}"
        try:
            if cmd.kind == CommandKind.WRITE:
                return IOReply(info={"size": client.write(cmd.id, cmd.offset, cmd.data)})
            if cmd.kind == CommandKind.READ:
                return IOReply(data=client.read(cmd.id, cmd.offset, cmd.size))
            if cmd.kind == CommandKind.HISTORY:
                return IOReply(data=client.read_history(cmd.id, cmd.offset, cmd.size))
            if cmd.kind == CommandKind.REMOVE:
                client.remove(cmd.id)
                return IOReply()
            if cmd.kind == CommandKind.LOOKUP:
                return IOReply(info=client.lookup(cmd.id))
            return IOReply(info=client.stat())
        except (PeerAPIError, requests.exceptions.RequestException) as e:
            raise _remote_error(e, what)

    def describe_object(self, key: bytes) -> dict:
        """Local answer to a lookup: who we are and whether we hold the object."""
        info = self.process(IOCommand(CommandKind.LOOKUP, key)).info
        return {"addr": str(self.addr), "node_id": self.id.hex(), **info}

    def exec_command(self, command: str) -> CommandResult:
        """Execute a command on this node (no shell)."""
        args = shlex.split(command)
        if not args:
            raise TransferError("Empty command")

        logger.info(f"executing '{command}'")
        try:
            proc = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=self.config.wait_timeout,
            )
        except FileNotFoundError as e:
            return CommandResult(str(self.addr), command, 127, stderr=str(e))
        except subprocess.TimeoutExpired:
            return CommandResult(
                str(self.addr), command, 124,
                stderr=f"timed out after {self.config.wait_timeout}s",
            )
        return CommandResult(str(self.addr), command, proc.returncode, proc.stdout, proc.stderr)

    def local_stat(self) -> NodeStat:
        try:
            la = list(os.getloadavg())
        except (AttributeError, OSError):
            la = []
        stat = NodeStat(addr=str(self.addr), id=self.id.hex(), la=la)
        if self.backend is not None:
            info = self.backend.stat()
            stat.storage_total = info["storage_total"]
            stat.storage_free = info["storage_free"]
            stat.objects = info["objects"]
            stat.backend = info["backend"]
        return stat

    # ------------------------------------------------------------------
    # Client operations
    # ------------------------------------------------------------------

    def write_file(self, path: str, id_: Optional[bytes] = None, offset: int = 0, size: int = 0) -> list[dict]:
        """
        Write [offset, offset+size) of a local file into the cluster.

        size 0 means up to the end of the file. The data is stored at the
        same offset under every object id the name maps to.

        Raises:
            TransferError: local file unreadable or a member rejected the write
        """
        try:
            with open(path, "rb") as f:
                f.seek(offset)
                data = f.read(size) if size else f.read()
        except OSError as e:
            raise TransferError(f"Failed to read {path}: {e}", code=-(e.errno or errno.EIO))

        results = []
        for label, key in self.object_keys(path, id_):
            route = self.route(key)
            reply = self._send(route, IOCommand(CommandKind.WRITE, key, offset, len(data), data))
            written = reply.info.get("size", len(data))
            logger.info(f"write {path} ({label}) {key.hex()} -> {route.addr}: {written} bytes at {offset}")
            results.append({"transform": label, "id": key.hex(), "addr": str(route.addr), "size": written})
        return results

    def _store_local(self, dest: str, data: bytes, offset: int, truncate: bool) -> None:
        mode = "r+b" if os.path.exists(dest) and not truncate else "wb"
        try:
            with open(dest, mode) as f:
                f.seek(offset)
                f.write(data)
        except OSError as e:
            raise TransferError(f"Failed to store {dest}: {e}", code=-(e.errno or errno.EIO))

    def read_file(
        self,
        path: str,
        id_: Optional[bytes] = None,
        offset: int = 0,
        size: int = 0,
        history: bool = False,
    ) -> dict:
        """
        Read an object from the cluster into the local file `path`.

        With history=True the window is taken from the object's history log
        and stored into `path`.history. Ids are tried in transform order,
        the first one that succeeds wins.

        Raises:
            TransferError: no id could be read
        """
        kind = CommandKind.HISTORY if history else CommandKind.READ
        last_error = None
        for label, key in self.object_keys(path, id_):
            try:
                route = self.route(key)
                data = self._send(route, IOCommand(kind, key, offset, size)).data
            except TransferError as e:
                logger.warning(f"{kind.value} {path} ({label}) {key.hex()} failed: {e}")
                last_error = e
                continue

            dest = f"{path}.history" if history else path
            self._store_local(dest, data, offset, truncate=(offset == 0 and size == 0))
            logger.info(f"{kind.value} {path} ({label}) {key.hex()} <- {route.addr}: {len(data)} bytes")
            return {"transform": label, "id": key.hex(), "addr": str(route.addr), "size": len(data), "dest": dest}

        raise TransferError(f"Failed to read {path}: {last_error}", code=last_error.code)

    def remove_file(self, path: str, id_: Optional[bytes] = None) -> list[dict]:
        """
        Remove every id of an object from the cluster.

        Raises:
            TransferError: no id could be removed
        """
        removed = []
        last_error = None
        for label, key in self.object_keys(path, id_):
            try:
                route = self.route(key)
                self._send(route, IOCommand(CommandKind.REMOVE, key))
            except TransferError as e:
                logger.warning(f"remove {path} ({label}) {key.hex()} failed: {e}")
                last_error = e
                continue
            logger.info(f"removed {path} ({label}) {key.hex()} on {route.addr}")
            removed.append({"transform": label, "id": key.hex(), "addr": str(route.addr)})

        if not removed:
            raise TransferError(f"Failed to remove {path}: {last_error}", code=last_error.code)
        return removed

    def send_cmd(self, trans_id: Optional[bytes], command: str) -> CommandResult:
        """
        Execute a command on the member owning `trans_id` (zero id if None).

        Raises:
            TransferError: member unreachable or the command exited non-zero
        """
        key = trans_id if trans_id is not None else ZERO_ID
        route = self.route(key)
        if self._is_local(route):
            result = self.exec_command(command)
        else:
            try:
                result = CommandResult.from_dict(self._client(route.addr).exec(key, command))
            except (PeerAPIError, requests.exceptions.RequestException) as e:
                raise _remote_error(e, f"command '{command}' on {route.addr}")

        logger.info(f"command '{command}' on {route.addr} exited {result.returncode}")
        if result.returncode != 0:
            raise TransferError(
                f"Command '{command}' on {route.addr} exited {result.returncode}: {result.stderr.strip()}"
            )
        return result

    def lookup(self, path: str) -> list[LookupResult]:
        """Find the member hosting each id of an object."""
        results = []
        for label, key in self.object_keys(path):
            route = self.route(key)
            info = self._send(route, IOCommand(CommandKind.LOOKUP, key)).info
            result = LookupResult(
                transform=label,
                id=key,
                addr=str(route.addr),
                node_id=route.id,
                exists=bool(info.get("exists")),
                size=info.get("size", 0),
            )
            logger.info(f"lookup {path} ({label}) {key.hex()}: {route.addr} exists={result.exists}")
            results.append(result)
        return results

    def request_stat(self) -> StatReport:
        """
        Collect statistics from this node (if serving) and every known peer.

        Raises:
            TransferError: no statistics could be collected
        """
        nodes = []
        if self.joined:
            nodes.append(self.local_stat())
        for addr in list(self.states):
            try:
                nodes.append(NodeStat.from_dict(self._client(addr).stat()))
            except (PeerAPIError, requests.exceptions.RequestException) as e:
                logger.warning(f"stat from {addr} failed: {e}")
                nodes.append(NodeStat(addr=str(addr), id="", error=str(e)))

        report = StatReport(checked_at=datetime.now(timezone.utc), nodes=nodes)
        if not report.nodes_ok:
            raise TransferError("No statistics collected from any node", code=-errno.ENXIO)
        return report


def create_node(config: NodeConfig) -> Node:
    """
    Create a node and start listening on its address.

    Raises:
        NodeCreateError: invalid config or the address can't be bound
    """
    node = Node(config)
    try:
        node.start()
    except NodeCreateError:
        node.destroy()
        raise
    return node
