# Author: PB and Claude
# Date: 2026-10-18
# License: (c) HRDAG, 2026, GPL-2 or newer
#
# ---
# src/ioserv/types.py

"""
ioserv Type Definitions

Dataclasses for addresses, IO commands, history records and operation
results, with serialization support.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
import json
import socket
import struct
import time


ID_SIZE = 20                    # bytes in a node/object/transaction id
ZERO_ID = bytes(ID_SIZE)

JOIN_NETWORK = 1 << 0           # NodeConfig.join bit: become a serving member

# Return codes for OperationResult
RC_SUCCESS = 0


@dataclass(frozen=True)
class AddressSpec:
    """A network endpoint parsed from 'host:port:family'."""
    host: str
    port: int
    family: int = socket.AF_INET

    def __str__(self) -> str:
        return f"{self.host}:{self.port}:{self.family}"

    @property
    def url(self) -> str:
        """Base URL used to reach the node's HTTP API."""
        if self.family == socket.AF_INET6:
            return f"http://[{self.host}]:{self.port}"
        return f"http://{self.host}:{self.port}"


class CommandKind(str, Enum):
    """Commands understood by a storage backend's command handler."""
    WRITE = "write"
    READ = "read"
    HISTORY = "history"
    REMOVE = "remove"
    LOOKUP = "lookup"
    STAT = "stat"


@dataclass
class IOCommand:
    """A single request handed to a backend command handler."""
    kind: CommandKind
    id: bytes = ZERO_ID
    offset: int = 0
    size: int = 0                   # 0 = up to the end of the object
    data: bytes = b""


@dataclass
class IOReply:
    """Reply produced by a backend command handler."""
    data: bytes = b""
    info: dict = field(default_factory=dict)


@dataclass
class HistoryEntry:
    """One write transaction recorded in an object's history log."""
    id: bytes
    offset: int
    size: int
    timestamp: float
    flags: int = 0

    RECORD = struct.Struct("<20sQQdI")

    def pack(self) -> bytes:
        return self.RECORD.pack(self.id, self.offset, self.size, self.timestamp, self.flags)

    @classmethod
    def unpack(cls, raw: bytes) -> "HistoryEntry":
        id_, offset, size, timestamp, flags = cls.RECORD.unpack(raw)
        return cls(id=id_, offset=offset, size=size, timestamp=timestamp, flags=flags)

    @classmethod
    def parse_log(cls, log: bytes) -> list["HistoryEntry"]:
        """Split a raw history log into records (a trailing partial record is ignored)."""
        step = cls.RECORD.size
        return [cls.unpack(log[i:i + step]) for i in range(0, len(log) - step + 1, step)]

    @classmethod
    def now(cls, id_: bytes, offset: int, size: int, flags: int = 0) -> "HistoryEntry":
        return cls(id=id_, offset=offset, size=size, timestamp=time.time(), flags=flags)

    def to_dict(self) -> dict:
        return {
            "id": self.id.hex(),
            "offset": self.offset,
            "size": self.size,
            "timestamp": datetime.fromtimestamp(self.timestamp, timezone.utc).isoformat(),
            "flags": self.flags,
        }


@dataclass
class RouteEntry:
    """A serving cluster member: its ring id and where to reach it."""
    id: bytes
    addr: AddressSpec

    def to_dict(self) -> dict:
        return {"id": self.id.hex(), "addr": str(self.addr)}


class OperationKind(str, Enum):
    """Operations the dispatcher runs, in dispatch order."""
    WRITE = "write"
    READ = "read"
    HISTORY = "history"
    REMOVE = "remove"
    COMMAND = "command"
    LOOKUP = "lookup"
    STAT = "stat"


OPERATION_ORDER = list(OperationKind)


@dataclass
class OperationRequest:
    """A queued one-shot operation against the cluster."""
    kind: OperationKind
    path: Optional[str] = None      # file name, or the command string for COMMAND
    id: Optional[bytes] = None      # explicit object / transaction id
    offset: int = 0
    size: int = 0


@dataclass
class OperationResult:
    """Outcome of one dispatched operation."""
    kind: OperationKind
    target: Optional[str]
    returncode: int
    error: Optional[str] = None
    detail: object = None

    @property
    def ok(self) -> bool:
        return self.returncode == RC_SUCCESS

    def to_dict(self) -> dict:
        detail = self.detail
        if isinstance(detail, list):
            detail = [d.to_dict() if hasattr(d, "to_dict") else d for d in detail]
        elif hasattr(detail, "to_dict"):
            detail = detail.to_dict()
        return {
            "kind": self.kind.value,
            "target": self.target,
            "returncode": self.returncode,
            "error": self.error,
            "detail": detail,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


@dataclass
class LookupResult:
    """Which member hosts an object id."""
    transform: str
    id: bytes
    addr: str
    node_id: bytes
    exists: bool = False
    size: int = 0

    def to_dict(self) -> dict:
        return {
            "transform": self.transform,
            "id": self.id.hex(),
            "addr": self.addr,
            "node_id": self.node_id.hex(),
            "exists": self.exists,
            "size": self.size,
        }


@dataclass
class NodeStat:
    """Statistics reported by a single node."""
    addr: str
    id: str
    la: list[float] = field(default_factory=list)    # 1, 5, 15 minute load averages
    storage_total: int = 0
    storage_free: int = 0
    objects: int = 0
    backend: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "addr": self.addr,
            "id": self.id,
            "la": self.la,
            "storage_total": self.storage_total,
            "storage_free": self.storage_free,
            "objects": self.objects,
            "backend": self.backend,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "NodeStat":
        return cls(
            addr=data.get("addr", ""),
            id=data.get("id", ""),
            la=data.get("la", []),
            storage_total=data.get("storage_total", 0),
            storage_free=data.get("storage_free", 0),
            objects=data.get("objects", 0),
            backend=data.get("backend"),
            error=data.get("error"),
        )


@dataclass
class StatReport:
    """Aggregated statistics gathered from every known node."""
    checked_at: datetime
    nodes: list[NodeStat]

    @property
    def nodes_ok(self) -> int:
        return sum(1 for n in self.nodes if n.error is None)

    @property
    def objects(self) -> int:
        return sum(n.objects for n in self.nodes if n.error is None)

    def to_dict(self) -> dict:
        return {
            "checked_at": self.checked_at.isoformat(),
            "nodes_total": len(self.nodes),
            "nodes_ok": self.nodes_ok,
            "objects": self.objects,
            "nodes": [n.to_dict() for n in self.nodes],
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


@dataclass
class CommandResult:
    """Output of a command executed on a remote node."""
    addr: str
    command: str
    returncode: int
    stdout: str = ""
    stderr: str = ""

    def to_dict(self) -> dict:
        return {
            "addr": self.addr,
            "command": self.command,
            "returncode": self.returncode,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CommandResult":
        return cls(
            addr=data.get("addr", ""),
            command=data.get("command", ""),
            returncode=data.get("returncode", -1),
            stdout=data.get("stdout", ""),
            stderr=data.get("stderr", ""),
        )
