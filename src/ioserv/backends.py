# Author: PB and Claude
# Date: 2026-10-18
# License: (c) HRDAG, 2026, GPL-2 or newer
#
# ---
# src/ioserv/backends.py

"""
Local storage backends.

A node services incoming object requests through exactly one backend:

- FileBackend: a directory tree sharded by the top bits of the object id
- KVBackend: an embedded ordered key-value store (SQLite) with separate
  data and history database files

Both expose `handle` and `command_handler`, which is all the node needs.
"""

from abc import ABC, abstractmethod
import logging
import os
import shutil
import sqlite3
import threading
from pathlib import Path
from typing import Any, Optional

from ioserv.errors import BackendInitError, ObjectNotFound, TransferError
from ioserv.types import CommandKind, HistoryEntry, IOCommand, IOReply

logger = logging.getLogger(__name__)

DEFAULT_NUM_BITS = 8
KV_DATA_FILE = "data.db"
KV_HISTORY_FILE = "history.db"


def _prepare_root(root: Path) -> Path:
    """Create the root directory if needed and check it's writable."""
    try:
        root.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise BackendInitError(f"Failed to create root directory {root}: {e}")
    if not root.is_dir():
        raise BackendInitError(f"Root {root} is not a directory")
    if not os.access(root, os.W_OK | os.X_OK):
        raise BackendInitError(f"Root directory {root} is not writable")
    return root


def _window(data: bytes, offset: int, size: int) -> bytes:
    """Slice [offset, offset+size) out of data; size 0 means to the end."""
    if size:
        return data[offset:offset + size]
    return data[offset:]


class Backend(ABC):
    """Storage backend: an opaque handle plus a command handler."""

    kind = "none"

    def __init__(self, root: Path):
        self.root = root
        self._lock = threading.Lock()

    @property
    def handle(self) -> Any:
        """Opaque backend state passed alongside the command handler."""
        return self

    def command_handler(self, cmd: IOCommand) -> IOReply:
        """Dispatch a single IO command to the backend."""
        logger.debug(f"{self.kind}: {cmd.kind.value} {cmd.id.hex()} offset={cmd.offset} size={cmd.size}")

        if cmd.kind == CommandKind.WRITE:
            written = self.write(cmd.id, cmd.offset, cmd.data)
            return IOReply(info={"size": written})
        if cmd.kind == CommandKind.READ:
            return IOReply(data=self.read(cmd.id, cmd.offset, cmd.size))
        if cmd.kind == CommandKind.HISTORY:
            return IOReply(data=self.read_history(cmd.id, cmd.offset, cmd.size))
        if cmd.kind == CommandKind.REMOVE:
            self.remove(cmd.id)
            return IOReply()
        if cmd.kind == CommandKind.LOOKUP:
            return IOReply(info=self.lookup(cmd.id))
        if cmd.kind == CommandKind.STAT:
            return IOReply(info=self.stat())
        raise TransferError(f"Unsupported command {cmd.kind}")

    def write(self, key: bytes, offset: int, data: bytes) -> int:
        """Store data at offset and append a history record."""
        with self._lock:
            self._write(key, offset, data)
            self._append_history(key, HistoryEntry.now(key, offset, len(data)))
        return len(data)

    def remove(self, key: bytes) -> None:
        with self._lock:
            self._remove(key)

    @abstractmethod
    def _write(self, key: bytes, offset: int, data: bytes) -> None:
        ...

    @abstractmethod
    def _append_history(self, key: bytes, entry: HistoryEntry) -> None:
        ...

    @abstractmethod
    def _remove(self, key: bytes) -> None:
        ...

    @abstractmethod
    def read(self, key: bytes, offset: int = 0, size: int = 0) -> bytes:
        ...

    @abstractmethod
    def read_history(self, key: bytes, offset: int = 0, size: int = 0) -> bytes:
        """Window [offset, offset+size) of the object's history log."""
        ...

    @abstractmethod
    def lookup(self, key: bytes) -> dict:
        """Return {'exists': bool, 'size': int} for an object."""
        ...

    @abstractmethod
    def count(self) -> int:
        ...

    def stat(self) -> dict:
        usage = shutil.disk_usage(self.root)
        return {
            "backend": self.kind,
            "storage_total": usage.total,
            "storage_free": usage.free,
            "objects": self.count(),
        }

    def close(self) -> None:
        pass


class FileBackend(Backend):
    """Objects as files under root/<prefix>/<hexid>, prefix = top num_bits of the id."""

    kind = "file"

    def __init__(self, root: Path, num_bits: int = DEFAULT_NUM_BITS):
        if not 1 <= num_bits <= 32:
            raise BackendInitError(f"Invalid number of subdir bits {num_bits} (1..32)")
        super().__init__(_prepare_root(Path(root)))
        self.num_bits = num_bits
        self._prefix_width = (num_bits + 3) // 4
        logger.info(f"file backend: root={self.root} bits={num_bits}")

    def _dir(self, key: bytes) -> Path:
        top = int.from_bytes(key[:4].ljust(4, b"\0"), "big") >> (32 - self.num_bits)
        return self.root / format(top, f"0{self._prefix_width}x")

    def _path(self, key: bytes) -> Path:
        return self._dir(key) / key.hex()

    def _history_path(self, key: bytes) -> Path:
        return self._dir(key) / f"{key.hex()}.history"

    def _write(self, key: bytes, offset: int, data: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(exist_ok=True)
        mode = "r+b" if path.exists() else "wb"
        with open(path, mode) as f:
            f.seek(offset)
            f.write(data)

    def _append_history(self, key: bytes, entry: HistoryEntry) -> None:
        with open(self._history_path(key), "ab") as f:
            f.write(entry.pack())

    def _remove(self, key: bytes) -> None:
        path = self._path(key)
        if not path.exists():
            raise ObjectNotFound(f"Object {key.hex()} not found")
        path.unlink()
        self._history_path(key).unlink(missing_ok=True)

    def read(self, key: bytes, offset: int = 0, size: int = 0) -> bytes:
        path = self._path(key)
        try:
            with open(path, "rb") as f:
                f.seek(offset)
                return f.read(size) if size else f.read()
        except FileNotFoundError:
            raise ObjectNotFound(f"Object {key.hex()} not found")

    def read_history(self, key: bytes, offset: int = 0, size: int = 0) -> bytes:
        try:
            return _window(self._history_path(key).read_bytes(), offset, size)
        except FileNotFoundError:
            raise ObjectNotFound(f"History for {key.hex()} not found")

    def lookup(self, key: bytes) -> dict:
        path = self._path(key)
        if not path.exists():
            return {"exists": False, "size": 0}
        return {"exists": True, "size": path.stat().st_size}

    def count(self) -> int:
        return sum(
            1 for p in self.root.glob("*/*")
            if p.is_file() and not p.name.endswith(".history")
        )


class KVBackend(Backend):
    """Objects in an SQLite key-value store: one file for data, one for history."""

    kind = "kv"

    def __init__(self, root: Path, data_file: str = KV_DATA_FILE, history_file: str = KV_HISTORY_FILE):
        super().__init__(_prepare_root(Path(root)))
        try:
            self._data = self._open(self.root / data_file, """
                CREATE TABLE IF NOT EXISTS objects (
                    id BLOB PRIMARY KEY,
                    data BLOB NOT NULL
                )
            """)
            self._history = self._open(self.root / history_file, """
                CREATE TABLE IF NOT EXISTS history (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id BLOB NOT NULL,
                    record BLOB NOT NULL
                )
            """)
            self._history.execute("CREATE INDEX IF NOT EXISTS history_id ON history (id)")
        except sqlite3.Error as e:
            raise BackendInitError(f"Failed to open key-value store in {self.root}: {e}")
        logger.info(f"kv backend: root={self.root} data={data_file} history={history_file}")

    @staticmethod
    def _open(path: Path, schema: str) -> sqlite3.Connection:
        conn = sqlite3.connect(path, check_same_thread=False)
        conn.execute(schema)
        conn.commit()
        return conn

    def _load(self, key: bytes) -> Optional[bytes]:
        row = self._data.execute("SELECT data FROM objects WHERE id = ?", (key,)).fetchone()
        return bytes(row[0]) if row else None

    def _write(self, key: bytes, offset: int, data: bytes) -> None:
        current = self._load(key) or b""
        if len(current) < offset:
            current = current.ljust(offset, b"\0")
        updated = current[:offset] + data + current[offset + len(data):]
        self._data.execute(
            "INSERT OR REPLACE INTO objects (id, data) VALUES (?, ?)", (key, updated)
        )
        self._data.commit()

    def _append_history(self, key: bytes, entry: HistoryEntry) -> None:
        self._history.execute(
            "INSERT INTO history (id, record) VALUES (?, ?)", (key, entry.pack())
        )
        self._history.commit()

    def _remove(self, key: bytes) -> None:
        cur = self._data.execute("DELETE FROM objects WHERE id = ?", (key,))
        self._data.commit()
        if cur.rowcount == 0:
            raise ObjectNotFound(f"Object {key.hex()} not found")
        self._history.execute("DELETE FROM history WHERE id = ?", (key,))
        self._history.commit()

    def read(self, key: bytes, offset: int = 0, size: int = 0) -> bytes:
        with self._lock:
            data = self._load(key)
        if data is None:
            raise ObjectNotFound(f"Object {key.hex()} not found")
        return _window(data, offset, size)

    def read_history(self, key: bytes, offset: int = 0, size: int = 0) -> bytes:
        with self._lock:
            rows = self._history.execute(
                "SELECT record FROM history WHERE id = ? ORDER BY seq", (key,)
            ).fetchall()
        if not rows:
            raise ObjectNotFound(f"History for {key.hex()} not found")
        return _window(b"".join(bytes(r[0]) for r in rows), offset, size)

    def lookup(self, key: bytes) -> dict:
        with self._lock:
            row = self._data.execute(
                "SELECT length(data) FROM objects WHERE id = ?", (key,)
            ).fetchone()
        if row is None:
            return {"exists": False, "size": 0}
        return {"exists": True, "size": row[0]}

    def count(self) -> int:
        with self._lock:
            return self._data.execute("SELECT COUNT(*) FROM objects").fetchone()[0]

    def close(self) -> None:
        with self._lock:
            self._data.close()
            self._history.close()


def select_backend(root: Optional[Path], use_kv: bool = False, num_bits: int = DEFAULT_NUM_BITS) -> Optional[Backend]:
    """
    Choose the storage backend for a node.

    Args:
        root: Root directory for objects. None means no local storage
              (client-only node), which is not an error.
        use_kv: Use the key-value backend instead of the file tree
        num_bits: Subdirectory fan-out width for the file tree

    Returns:
        A Backend, or None when no root was given

    Raises:
        BackendInitError: root unusable or store can't be opened
    """
    if root is None:
        return None
    if use_kv:
        return KVBackend(Path(root))
    return FileBackend(Path(root), num_bits)
