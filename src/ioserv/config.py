# Author: PB and Claude
# Date: 2026-10-18
# License: (c) HRDAG, 2026, GPL-2 or newer
#
# ---
# src/ioserv/config.py

"""
ioserv Configuration Management

NodeConfig is the single descriptor a node is created from. It is normally
assembled from command-line flags layered over an optional TOML file:

  [node]        addr, id, wait_timeout, log_mask, resend_count,
                max_pending, io_threads, join
  [backend]     root, kind ("file" | "kv"), bits
  [remotes]     addrs = ["host:port:family", ...]
  [transforms]  names = ["sha1", ...]
  [log]         file

Deep merge: the file is the base, command-line values override at key level.
"""

import logging
import socket
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ioserv.backends import Backend, DEFAULT_NUM_BITS
from ioserv.log import LOG_ALL
from ioserv.types import AddressSpec, JOIN_NETWORK, ZERO_ID


DEFAULT_WAIT_TIMEOUT = 60 * 60
DEFAULT_RESEND_COUNT = 3


@dataclass
class NodeConfig:
    """Everything a node is created from."""
    addr: Optional[AddressSpec] = None
    id: bytes = ZERO_ID
    sock_type: int = socket.SOCK_STREAM
    proto: int = socket.IPPROTO_TCP
    wait_timeout: int = DEFAULT_WAIT_TIMEOUT
    log_mask: int = LOG_ALL
    resend_count: int = DEFAULT_RESEND_COUNT
    max_pending: int = 0                        # 0 = unlimited
    io_thread_num: int = 0                      # 0 = server default
    join: int = 0
    backend: Optional[Backend] = None
    log_handler: Optional[logging.Handler] = None

    @property
    def command_private(self):
        """Opaque backend handle (None for client-only nodes)."""
        return self.backend.handle if self.backend else None

    @property
    def command_handler(self):
        return self.backend.command_handler if self.backend else None

    @property
    def joins(self) -> bool:
        return bool(self.join & JOIN_NETWORK)

    def validate(self) -> tuple[list[str], list[str]]:
        """
        Validate configuration, return (errors, warnings).
        Empty errors list means a node can be created from it.
        """
        errors = []
        warnings = []

        if self.addr is None:
            errors.append("local address is not set")
        if self.wait_timeout <= 0:
            errors.append(f"wait timeout must be positive, got {self.wait_timeout}")
        if self.resend_count < 0:
            errors.append(f"resend count can't be negative, got {self.resend_count}")
        if self.max_pending < 0 or self.io_thread_num < 0:
            errors.append("max pending and IO thread count can't be negative")

        if self.joins and self.backend is None:
            warnings.append("join requested without a storage backend")
        if self.log_handler is None:
            warnings.append("no log sink, logging is disabled")

        return errors, warnings


@dataclass
class IOServConfig:
    """Settings read from a TOML config file, before command-line overrides."""
    addr: Optional[str] = None
    id: Optional[str] = None
    wait_timeout: Optional[int] = None
    log_mask: Optional[int] = None
    resend_count: Optional[int] = None
    max_pending: Optional[int] = None
    io_threads: Optional[int] = None
    join: bool = False
    root: Optional[str] = None
    backend_kind: str = "file"
    bits: int = DEFAULT_NUM_BITS
    remotes: list[str] = field(default_factory=list)
    transforms: list[str] = field(default_factory=list)
    log_file: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "IOServConfig":
        node = data.get("node", {})
        backend = data.get("backend", {})
        return cls(
            addr=node.get("addr"),
            id=node.get("id"),
            wait_timeout=node.get("wait_timeout"),
            log_mask=node.get("log_mask"),
            resend_count=node.get("resend_count"),
            max_pending=node.get("max_pending"),
            io_threads=node.get("io_threads"),
            join=node.get("join", False),
            root=backend.get("root"),
            backend_kind=backend.get("kind", "file"),
            bits=backend.get("bits", DEFAULT_NUM_BITS),
            remotes=list(data.get("remotes", {}).get("addrs", [])),
            transforms=list(data.get("transforms", {}).get("names", [])),
            log_file=data.get("log", {}).get("file"),
        )

    def validate(self) -> tuple[list[str], list[str]]:
        """Validate file settings, return (errors, warnings)."""
        errors = []
        warnings = []

        if self.backend_kind not in ("file", "kv"):
            errors.append(f"backend kind '{self.backend_kind}' is not 'file' or 'kv'")
        if self.backend_kind == "file" and not 1 <= self.bits <= 32:
            errors.append(f"backend bits {self.bits} out of range (1..32)")
        if self.join and not self.root:
            warnings.append("join requested but no backend root configured")
        if not self.addr:
            warnings.append("no [node] addr, it must be given with -a")

        return errors, warnings


def _deep_merge(base: dict, override: dict) -> dict:
    """Merge override into base at section level.

    For top-level keys that are both dicts (TOML sections), merge their
    contents with override winning on key conflict.
    For non-dict values, override replaces base.
    """
    merged = dict(base)
    for key, val in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(val, dict):
            merged[key] = {**merged[key], **val}
        else:
            merged[key] = val
    return merged


def load_config(config_path: Path = None, overrides: dict = None) -> IOServConfig:
    """Load settings from a TOML file, then apply section-level overrides.

    Args:
        config_path: Path to the TOML file, or None for no file
        overrides: Sections to merge on top of the file (e.g. from flags)

    Returns:
        IOServConfig object

    Raises:
        FileNotFoundError: If config_path doesn't exist
        tomllib.TOMLDecodeError: If the file isn't valid TOML
    """
    data = {}
    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        with open(config_path, "rb") as f:
            data = tomllib.load(f)

    return IOServConfig.from_dict(_deep_merge(data, overrides or {}))
