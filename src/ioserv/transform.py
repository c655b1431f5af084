# Author: PB and Claude
# Date: 2026-10-18
# License: (c) HRDAG, 2026, GPL-2 or newer
#
# ---
# src/ioserv/transform.py

"""
Transform engines and the ordered transform chain.

A transform is a streaming hash used to derive object ids from names.
Engines are registered with a node in chain order; the first one is the
default content-addressing function.
"""

from dataclasses import dataclass
import hashlib
import logging
from typing import Any, Callable

from ioserv.errors import ChainFull, UnknownTransform
from ioserv.types import ID_SIZE

logger = logging.getLogger(__name__)

DEFAULT_TRANSFORM = "sha1"
DEFAULT_CAPACITY = 5


def _fit(digest: bytes) -> bytes:
    """Truncate or zero-pad a digest to ID_SIZE bytes."""
    return digest[:ID_SIZE].ljust(ID_SIZE, b"\0")


@dataclass
class TransformEngine:
    """A named streaming transform: init -> update* -> final -> cleanup."""
    name: str
    init: Callable[[], Any]
    update: Callable[[Any, bytes], None]
    final: Callable[[Any], bytes]
    cleanup: Callable[[Any], None]

    def transform(self, data: bytes) -> bytes:
        """Run the whole pipeline over `data` and return an ID_SIZE id."""
        ctx = self.init()
        try:
            self.update(ctx, data)
            return self.final(ctx)
        finally:
            self.cleanup(ctx)


def crypto_engine_init(name: str) -> TransformEngine:
    """
    Resolve a hashlib algorithm name into a TransformEngine.

    Raises:
        UnknownTransform: name isn't a fixed-size hashlib digest
    """
    algo = name.lower()
    if algo not in hashlib.algorithms_available:
        raise UnknownTransform(f"Unknown transform '{name}'")
    try:
        sample = hashlib.new(algo)
    except ValueError as e:
        raise UnknownTransform(f"Unknown transform '{name}': {e}")
    if sample.digest_size == 0:
        raise UnknownTransform(f"Transform '{name}' has a variable-length digest")

    return TransformEngine(
        name=algo,
        init=lambda: hashlib.new(algo),
        update=lambda ctx, data: ctx.update(data),
        final=lambda ctx: _fit(ctx.digest()),
        cleanup=lambda ctx: None,
    )


class TransformChain:
    """
    Ordered, bounded list of transform engines.

    One slot of `capacity` is reserved for the node's implicit default
    transform, so at most `capacity - 1` engines can be added.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        self.capacity = capacity
        self.engines: list[TransformEngine] = []

    def __len__(self) -> int:
        return len(self.engines)

    def __iter__(self):
        return iter(self.engines)

    @property
    def full(self) -> bool:
        return len(self.engines) >= self.capacity - 1

    def add(self, name: str) -> TransformEngine:
        """
        Resolve `name` and append it to the chain.

        Raises:
            ChainFull: no free slot left (soft, the chain is unchanged)
            UnknownTransform: name doesn't resolve
        """
        if self.full:
            raise ChainFull(
                f"Only {self.capacity} transformation functions allowed, dropping '{name}'"
            )
        engine = crypto_engine_init(name)
        self.engines.append(engine)
        return engine


def build_transform_chain(names: list[str], capacity: int = DEFAULT_CAPACITY) -> TransformChain:
    """Build a chain from names, dropping those that don't fit with a warning."""
    chain = TransformChain(capacity)
    for name in names:
        try:
            chain.add(name)
        except ChainFull as e:
            logger.warning(str(e))
    return chain
