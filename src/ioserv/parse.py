# Author: PB and Claude
# Date: 2026-10-18
# License: (c) HRDAG, 2026, GPL-2 or newer
#
# ---
# src/ioserv/parse.py

"""
Parsers for network endpoints and identifiers given on the command line.
"""

import socket

from ioserv.errors import MalformedAddress, MalformedIdentifier
from ioserv.types import ID_SIZE, AddressSpec


FAMILIES = {int(socket.AF_INET), int(socket.AF_INET6)}


def parse_addr(text: str) -> AddressSpec:
    """
    Parse an 'address:port:family' triple.

    The string is split from the right so IPv6 hosts keep their colons,
    e.g. '::1:1025:10'.

    Raises:
        MalformedAddress: wrong separator count, bad port or unknown family
    """
    parts = text.rsplit(":", 2)
    if len(parts) != 3:
        raise MalformedAddress(f"Invalid address '{text}' (expected addr:port:family)")

    host, port_str, family_str = parts
    if not host:
        raise MalformedAddress(f"Invalid address '{text}': empty host")

    try:
        port = int(port_str)
    except ValueError:
        raise MalformedAddress(f"Invalid address '{text}': port '{port_str}' is not a number")
    if not 0 < port < 65536:
        raise MalformedAddress(f"Invalid address '{text}': port {port} out of range")

    try:
        family = int(family_str)
    except ValueError:
        raise MalformedAddress(f"Invalid address '{text}': family '{family_str}' is not a number")
    if family not in FAMILIES:
        raise MalformedAddress(f"Invalid address '{text}': unsupported family {family}")

    if family == socket.AF_INET and ":" in host:
        raise MalformedAddress(f"Invalid address '{text}': too many separators")

    return AddressSpec(host=host, port=port, family=family)


def parse_numeric_id(text: str, size: int = ID_SIZE) -> bytes:
    """
    Decode a hex identifier into exactly `size` bytes.

    Shorter identifiers are zero-padded on the right, so '01' becomes
    01 00 00 ... 00. Longer identifiers are rejected rather than truncated.

    Raises:
        MalformedIdentifier: empty, odd length, non-hex or too long
    """
    digits = text[2:] if text[:2].lower() == "0x" else text
    if not digits:
        raise MalformedIdentifier(f"Invalid identifier '{text}': empty")
    if len(digits) % 2:
        raise MalformedIdentifier(f"Invalid identifier '{text}': odd number of hex digits")

    try:
        raw = bytes.fromhex(digits)
    except ValueError:
        raise MalformedIdentifier(f"Invalid identifier '{text}': not a hex string")

    if len(raw) > size:
        raise MalformedIdentifier(
            f"Invalid identifier '{text}': {len(raw)} bytes, at most {size} allowed"
        )
    return raw.ljust(size, b"\0")
