# Author: PB and Claude
# Date: 2026-10-18
# License: (c) HRDAG, 2026, GPL-2 or newer
#
# ---
# src/ioserv/errors.py

"""
ioserv error taxonomy

Every error carries an errno-style negative ``code`` which the CLI uses as the
process exit status. ``soft`` errors are reported but never stop the process.
"""

import errno


class IOServError(Exception):
    """Base exception for ioserv."""

    default_code = -errno.EINVAL
    soft = False

    def __init__(self, message: str, code: int = None):
        super().__init__(message)
        self.code = code if code is not None else self.default_code


class MalformedAddress(IOServError):
    """Raised when an addr:port:family triple can't be parsed."""
    pass


class MalformedIdentifier(IOServError):
    """Raised when a hex identifier can't be decoded."""
    pass


class UnknownTransform(IOServError):
    """Raised when a transform name doesn't resolve to a hash."""
    default_code = -errno.ENOENT


class ChainFull(IOServError):
    """Raised when the transform chain has no free slot."""
    default_code = -errno.ENOSPC
    soft = True


class BackendInitError(IOServError):
    """Raised when a storage backend can't be set up."""
    pass


class NodeCreateError(IOServError):
    default_code = -errno.EADDRNOTAVAIL


class TransformRegisterError(IOServError):
    pass


class PeerAddError(IOServError):
    """Raised when a remote peer can't be added as a known state."""
    default_code = -errno.ECONNREFUSED
    soft = True


class JoinError(IOServError):
    default_code = -errno.ECONNREFUSED


class TransferError(IOServError):
    """Raised when a read/write/remove/command/lookup/stat fails."""
    default_code = -errno.EIO


class ObjectNotFound(TransferError):
    default_code = -errno.ENOENT


class ForkError(IOServError):
    default_code = -errno.EAGAIN
