"""Extended attribute operations."""

from __future__ import annotations

import errno
from typing import List, Union

from .base import FilesystemBase, FsError, status_to_errno

XATTR_CREATE = 0x1
XATTR_REPLACE = 0x2

_ATTRIBUTE_NOT_FOUND = "attribute not found"


def _xattr_errno(error: BaseException) -> int:
    value = status_to_errno(error)
    if value == errno.ENOENT and str(error) == _ATTRIBUTE_NOT_FOUND:
        return errno.ENODATA
    return value


def _encode_names(names: List[str]) -> bytes:
    return b"".join(name.encode() + b"\0" for name in names)


class XattrOps(FilesystemBase):
    """Get, list, set and remove extended attributes through the master.

    A ``size`` of 0 asks only for the size needed to hold the result.
    """

    def get_xattr(self, ino: int, name: str, size: int = 0) -> Union[bytes, int]:
        """Return the value, or its length when ``size`` is 0; ERANGE if it does not fit."""
        try:
            value = self.master.get_xattr(ino, name)
        except Exception as err:
            raise FsError(_xattr_errno(err)) from err
        if size == 0:
            return len(value)
        if size < len(value):
            raise FsError(errno.ERANGE)
        return bytes(value)

    def list_xattr(self, ino: int, size: int = 0) -> Union[bytes, int]:
        """Return NUL-terminated names, or their total length when ``size`` is 0."""
        try:
            names = self.master.list_xattr(ino)
        except Exception as err:
            raise FsError(status_to_errno(err)) from err
        encoded = _encode_names(names)
        if size == 0:
            return len(encoded)
        if size < len(encoded):
            raise FsError(errno.ERANGE)
        return encoded

    def set_xattr(self, ino: int, name: str, value: bytes, flags: int = 0) -> None:
        """Create or replace an attribute as ``flags`` allows."""
        if not name:
            raise FsError(errno.EINVAL)
        try:
            self.master.set_xattr(ino, name, bytes(value), flags)
        except Exception as err:
            raise FsError(status_to_errno(err)) from err
        self.cache.invalidate(ino)

    def remove_xattr(self, ino: int, name: str) -> None:
        """Remove an attribute."""
        if not name:
            raise FsError(errno.EINVAL)
        try:
            self.master.remove_xattr(ino, name)
        except Exception as err:
            raise FsError(_xattr_errno(err)) from err
        self.cache.invalidate(ino)