"""Lookup, attribute, permission and filesystem-statistics operations."""

from __future__ import annotations

import dataclasses
import errno
import logging
import os
from typing import Optional

from .base import FilesystemBase, FsError, statx_to_out
from .messages import Attr, EntryOut, Inode, StatfsOut, StatxOut

log = logging.getLogger(__name__)

_MASK_MODE = 1 << 0
_MASK_UID = 1 << 1
_MASK_GID = 1 << 2
_MASK_SIZE = 1 << 3
_MASK_ATIME = 1 << 4
_MASK_MTIME = 1 << 5

_STATX_ALL_FIELDS = 0xFFFFFFFF


class AttrOps(FilesystemBase):
    """Name resolution and inode attribute handling through the master."""

    def _cached_inode(self, ino: int) -> Inode:
        try:
            with self._translate():
                return self.get_inode_with_cache(ino)
        except FsError as err:
            if self.config.debug:
                log.error("inode %d not found: %s", ino, err)
            raise

    def lookup(self, parent: int, name: str) -> EntryOut:
        """Resolve ``name`` inside directory ``parent``."""
        if not name:
            raise FsError(errno.EINVAL)
        self.validate_directory(parent)
        try:
            with self._translate():
                inode = self.master.lookup(parent, name)
        except FsError as err:
            if self.config.debug:
                log.error("Lookup failed: %s", err)
            raise
        if inode is None:
            raise FsError(errno.ENOENT)
        self.cache.store_inode(inode)
        return self._entry_out(inode)

    def forget(self, ino: int, nlookup: int) -> None:
        """Drop cached state for an inode the kernel no longer references."""
        if self.config.debug and nlookup > 1000:
            log.debug("Forget: high nlookup count nodeid=%d nlookup=%d", ino, nlookup)
        self.cache.invalidate(ino)

    def getattr(self, ino: int) -> Attr:
        """Return the attributes of an inode."""
        return self.inode_to_attr(self._cached_inode(ino))

    def setattr(
        self,
        ino: int,
        mode: Optional[int] = None,
        uid: Optional[int] = None,
        gid: Optional[int] = None,
        size: Optional[int] = None,
        atime: Optional[int] = None,
        mtime: Optional[int] = None,
    ) -> Attr:
        """Update the given attributes and return the resulting ones."""
        inode = self._cached_inode(ino)

        requested = (
            ("mode", mode, _MASK_MODE),
            ("uid", uid, _MASK_UID),
            ("gid", gid, _MASK_GID),
            ("size", size, _MASK_SIZE),
            ("atime", atime, _MASK_ATIME),
            ("mtime", mtime, _MASK_MTIME),
        )
        changes = {name: value for name, value, _ in requested if value is not None}
        mask = 0
        for _, value, bit in requested:
            if value is not None:
                mask |= bit
        if size is not None and self.config.debug:
            log.debug("SetAttr: truncating inode %d to size %d", ino, size)

        attributes = dataclasses.replace(inode.attributes, **changes)
        try:
            with self._translate():
                new_attributes = self.master.set_attributes(ino, attributes, mask)
        except FsError as err:
            if self.config.debug:
                log.error("SetAttr: failed for inode %d: %s", ino, err)
            raise

        self.cache.invalidate(ino)
        updated = Inode(
            ino=ino,
            attributes=new_attributes,
            xattrs=inode.xattrs,
            chunk_handles=inode.chunk_handles,
        )
        self.cache.store_inode(updated)
        return self.inode_to_attr(updated)

    def access(self, ino: int, mask: int, uid: int, gid: int) -> None:
        """Raise EACCES unless the caller has every permission in ``mask``."""
        inode = self._cached_inode(ino)
        if mask == 0:
            return

        attrs = inode.attributes
        if uid == attrs.uid:
            allowed = (attrs.mode >> 6) & 0o7
        elif gid == attrs.gid:
            allowed = (attrs.mode >> 3) & 0o7
        else:
            allowed = attrs.mode & 0o7

        requested = 0
        if mask & os.R_OK:
            requested |= 0o4
        if mask & os.W_OK:
            requested |= 0o2
        if mask & os.X_OK:
            requested |= 0o1

        if allowed & requested != requested:
            if self.config.debug:
                log.debug(
                    "Access denied: inode=%d uid=%d/%d gid=%d/%d mode=0%o "
                    "requested=0x%x allowed=0x%x",
                    ino, uid, attrs.uid, gid, attrs.gid, attrs.mode, requested, allowed,
                )
            raise FsError(errno.EACCES)

    def statfs(self) -> StatfsOut:
        """Return space and file counts of the whole filesystem."""
        try:
            with self._translate():
                stats = self.master.get_system_stats()
        except FsError as err:
            if self.config.debug:
                log.error("StatFs failed: %s", err)
            raise
        block_size = self.config.block_size
        return StatfsOut(
            bsize=block_size,
            blocks=stats.total_space // block_size,
            bfree=stats.available_space // block_size,
            bavail=stats.available_space // block_size,
            files=stats.total_files,
            ffree=stats.total_files,
            namelen=self.config.max_name_length,
            frsize=block_size,
        )

    def statx(self, ino: int) -> StatxOut:
        """Return extended attributes of an inode."""
        try:
            with self._translate():
                attributes, mask = self.master.statx(ino, _STATX_ALL_FIELDS, 0)
        except FsError as err:
            if self.config.debug:
                log.error("Statx: failed for inode %d: %s", ino, err)
            raise
        return statx_to_out(attributes, mask)