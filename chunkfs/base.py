"""Shared client plumbing: RPC interfaces, error mapping and inode helpers."""

from __future__ import annotations

import contextlib
import enum
import errno
import itertools
import os
import stat
import threading
import time
from concurrent import futures
from typing import Callable, Dict, Iterator, List, Optional, Protocol, Tuple

from .cache import Cache, ChunkLeaseCache
from .config import ClientConfig, ServiceState
from .messages import (
    AllocatedChunk,
    Attr,
    ChunkLocation,
    ChunkLocationInfo,
    DirectoryEntry,
    EntryOut,
    EntryType,
    FileAttributes,
    Inode,
    LeaseGrant,
    LeaseInfo,
    LeaseRenewal,
    OpenFileInfo,
    RevokeResult,
    StatxAttributes,
    StatxOut,
    StatxTimestamp,
    SystemStats,
    WriteBuffer,
)

_S_IFMT = 0o170000
_U16 = 0xFFFF
_U32 = 0xFFFFFFFF
_U64 = 0xFFFFFFFFFFFFFFFF
_ATTRIBUTE_NOT_FOUND = "attribute not found"


class StatusCode(enum.IntEnum):
    """RPC status codes."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


class RpcError(Exception):
    """A failed remote call with a status code."""

    def __init__(self, code: StatusCode, message: str = "") -> None:
        super().__init__(message)
        self.code = StatusCode(code)
        self.message = message


class FsError(OSError):
    """A filesystem operation failed with an errno value."""

    def __init__(self, errno_value: int, message: Optional[str] = None) -> None:
        super().__init__(errno_value, message or os.strerror(errno_value))


_CODE_ERRNO = {
    StatusCode.OK: 0,
    StatusCode.NOT_FOUND: errno.ENOENT,
    StatusCode.PERMISSION_DENIED: errno.EACCES,
    StatusCode.INVALID_ARGUMENT: errno.EINVAL,
    StatusCode.ALREADY_EXISTS: errno.EEXIST,
    StatusCode.DEADLINE_EXCEEDED: errno.ETIMEDOUT,
    StatusCode.CANCELLED: errno.ETIMEDOUT,
    StatusCode.UNAVAILABLE: errno.EAGAIN,
    StatusCode.RESOURCE_EXHAUSTED: errno.ENOSPC,
    StatusCode.FAILED_PRECONDITION: errno.ESTALE,
    StatusCode.DATA_LOSS: errno.EIO,
    StatusCode.INTERNAL: errno.EIO,
}


def status_to_errno(error: Optional[BaseException]) -> int:
    """Map an error raised by a remote call to an errno value (0 for none)."""
    if error is None:
        return 0
    if isinstance(error, FsError):
        return error.errno
    if isinstance(error, (futures.CancelledError, InterruptedError)):
        return errno.EINTR
    if isinstance(error, (TimeoutError, futures.TimeoutError)):
        return errno.ETIMEDOUT
    if not isinstance(error, RpcError):
        return errno.EIO
    if error.code is StatusCode.NOT_FOUND and error.message == _ATTRIBUTE_NOT_FOUND:
        return errno.ENODATA
    return _CODE_ERRNO.get(error.code, errno.EIO)


def has_write_permission(inode: Inode, uid: int, gid: int) -> bool:
    """Check the owner, group or other write bit that applies to the caller."""
    attrs = inode.attributes
    mode = attrs.mode
    if uid == attrs.uid:
        return (mode >> 6) & 0o2 != 0
    if gid == attrs.gid:
        return (mode >> 3) & 0o2 != 0
    return mode & 0o2 != 0


def _timestamp(value: Optional[StatxTimestamp]) -> StatxTimestamp:
    if value is None:
        return StatxTimestamp()
    return StatxTimestamp(sec=value.sec & _U64, nsec=value.nsec)


def statx_to_out(attrs: StatxAttributes, mask: int) -> StatxOut:
    """Convert master statx attributes to the kernel's statx layout."""
    return StatxOut(
        mask=mask,
        ino=attrs.ino,
        mode=attrs.mode & _U16,
        uid=attrs.uid,
        gid=attrs.gid,
        size=attrs.size,
        nlink=attrs.nlink,
        blocks=attrs.blocks,
        blksize=attrs.blksize,
        rdev_major=attrs.rdev_major,
        rdev_minor=attrs.rdev_minor,
        dev_major=attrs.dev_major,
        dev_minor=attrs.dev_minor,
        atime=_timestamp(attrs.atime),
        mtime=_timestamp(attrs.mtime),
        ctime=_timestamp(attrs.ctime),
        btime=_timestamp(attrs.btime),
    )


class MasterClient(Protocol):
    """Calls the client makes on the master; failures raise RpcError."""

    def lookup(self, parent_ino: int, name: str) -> Optional[Inode]:
        """Resolve a name inside a directory."""

    def get_attributes(self, ino: int) -> Inode:
        """Fetch an inode."""

    def set_attributes(self, ino: int, attributes: FileAttributes, mask: int) -> FileAttributes:
        """Update the attributes selected by mask and return the new ones."""

    def create_entry(
        self,
        parent_ino: int,
        name: str,
        entry_type: EntryType,
        attributes: FileAttributes,
        symlink_target: str = "",
    ) -> Inode:
        """Create a file, directory or symlink."""

    def delete_entry(self, parent_ino: int, name: str, recursive: bool) -> None:
        """Remove an entry."""

    def list_directory(self, dir_ino: int, max_entries: int) -> List[DirectoryEntry]:
        """List a directory."""

    def move_entry(
        self, old_parent_ino: int, old_name: str, new_parent_ino: int, new_name: str
    ) -> Inode:
        """Rename or move an entry."""

    def allocate_chunk(self, file_ino: int, chunk_index: int) -> AllocatedChunk:
        """Allocate a chunk of a file."""

    def get_chunk_locations(self, chunk_handles: List[str]) -> List[ChunkLocationInfo]:
        """Return replica sets of chunks."""

    def get_system_stats(self) -> SystemStats:
        """Return cluster statistics."""

    def statx(self, ino: int, mask: int, flags: int) -> Tuple[StatxAttributes, int]:
        """Return statx attributes and the supported mask."""

    def get_xattr(self, ino: int, name: str) -> bytes:
        """Read an extended attribute."""

    def set_xattr(self, ino: int, name: str, value: bytes, flags: int) -> None:
        """Write an extended attribute."""

    def list_xattr(self, ino: int) -> List[str]:
        """List extended attribute names."""

    def remove_xattr(self, ino: int, name: str) -> None:
        """Remove an extended attribute."""

    def grant_lease(
        self, chunk_handle: str, requesting_server: str, replicas: List[str], version: int
    ) -> LeaseGrant:
        """Grant a chunk lease."""

    def renew_lease(
        self, chunk_handle: str, lease_id: str, primary: str, version: int
    ) -> LeaseRenewal:
        """Extend a chunk lease."""

    def revoke_lease(self, chunk_handle: str, reason: str) -> RevokeResult:
        """Revoke a chunk lease."""

    def get_lease_info(self, chunk_handle: str) -> LeaseInfo:
        """Return the current lease of a chunk."""


class ChunkServerClient(Protocol):
    """Calls the client makes on a chunk server; failures raise RpcError."""

    def health_check(self) -> None:
        """Raise if the server is not healthy."""

    def read_chunk(self, chunk_handle: str, offset: int, length: int) -> bytes:
        """Read a byte range of a chunk."""

    def buffer_data(
        self, write_id: str, chunk_handle: str, offset: int, data: bytes, version: int
    ) -> bool:
        """Stage write data on a replica."""

    def serialize_writes(
        self, chunk_handle: str, write_ids: List[str], replica_servers: List[str]
    ) -> bool:
        """Ask the primary to apply staged writes in order."""

    def close(self) -> None:
        """Release the connection."""


ChunkServerFactory = Callable[[str], ChunkServerClient]


class FilesystemBase:
    """State and helpers shared by every group of filesystem operations."""

    def __init__(
        self,
        config: ClientConfig,
        master: MasterClient,
        *,
        cache: Optional[Cache] = None,
        lease_cache: Optional[ChunkLeaseCache] = None,
        connection_pool=None,
        connect: Optional[ChunkServerFactory] = None,
    ) -> None:
        self.config = config
        self.master = master
        self.cache = (
            cache
            if cache is not None
            else Cache(
                config.metadata_cache_ttl,
                config.chunk_loc_cache_ttl,
                config.max_metadata_entries,
            )
        )
        self.lease_cache = lease_cache if lease_cache is not None else ChunkLeaseCache()
        self.connection_pool = connection_pool
        self.connect = connect
        self.write_buffers: Dict[int, WriteBuffer] = {}
        self.write_buffers_lock = threading.RLock()
        self.open_files: Dict[int, OpenFileInfo] = {}
        self.open_files_lock = threading.Lock()
        self.state = ServiceState.UNKNOWN
        self.state_lock = threading.RLock()
        self._fh_counter = itertools.count(1)
        self._fh_lock = threading.Lock()

    @staticmethod
    @contextlib.contextmanager
    def _translate() -> Iterator[None]:
        """Re-raise remote-call failures as FsError."""
        try:
            yield
        except FsError:
            raise
        except (RpcError, TimeoutError, futures.TimeoutError, futures.CancelledError) as err:
            raise FsError(status_to_errno(err)) from err

    def _allocate_file_handle(self) -> int:
        with self._fh_lock:
            return next(self._fh_counter)

    def _inode_from_fh(self, fh: int) -> int:
        with self.open_files_lock:
            info = self.open_files.get(fh)
        if info is None:
            raise FsError(errno.EBADF)
        info.touch()
        return info.inode

    def _entry_out(self, inode: Inode) -> EntryOut:
        entry_timeout = self.config.attr_cache_timeout
        if inode.attributes.mode & stat.S_IFDIR:
            entry_timeout = self.config.dir_cache_timeout
        return EntryOut(
            node_id=inode.ino,
            attr=self.inode_to_attr(inode),
            entry_timeout=entry_timeout.total_seconds(),
            attr_timeout=self.config.attr_cache_timeout.total_seconds(),
        )

    def get_inode_with_cache(self, ino: int) -> Inode:
        """Return the inode from the cache, fetching it from the master on a miss."""
        inode = self.cache.get_inode(ino)
        if inode is not None:
            return inode
        inode = self.master.get_attributes(ino)
        self.cache.store_inode(inode)
        return inode

    def inode_to_attr(self, inode: Inode) -> Attr:
        """Convert an inode into kernel attributes."""
        attrs = inode.attributes
        block_size = self.config.block_size
        blocks = (attrs.size + block_size - 1) // block_size if attrs.size > 0 else 0
        return Attr(
            ino=inode.ino,
            mode=attrs.mode,
            size=attrs.size,
            nlink=attrs.nlink,
            uid=attrs.uid,
            gid=attrs.gid,
            atime=attrs.atime & _U64,
            mtime=attrs.mtime & _U64,
            ctime=attrs.ctime & _U64,
            blksize=block_size & _U32,
            blocks=blocks,
        )

    def _validate(self, ino: int, expected_type: int) -> Inode:
        with self._translate():
            inode = self.get_inode_with_cache(ino)
        if inode.attributes.mode & _S_IFMT != expected_type:
            raise FsError(errno.ENOTDIR if expected_type == stat.S_IFDIR else errno.EISDIR)
        return inode

    def validate_directory(self, ino: int) -> Inode:
        """Return the inode, raising FsError unless it is a directory."""
        return self._validate(ino, stat.S_IFDIR)

    def validate_file(self, ino: int) -> Inode:
        """Return the inode, raising FsError unless it is a regular file."""
        return self._validate(ino, stat.S_IFREG)

    def allocate_chunk_with_lease(
        self, file_ino: int, chunk_index: int
    ) -> Tuple[str, List[ChunkLocation]]:
        """Return the handle and replicas of a chunk, allocating it if not cached."""
        cached = self.cache.get_chunk_handle(file_ino, chunk_index)
        if cached is not None:
            handle, version = cached
            addresses = self.cache.get_chunk_location(file_ino, chunk_index)
            if addresses is not None:
                return handle, [
                    ChunkLocation(address=address, version=version, is_primary=index == 0)
                    for index, address in enumerate(addresses)
                ]

        allocated = self.master.allocate_chunk(file_ino, chunk_index)
        addresses = [location.address for location in allocated.locations]
        version = allocated.locations[0].version if allocated.locations else 0
        self.cache.store_chunk_location(
            file_ino, chunk_index, allocated.chunk_handle, addresses, version
        )
        return allocated.chunk_handle, allocated.locations