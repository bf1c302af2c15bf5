"""Data records exchanged with the master and chunk servers, and client-side state."""

from __future__ import annotations

import enum
import stat
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

_S_IFMT = 0o170000


class EntryType(enum.IntEnum):
    """Kind of namespace entry to create."""

    FILE = 0
    DIRECTORY = 1
    SYMLINK = 2


@dataclass
class FileAttributes:
    """POSIX-style attributes of an inode."""

    mode: int = 0
    uid: int = 0
    gid: int = 0
    size: int = 0
    atime: int = 0
    mtime: int = 0
    ctime: int = 0
    nlink: int = 0
    blocks: int = 0


@dataclass
class Inode:
    """An inode as reported by the master."""

    ino: int
    attributes: FileAttributes = field(default_factory=FileAttributes)
    xattrs: Dict[str, bytes] = field(default_factory=dict)
    chunk_handles: Dict[int, str] = field(default_factory=dict)

    def is_directory(self) -> bool:
        """True if the inode's file type is a directory."""
        return (self.attributes.mode & _S_IFMT) == stat.S_IFDIR


@dataclass
class ChunkLocation:
    """One replica of a chunk."""

    address: str
    version: int = 0
    is_primary: bool = False


@dataclass
class ChunkLocationInfo:
    """Replica set of a chunk."""

    chunk_handle: str
    locations: List[ChunkLocation] = field(default_factory=list)
    version: int = 0
    size: int = 0


@dataclass
class DirectoryEntry:
    """One entry of a directory listing."""

    name: str
    ino: int
    attributes: FileAttributes = field(default_factory=FileAttributes)


@dataclass
class StatxTimestamp:
    """Seconds and nanoseconds of a statx time."""

    sec: int = 0
    nsec: int = 0


@dataclass
class StatxAttributes:
    """Extended attributes returned by the master's statx call."""

    mode: int = 0
    uid: int = 0
    gid: int = 0
    size: int = 0
    blocks: int = 0
    blksize: int = 0
    nlink: int = 0
    ino: int = 0
    rdev_major: int = 0
    rdev_minor: int = 0
    dev_major: int = 0
    dev_minor: int = 0
    atime: Optional[StatxTimestamp] = None
    mtime: Optional[StatxTimestamp] = None
    ctime: Optional[StatxTimestamp] = None
    btime: Optional[StatxTimestamp] = None


@dataclass
class SystemStats:
    """Cluster-wide space and file counts."""

    total_space: int = 0
    available_space: int = 0
    used_space: int = 0
    total_files: int = 0


@dataclass
class LeaseGrant:
    """Answer to a lease request; times are Unix seconds."""

    lease_id: str
    primary: str
    expire_time: float
    renewable_after: float


@dataclass
class LeaseRenewal:
    """Answer to a lease renewal; times are Unix seconds."""

    lease_id: str
    expire_time: float
    renewable_after: float
    renewal_count: int


@dataclass
class LeaseInfo:
    """Current lease of a chunk as known to the master."""

    lease_id: str
    primary: str
    replicas: List[str] = field(default_factory=list)
    version: int = 0
    granted_at: float = 0.0
    expire_time: float = 0.0
    renewable_after: float = 0.0
    state: str = ""
    renewal_count: int = 0


@dataclass
class RevokeResult:
    """Outcome of a lease revocation."""

    success: bool
    message: str = ""


@dataclass
class AllocatedChunk:
    """A chunk allocated by the master."""

    chunk_handle: str
    locations: List[ChunkLocation] = field(default_factory=list)
    lease_expiry: int = 0


@dataclass
class Attr:
    """Attributes reported to the kernel."""

    ino: int = 0
    mode: int = 0
    size: int = 0
    nlink: int = 0
    uid: int = 0
    gid: int = 0
    atime: int = 0
    mtime: int = 0
    ctime: int = 0
    blksize: int = 0
    blocks: int = 0


@dataclass
class EntryOut:
    """Result of a lookup-like call; timeouts are in seconds."""

    node_id: int = 0
    attr: Attr = field(default_factory=Attr)
    entry_timeout: float = 0.0
    attr_timeout: float = 0.0


@dataclass
class StatfsOut:
    """Filesystem statistics."""

    bsize: int = 0
    blocks: int = 0
    bfree: int = 0
    bavail: int = 0
    files: int = 0
    ffree: int = 0
    namelen: int = 0
    frsize: int = 0


@dataclass
class StatxOut:
    """Statx result reported to the kernel."""

    mask: int = 0
    ino: int = 0
    mode: int = 0
    uid: int = 0
    gid: int = 0
    size: int = 0
    nlink: int = 0
    blocks: int = 0
    blksize: int = 0
    rdev_major: int = 0
    rdev_minor: int = 0
    dev_major: int = 0
    dev_minor: int = 0
    atime: StatxTimestamp = field(default_factory=StatxTimestamp)
    mtime: StatxTimestamp = field(default_factory=StatxTimestamp)
    ctime: StatxTimestamp = field(default_factory=StatxTimestamp)
    btime: StatxTimestamp = field(default_factory=StatxTimestamp)


@dataclass
class WriteBuffer:
    """Sequential write data buffered for one file handle."""

    file_handle: int
    node_id: int
    start_offset: int
    data: bytearray = field(default_factory=bytearray)
    last_write: float = field(default_factory=time.monotonic)
    dirty: bool = False
    lock: threading.RLock = field(
        default_factory=threading.RLock, repr=False, compare=False
    )


@dataclass
class PendingWrite:
    """A chunk-sized write waiting to be serialized by the primary."""

    write_id: str
    chunk_handle: str
    chunk_index: int
    offset: int
    data: bytes
    chunk_version: int
    primary_addr: str
    replica_addrs: List[str] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)


@dataclass
class WriteSerializationJob:
    """A batch of pending writes for one file."""

    file_handle: int
    node_id: int
    writes: List[PendingWrite]
    cached_inode: Inode


@dataclass
class OpenFileInfo:
    """State of an open file handle."""

    inode: int
    open_flags: int = 0
    ref_count: int = 1
    is_write: bool = False
    open_time: float = field(default_factory=time.monotonic)
    last_access: float = field(default_factory=time.monotonic)
    lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    def touch(self) -> None:
        """Record an access now."""
        with self.lock:
            self.last_access = time.monotonic()