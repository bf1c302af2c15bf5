"""Directory, link and node operations on the namespace."""

from __future__ import annotations

import errno
import logging
import stat
import threading
from typing import List, Set, Tuple

from .base import FilesystemBase, FsError
from .messages import DirectoryEntry, EntryOut, EntryType, FileAttributes, Inode

log = logging.getLogger(__name__)

_S_IFMT = 0o170000
_MAX_DIR_ENTRIES = 1000
_SYMLINK_TARGET_KEY = "symlink_target"

_TYPE_BY_FORMAT = {
    stat.S_IFREG: EntryType.FILE,
    stat.S_IFDIR: EntryType.DIRECTORY,
    stat.S_IFLNK: EntryType.SYMLINK,
}


class NamespaceOps(FilesystemBase):
    """Create, list, rename and remove directory entries."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._open_dirs: Set[int] = set()
        self._open_dirs_lock = threading.Lock()

    def _created(self, inode: Inode) -> EntryOut:
        self.cache.store_inode(inode)
        return self._entry_out(inode)

    def _create(
        self,
        parent: int,
        name: str,
        entry_type: EntryType,
        attributes: FileAttributes,
        symlink_target: str = "",
    ) -> EntryOut:
        with self._translate():
            inode = self.master.create_entry(
                parent, name, entry_type, attributes, symlink_target
            )
        return self._created(inode)

    def mkdir(self, parent: int, name: str, mode: int, uid: int, gid: int) -> EntryOut:
        """Create a directory inside ``parent``."""
        if not name:
            raise FsError(errno.EINVAL)
        self.validate_directory(parent)
        return self._create(
            parent,
            name,
            EntryType.DIRECTORY,
            FileAttributes(mode=mode | stat.S_IFDIR, uid=uid, gid=gid, nlink=2),
        )

    def _delete(self, parent: int, name: str, operation: str) -> None:
        if not name:
            raise FsError(errno.EINVAL)
        self.validate_directory(parent)
        try:
            with self._translate():
                self.master.delete_entry(parent, name, False)
        except FsError as err:
            if self.config.debug:
                log.error("%s failed: %s", operation, err)
            raise

    def rmdir(self, parent: int, name: str) -> None:
        """Remove an empty directory."""
        self._delete(parent, name, "Rmdir")

    def opendir(self, ino: int) -> int:
        """Open a directory and return its handle."""
        self.validate_directory(ino)
        fh = self._allocate_file_handle()
        with self._open_dirs_lock:
            self._open_dirs.add(fh)
        return fh

    def _list(self, ino: int, offset: int, operation: str) -> List[DirectoryEntry]:
        self.validate_directory(ino)
        try:
            with self._translate():
                entries = self.master.list_directory(ino, _MAX_DIR_ENTRIES)
        except FsError as err:
            if self.config.debug:
                log.error("%s failed: %s", operation, err)
            raise
        return list(entries[offset:])

    def readdir(self, ino: int, offset: int = 0) -> List[DirectoryEntry]:
        """Return the entries of a directory from position ``offset`` on."""
        return self._list(ino, offset, "ReadDir")

    def readdirplus(self, ino: int, offset: int = 0) -> List[Tuple[DirectoryEntry, EntryOut]]:
        """Like readdir, with full attributes for each entry, which are also cached."""
        result = []
        for entry in self._list(ino, offset, "ReadDirPlus"):
            inode = Inode(ino=entry.ino, attributes=entry.attributes)
            self.cache.store_inode(inode)
            result.append((entry, self._entry_out(inode)))
        return result

    def releasedir(self, fh: int) -> None:
        """Forget a directory handle."""
        with self._open_dirs_lock:
            self._open_dirs.discard(fh)

    def fsyncdir(self, fh: int) -> None:
        """Directory sync is not supported."""
        raise FsError(errno.ENOSYS)

    def mknod(self, parent: int, name: str, mode: int, uid: int, gid: int) -> EntryOut:
        """Create a regular file, directory or symlink node from ``mode``."""
        if not name:
            raise FsError(errno.EINVAL)
        self.validate_directory(parent)
        entry_type = _TYPE_BY_FORMAT.get(mode & _S_IFMT)
        if entry_type is None:
            raise FsError(errno.ENOTSUP)
        return self._create(
            parent, name, entry_type, FileAttributes(mode=mode, uid=uid, gid=gid, nlink=1)
        )

    def unlink(self, parent: int, name: str) -> None:
        """Remove a file from a directory."""
        self._delete(parent, name, "Unlink")

    def rename(self, parent: int, old_name: str, new_parent: int, new_name: str) -> None:
        """Move or rename an entry."""
        if not old_name or not new_name:
            raise FsError(errno.EINVAL)
        self.validate_directory(parent)
        self.validate_directory(new_parent)
        with self._translate():
            self.master.move_entry(parent, old_name, new_parent, new_name)

    def link(self, ino: int, new_parent: int, name: str) -> EntryOut:
        """Hard links are not supported; raises ENOTSUP after validating arguments."""
        if not name:
            raise FsError(errno.EINVAL)
        self.validate_directory(new_parent)
        raise FsError(errno.ENOTSUP)

    def symlink(
        self, parent: int, target: str, link_name: str, uid: int, gid: int
    ) -> EntryOut:
        """Create a symbolic link named ``link_name`` pointing at ``target``."""
        if not link_name or not target:
            raise FsError(errno.EINVAL)
        self.validate_directory(parent)
        return self._create(
            parent,
            link_name,
            EntryType.SYMLINK,
            FileAttributes(
                mode=stat.S_IFLNK | 0o777,
                uid=uid,
                gid=gid,
                nlink=1,
                size=len(target.encode()),
            ),
            symlink_target=target,
        )

    def readlink(self, ino: int) -> bytes:
        """Return the target of a symbolic link."""
        with self._translate():
            inode = self.get_inode_with_cache(ino)
        if inode.attributes.mode & _S_IFMT != stat.S_IFLNK:
            raise FsError(errno.EINVAL)
        target = (inode.xattrs or {}).get(_SYMLINK_TARGET_KEY)
        if target is None:
            raise FsError(errno.ENOENT)
        return bytes(target)