"""Opening, closing, syncing and positioning regular files."""

from __future__ import annotations

import errno
import logging
import os
import stat
from typing import Tuple

from .base import FsError, has_write_permission
from .messages import EntryOut, EntryType, FileAttributes, OpenFileInfo
from .reads import ReadOps
from .writes import WriteOps

log = logging.getLogger(__name__)

_WRITE_FLAGS = os.O_WRONLY | os.O_RDWR
_FLUSH_ATTEMPTS = 3


class FileOps(ReadOps, WriteOps):
    """Regular-file operations built on buffered writes and replica reads."""

    def _track_open_file(self, fh: int, ino: int, flags: int) -> None:
        info = OpenFileInfo(inode=ino, open_flags=flags, is_write=bool(flags & _WRITE_FLAGS))
        with self.open_files_lock:
            self.open_files[fh] = info

    def _cleanup_open_file(self, fh: int) -> None:
        with self.open_files_lock:
            info = self.open_files.get(fh)
            if info is None:
                return
            with info.lock:
                info.ref_count -= 1
                if info.ref_count <= 0:
                    del self.open_files[fh]

    def create(
        self, parent: int, name: str, mode: int, flags: int, uid: int, gid: int
    ) -> Tuple[EntryOut, int]:
        """Create and open a regular file; return its entry and file handle."""
        if not name:
            raise FsError(errno.EINVAL)
        self.validate_directory(parent)

        file_mode = mode | stat.S_IFREG
        if file_mode & 0o600 == 0:
            file_mode = 0o644 | stat.S_IFREG

        with self._translate():
            inode = self.master.create_entry(
                parent,
                name,
                EntryType.FILE,
                FileAttributes(mode=file_mode, uid=uid, gid=gid, nlink=1),
            )

        self.cache.store_inode(inode)
        fh = self._allocate_file_handle()
        self._track_open_file(fh, inode.ino, flags)
        return self._entry_out(inode), fh

    def open(self, ino: int, flags: int, uid: int, gid: int) -> int:
        """Open a regular file and return a new file handle."""
        inode = self.validate_file(ino)
        if flags & _WRITE_FLAGS and not has_write_permission(inode, uid, gid):
            if self.config.debug:
                log.debug(
                    "Open write permission denied: inode=%d uid=%d/%d gid=%d/%d mode=0%o",
                    ino, uid, inode.attributes.uid, gid, inode.attributes.gid,
                    inode.attributes.mode,
                )
            raise FsError(errno.EACCES)
        fh = self._allocate_file_handle()
        self._track_open_file(fh, ino, flags)
        return fh

    def _flush_buffer_for_handle(self, fh: int) -> None:
        with self.write_buffers_lock:
            buffer = self.write_buffers.pop(fh, None)
        if buffer is None or not buffer.data:
            return
        with buffer.lock:
            for _ in range(_FLUSH_ATTEMPTS):
                try:
                    cached = self.validate_file(buffer.node_id)
                    self.flush_buffer(buffer, cached)
                except FsError as err:
                    if err.errno == errno.EINTR:
                        continue
                    raise RuntimeError(f"failed to flush buffer: {err}") from err
                return

    def _sync_file_to_chunk_servers(self, ino: int) -> None:
        with self.write_buffers_lock:
            for fh, buffer in self.write_buffers.items():
                if buffer.node_id != ino or not buffer.data:
                    continue
                with buffer.lock:
                    try:
                        cached = self.validate_file(ino)
                        self.flush_buffer(buffer, cached)
                    except FsError as err:
                        raise RuntimeError(
                            f"failed to flush buffer for fh={fh}: {err}"
                        ) from err

    def release(self, fh: int, ino: int) -> None:
        """Close a file handle, pushing any buffered data to the chunk servers."""
        try:
            inode = self._inode_from_fh(fh)
        except FsError:
            if self.config.debug:
                log.error("Release: failed to get inode for fh=%d", fh)
            inode = ino

        try:
            self._flush_buffer_for_handle(fh)
        except Exception as err:
            log.error("Release: %s", err)

        try:
            self._sync_file_to_chunk_servers(inode)
        except Exception as err:
            log.error("Release: failed to sync file %d: %s", inode, err)

        self._cleanup_open_file(fh)

    def flush(self, fh: int, ino: int) -> None:
        """Send any buffered data of the handle to storage."""
        try:
            inode = self._inode_from_fh(fh)
        except FsError:
            inode = ino

        self.cache.invalidate(inode)

        with self.write_buffers_lock:
            buffer = self.write_buffers.get(fh)
        if buffer is None:
            return

        cached = self.validate_file(inode)
        with self.write_buffers_lock:
            self.flush_buffer(buffer, cached)

    def fsync(self, fh: int) -> None:
        """Check that the handle is open; data is synced on flush and release."""
        self._inode_from_fh(fh)

    def fallocate(self, ino: int, offset: int, length: int, mode: int) -> None:
        """Allocate every chunk up to ``offset + length``; only mode 0 is supported."""
        if mode != 0:
            raise FsError(errno.ENOTSUP)
        inode = self.validate_file(ino)

        end = offset + length
        if end <= inode.attributes.size:
            return

        last_chunk = (end - 1) // self.config.chunk_size
        for chunk_index in range(last_chunk + 1):
            with self._translate():
                self.allocate_chunk_with_lease(ino, chunk_index)

    def lseek(self, ino: int, offset: int, whence: int) -> int:
        """Return the new position for SEEK_SET, SEEK_CUR or SEEK_END."""
        inode = self.validate_file(ino)
        if whence in (os.SEEK_SET, os.SEEK_CUR):
            return offset
        if whence == os.SEEK_END:
            return inode.attributes.size + offset
        raise FsError(errno.EINVAL)

    def copy_file_range(
        self,
        fh_in: int,
        off_in: int,
        fh_out: int,
        off_out: int,
        length: int,
        uid: int,
        gid: int,
    ) -> int:
        """Copy a byte range between open files and return the bytes written."""
        data = self.read(fh_in, off_in, length)
        return self.write(fh_out, off_out, data, uid, gid)