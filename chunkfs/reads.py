"""Reading file data from chunk replicas."""

from __future__ import annotations

import contextlib
import errno
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

from .base import ChunkServerClient, FilesystemBase, FsError
from .messages import ChunkLocation

log = logging.getLogger(__name__)

_REPLICA_READ_TIMEOUT = 3.0
_MAX_READ_WORKERS = 16


@dataclass(frozen=True)
class _ChunkRead:
    """One piece of a read request that falls inside a single chunk."""

    index: int
    offset: int
    length: int
    buf_pos: int


class ReadOps(FilesystemBase):
    """Reads that honour pending writes and fail over between replicas."""

    def read(self, fh: int, offset: int, size: int) -> bytes:
        """Read up to ``size`` bytes at ``offset`` from the file open as ``fh``."""
        ino = self._inode_from_fh(fh)

        buffered = self._read_from_write_buffers(ino, offset, size)
        if buffered is not None:
            return buffered

        self.validate_file(ino)
        return self._read_chunks(ino, offset, size)

    def _plan_reads(self, offset: int, size: int) -> List[_ChunkRead]:
        chunk_size = self.config.chunk_size
        reads: List[_ChunkRead] = []
        position = offset
        remaining = size
        while remaining > 0:
            index, chunk_offset = divmod(position, chunk_size)
            count = min(remaining, chunk_size - chunk_offset)
            reads.append(_ChunkRead(index, chunk_offset, count, position - offset))
            position += count
            remaining -= count
        return reads

    def _read_chunks(self, ino: int, offset: int, size: int) -> bytes:
        reads = self._plan_reads(offset, size)
        if len(reads) == 1:
            return self._read_single_chunk(ino, reads[0])
        return self._read_multiple_chunks(ino, reads, size)

    def _read_single_chunk(self, ino: int, piece: _ChunkRead) -> bytes:
        locations, handle = self._chunk_info(ino, piece.index)
        if not locations:
            return bytes(piece.length)
        try:
            return self._read_from_replicas(handle, piece.offset, piece.length, locations)
        except Exception as err:
            log.debug("Reading chunk %d of inode %d failed: %s", piece.index, ino, err)
            raise FsError(errno.EIO) from err

    def _fetch_piece(self, ino: int, piece: _ChunkRead) -> bytes:
        locations, handle = self._chunk_info(ino, piece.index)
        if not locations:
            return bytes(piece.length)
        return self._read_from_replicas(handle, piece.offset, piece.length, locations)

    def _read_multiple_chunks(self, ino: int, reads: List[_ChunkRead], size: int) -> bytes:
        if not reads:
            return b""
        workers = min(len(reads), _MAX_READ_WORKERS)
        try:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                results = list(executor.map(lambda piece: self._fetch_piece(ino, piece), reads))
        except Exception as err:
            log.debug("Multi-chunk read of inode %d failed: %s", ino, err)
            raise FsError(errno.EIO) from err

        buffer = bytearray(size)
        total = 0
        for piece, data in zip(reads, results):
            buffer[piece.buf_pos:piece.buf_pos + len(data)] = data
            total += len(data)
        return bytes(buffer[:total])

    @contextlib.contextmanager
    def _replica_client(self, address: str) -> Iterator[ChunkServerClient]:
        pool = self.connection_pool
        if pool is not None:
            conn = pool.get_connection(address)
            try:
                yield conn.client
            finally:
                pool.release_connection(conn)
            return
        if self.connect is None:
            raise ConnectionError("no chunk server connector configured")
        client = self.connect(address)
        try:
            yield client
        finally:
            client.close()

    def _read_from_replicas(
        self, handle: str, offset: int, length: int, locations: List[ChunkLocation]
    ) -> bytes:
        deadline = time.monotonic() + _REPLICA_READ_TIMEOUT
        last_error: Optional[Exception] = None
        for location in locations:
            if time.monotonic() > deadline:
                raise TimeoutError(f"read timed out: {last_error}")
            try:
                with self._replica_client(location.address) as client:
                    data = client.read_chunk(handle, offset, length)
            except Exception as err:
                last_error = err
                continue
            if data:
                return bytes(data[:length])

        if last_error is not None:
            raise ConnectionError(
                f"failed to read from any replica: {last_error}"
            ) from last_error
        raise ConnectionError("failed to read from any replica (all replicas returned empty data)")

    def _read_from_write_buffers(self, ino: int, offset: int, size: int) -> Optional[bytes]:
        read_end = offset + size
        with self.write_buffers_lock:
            for buffer in self.write_buffers.values():
                if buffer.node_id != ino:
                    continue
                with buffer.lock:
                    buffer_end = buffer.start_offset + len(buffer.data)
                    if buffer.start_offset <= offset and buffer_end >= read_end:
                        start = offset - buffer.start_offset
                        return bytes(buffer.data[start:start + size])
        return None

    def _chunk_info(self, ino: int, chunk_index: int) -> Tuple[List[ChunkLocation], str]:
        with self._translate():
            inode = self.master.get_attributes(ino)
        if inode is None or chunk_index >= len(inode.chunk_handles):
            return [], ""
        handle = inode.chunk_handles.get(chunk_index, "")
        if not handle:
            return [], ""
        with self._translate():
            infos = self.master.get_chunk_locations([handle])
        if not infos:
            return [], handle
        return list(infos[0].locations), handle