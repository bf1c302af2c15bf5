"""Buffered writes and the two-phase chunk write protocol."""

from __future__ import annotations

import contextlib
import errno
import logging
import secrets
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterator, List, Optional, Tuple

from .base import ChunkServerClient, FilesystemBase, FsError, RpcError, has_write_permission
from .messages import FileAttributes, Inode, PendingWrite, WriteBuffer, WriteSerializationJob

log = logging.getLogger(__name__)

FLUSH_THRESHOLD = 8 * 1024 * 1024
MAX_BUFFER_SIZE = 16 * 1024 * 1024
MAX_TOTAL_BUFFER_MEMORY = 128 * 1024 * 1024

_SIZE_MASK = 1 << 3
_MIN_DATA_FLOW_SUCCESS = 0.3
_MAX_DATA_FLOW_WORKERS = 16


def generate_write_id() -> str:
    """Return a random identifier for one staged write."""
    return "write_" + secrets.token_hex(16)


class WriteOps(FilesystemBase):
    """Write buffering per file handle and flushing to chunk servers."""

    retry_backoff: float = 1.0
    chunk_retries: int = 2

    def write(self, fh: int, offset: int, data: bytes, uid: int, gid: int) -> int:
        """Buffer ``data`` at ``offset`` for the handle and return the bytes accepted."""
        if not data:
            return 0
        start = time.monotonic()
        ino = self._inode_from_fh(fh)
        cached = self.validate_file(ino)
        if not has_write_permission(cached, uid, gid):
            raise FsError(errno.EACCES)
        written = self._buffer_write(fh, ino, bytes(data), offset, cached)
        if self.config.debug:
            log.debug(
                "Write: inode=%d fh=%d offset=%d size=%d written=%d duration=%.6fs",
                ino, fh, offset, len(data), written, time.monotonic() - start,
            )
        return written

    def _buffer_write(
        self, fh: int, ino: int, data: bytes, offset: int, cached: Inode
    ) -> int:
        with self.write_buffers_lock:
            limit = min(self.config.buffer_size, MAX_BUFFER_SIZE)

            if self._total_buffer_memory() > MAX_TOTAL_BUFFER_MEMORY:
                self._flush_largest_buffer()

            buffer = self.write_buffers.get(fh)
            if buffer is None:
                buffer = WriteBuffer(file_handle=fh, node_id=ino, start_offset=offset)
                self.write_buffers[fh] = buffer

            with buffer.lock:
                non_sequential = buffer.start_offset + len(buffer.data) != offset
                too_large = len(buffer.data) + len(data) > limit
                if non_sequential or too_large:
                    if buffer.data and buffer.dirty:
                        self._flush_to_chunkservers(buffer, cached)
                    buffer.data.clear()
                    buffer.start_offset = offset
                    buffer.dirty = False

                buffer.data.extend(data)
                buffer.last_write = time.monotonic()
                buffer.dirty = True

                if len(buffer.data) >= FLUSH_THRESHOLD:
                    self._flush_to_chunkservers(buffer, cached)

        return len(data)

    def flush_buffer(self, buffer: Optional[WriteBuffer], cached_inode: Inode) -> None:
        """Send a dirty buffer's data to the chunk servers and empty it."""
        if buffer is None or not buffer.data or not buffer.dirty:
            return
        self._flush_to_chunkservers(buffer, cached_inode)

    def _flush_to_chunkservers(self, buffer: WriteBuffer, cached_inode: Inode) -> None:
        if buffer is None or not buffer.data or not buffer.dirty:
            return
        data = bytes(buffer.data)
        start_offset = buffer.start_offset
        buffer.data.clear()
        buffer.dirty = False
        self._process_buffer_writes(
            buffer.file_handle, buffer.node_id, start_offset, data, cached_inode
        )

    def _process_buffer_writes(
        self, fh: int, ino: int, start_offset: int, data: bytes, cached_inode: Inode
    ) -> None:
        chunk_size = self.config.chunk_size
        pending: List[PendingWrite] = []
        offset = start_offset
        view = memoryview(data)

        while view:
            chunk_index, chunk_offset = divmod(offset, chunk_size)
            count = min(chunk_size - chunk_offset, len(view))
            piece, view = bytes(view[:count]), view[count:]
            try:
                handle, primary, replicas, version = self._ensure_chunk_exists_with_retry(
                    ino, chunk_index, self.chunk_retries
                )
            except Exception as err:
                log.error(
                    "Failed to ensure chunk %d exists for inode %d: %s", chunk_index, ino, err
                )
                offset += count
                continue

            pending.append(
                PendingWrite(
                    write_id=generate_write_id(),
                    chunk_handle=handle,
                    chunk_index=chunk_index,
                    offset=chunk_offset,
                    data=piece,
                    chunk_version=version,
                    primary_addr=primary,
                    replica_addrs=replicas,
                )
            )
            offset += count

        if pending:
            self._execute_write_protocol(
                WriteSerializationJob(
                    file_handle=fh, node_id=ino, writes=pending, cached_inode=cached_inode
                )
            )

    def ensure_chunk_exists(self, inode: int, chunk_index: int) -> Tuple[str, str, List[str], int]:
        """Return ``(handle, primary, replicas, version)`` for a chunk, allocating it if needed."""
        file_inode = self.master.get_attributes(inode)
        if file_inode is None:
            raise LookupError("file not found")

        handle = file_inode.chunk_handles.get(chunk_index, "")
        if not handle:
            handle, _ = self.allocate_chunk_with_lease(inode, chunk_index)

        infos = self.master.get_chunk_locations([handle])
        if not infos or not infos[0].locations:
            raise LookupError(f"no chunk locations found for {handle}")
        info = infos[0]

        try:
            lease = self.master.get_lease_info(handle)
        except RpcError as err:
            log.info("No active lease for chunk %s, requesting new lease: %s", handle, err)
            grant = self.master.grant_lease(
                handle, "", [location.address for location in info.locations], info.version
            )
            primary = grant.primary
            if not primary:
                raise LookupError(f"no primary assigned for chunk {handle}") from err
        else:
            primary = lease.primary
            if not primary:
                raise LookupError(f"no primary found for chunk {handle}")

        replicas = [loc.address for loc in info.locations if loc.address != primary]
        return handle, primary, replicas, info.version

    def _ensure_chunk_exists_with_retry(
        self, inode: int, chunk_index: int, max_retries: int
    ) -> Tuple[str, str, List[str], int]:
        last_error: Optional[Exception] = None
        for attempt in range(max_retries + 1):
            if attempt > 0:
                time.sleep(attempt * self.retry_backoff)
            try:
                return self.ensure_chunk_exists(inode, chunk_index)
            except Exception as err:
                last_error = err
        raise RuntimeError(
            f"chunk allocation failed after {max_retries + 1} attempts: {last_error}"
        ) from last_error

    def _execute_write_protocol(self, job: WriteSerializationJob) -> None:
        if not job.writes:
            return
        if not self._execute_data_flow(job.writes):
            log.warning("Data flow phase failed - proceeding anyway")
        if not self._execute_control_flow(job.writes):
            log.error("Control flow phase failed")
            return
        self._update_metadata_after_write(job)

    def _execute_data_flow(self, writes: List[PendingWrite]) -> bool:
        targets = [
            (address, write)
            for write in writes
            for address in [write.primary_addr, *write.replica_addrs]
        ]
        workers = min(len(targets), _MAX_DATA_FLOW_WORKERS)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(
                executor.map(lambda target: self._send_data_to_replica(*target), targets)
            )
        success = sum(results) / len(targets) >= _MIN_DATA_FLOW_SUCCESS
        if not success:
            log.warning("Data flow failed - insufficient replicas succeeded")
        return success

    @contextlib.contextmanager
    def _chunk_server(self, address: str) -> Iterator[ChunkServerClient]:
        if self.connect is None:
            raise ConnectionError("no chunk server connector configured")
        client = self.connect(address)
        try:
            yield client
        finally:
            client.close()

    def _send_data_to_replica(self, address: str, write: PendingWrite) -> bool:
        try:
            with self._chunk_server(address) as client:
                return bool(
                    client.buffer_data(
                        write.write_id,
                        write.chunk_handle,
                        write.offset,
                        write.data,
                        write.chunk_version,
                    )
                )
        except Exception as err:
            log.debug("Buffering data on %s failed: %s", address, err)
            return False

    def _execute_control_flow(self, writes: List[PendingWrite]) -> bool:
        groups: Dict[Tuple[str, str], List[PendingWrite]] = {}
        for write in writes:
            groups.setdefault((write.chunk_handle, write.primary_addr), []).append(write)
        succeeded = sum(
            self._send_serialize_command(primary, handle, group)
            for (handle, primary), group in groups.items()
        )
        return succeeded == len(groups)

    def _send_serialize_command(
        self, primary: str, chunk_handle: str, writes: List[PendingWrite]
    ) -> bool:
        write_ids = [write.write_id for write in writes]
        replicas: List[str] = []
        for write in writes:
            replicas.extend(addr for addr in write.replica_addrs if addr not in replicas)
        try:
            with self._chunk_server(primary) as client:
                return bool(client.serialize_writes(chunk_handle, write_ids, replicas))
        except Exception as err:
            log.debug("Serializing writes on %s failed: %s", primary, err)
            return False

    def _update_metadata_after_write(self, job: WriteSerializationJob) -> None:
        if not job.writes:
            return
        chunk_size = self.config.chunk_size
        end = max(w.chunk_index * chunk_size + w.offset + len(w.data) for w in job.writes)
        if end > job.cached_inode.attributes.size:
            try:
                self.update_file_size(job.node_id, end)
            except Exception as err:
                log.warning("Failed to update file size: %s", err)
            self.cache.invalidate(job.node_id)

    def update_file_size(self, inode: int, new_size: int) -> FileAttributes:
        """Set only the size attribute of an inode on the master."""
        return self.master.set_attributes(inode, FileAttributes(size=new_size), _SIZE_MASK)

    def _total_buffer_memory(self) -> int:
        return sum(len(buffer.data) for buffer in self.write_buffers.values() if buffer)

    def _flush_largest_buffer(self) -> None:
        candidates = [b for b in self.write_buffers.values() if b and b.dirty and b.data]
        if not candidates:
            return
        largest = max(candidates, key=lambda buffer: len(buffer.data))
        try:
            cached = self.validate_file(largest.node_id)
        except FsError:
            return
        self._flush_to_chunkservers(largest, cached)