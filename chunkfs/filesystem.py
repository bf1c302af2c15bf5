"""The filesystem client: all operations plus lifecycle management."""

from __future__ import annotations

import errno
import logging
import threading
import time
from typing import Optional

from .base import ChunkServerFactory, FsError, MasterClient
from .cache import Cache, ChunkLeaseCache
from .config import ClientConfig, ServiceState
from .attrs import AttrOps
from .files import FileOps
from .namespace import NamespaceOps
from .pool import ChunkServerConnectionPool, ConnectionPoolConfig
from .xattrs import XattrOps

log = logging.getLogger(__name__)

_MAX_BUFFER_AGE = 5.0
_CLEANUP_INTERVAL = 2.0

_POOL_CONFIG = ConnectionPoolConfig(
    max_idle_conns=20,
    idle_timeout=2 * 60.0,
    connect_timeout=3.0,
    max_lifetime=10 * 60.0,
    health_check_interval=60.0,
)


class Filesystem(FileOps, AttrOps, NamespaceOps, XattrOps):
    """A client of the distributed filesystem."""

    def __init__(
        self,
        config: ClientConfig,
        master: MasterClient,
        *,
        connect: Optional[ChunkServerFactory] = None,
        connection_pool: Optional[ChunkServerConnectionPool] = None,
        cache: Optional[Cache] = None,
        lease_cache: Optional[ChunkLeaseCache] = None,
        cleanup_interval: float = _CLEANUP_INTERVAL,
    ) -> None:
        if config is None:
            raise ValueError("config cannot be None")
        try:
            config.validate()
        except Exception as err:
            raise ValueError(f"invalid config: {err}") from err

        if connection_pool is None and connect is not None:
            connection_pool = ChunkServerConnectionPool(connect, _POOL_CONFIG)

        super().__init__(
            config,
            master,
            cache=cache,
            lease_cache=lease_cache,
            connection_pool=connection_pool,
            connect=connect,
        )
        if config.debug:
            log.debug("Connected to master server at: %s", config.master_addr)

        self._cleanup_interval = cleanup_interval
        self._cleanup_stop = threading.Event()
        self._cleanup_thread = threading.Thread(
            target=self._cleanup_loop, name="write-buffer-cleanup", daemon=True
        )
        self._cleanup_thread.start()

        self.state = ServiceState.RUNNING
        log.info("DFS filesystem client created successfully")

    def __enter__(self) -> "Filesystem":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __str__(self) -> str:
        debug = "true" if self.config.debug else "false"
        return (
            f"DFS Filesystem [mount={self.config.mount_point}, debug={debug}, "
            f"server={self.config.master_addr}]"
        )

    def start(self) -> None:
        """Mark the client as running."""
        with self.state_lock:
            self.state = ServiceState.RUNNING

    def close(self) -> None:
        """Shut down connections and stop background work; safe to call twice."""
        with self.state_lock:
            if self.state == ServiceState.STOPPED:
                return
            self.state = ServiceState.STOPPING
            self._cleanup_stop.set()
            if self.config.debug:
                log.debug("Shutting down client connections...")

            if self.connection_pool is not None:
                self.connection_pool.close()

            closer = getattr(self.master, "close", None)
            if callable(closer):
                try:
                    closer()
                except Exception as err:
                    log.error("Error closing master connection: %s", err)
                    raise

            self.state = ServiceState.STOPPED
            if self.config.debug:
                log.debug("Filesystem client stopped successfully")

    def get_state(self) -> ServiceState:
        """The current lifecycle state."""
        with self.state_lock:
            return self.state

    def is_running(self) -> bool:
        """True while the client is operational."""
        return self.get_state() == ServiceState.RUNNING

    def cleanup_stale_write_buffers(self) -> None:
        """Drop write buffers that have not been written to for a while."""
        with self.write_buffers_lock:
            now = time.monotonic()
            stale = []
            for fh, buffer in self.write_buffers.items():
                with buffer.lock:
                    is_stale = now - buffer.last_write > _MAX_BUFFER_AGE
                    size = len(buffer.data)
                if is_stale:
                    if size and self.config.debug:
                        log.debug("Found stale buffer for fh=%d with %d bytes", fh, size)
                    stale.append(fh)
            for fh in stale:
                del self.write_buffers[fh]

    def _cleanup_loop(self) -> None:
        while not self._cleanup_stop.wait(self._cleanup_interval):
            self.cleanup_stale_write_buffers()
            if not self.is_running():
                return

    def set_debug(self, debug: bool) -> None:
        """Turn debug logging on or off."""
        self.config.debug = debug
        log.info("Debug mode %s for filesystem", "enabled" if debug else "disabled")

    def on_unmount(self) -> None:
        """Release resources after the last request."""
        try:
            self.close()
        except Exception as err:
            log.error("Error during filesystem cleanup: %s", err)
        log.info("FUSE filesystem unmounted successfully")

    def ioctl(self, ino: int, cmd: int) -> bytes:
        """Ioctl requests are not supported."""
        raise FsError(errno.ENOTSUP)