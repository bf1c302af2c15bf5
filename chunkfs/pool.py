"""A pool of reusable chunk server connections with background upkeep."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .base import ChunkServerClient

log = logging.getLogger(__name__)

_DEFAULT_MAX_IDLE_CONNS = 5
_DEFAULT_IDLE_TIMEOUT = 2 * 60.0
_DEFAULT_CONNECT_TIMEOUT = 5.0
_DEFAULT_MAX_LIFETIME = 15 * 60.0
_DEFAULT_HEALTH_CHECK_INTERVAL = 15.0


@dataclass
class ConnectionPoolConfig:
    """Pool limits; durations are in seconds and 0 selects the default."""

    max_idle_conns: int = 0
    idle_timeout: float = 0.0
    connect_timeout: float = 0.0
    max_lifetime: float = 0.0
    health_check_interval: float = 0.0


@dataclass(eq=False)
class PooledConnection:
    """A chunk server client together with its pool bookkeeping."""

    client: ChunkServerClient
    created_at: float
    last_used: float
    in_use: bool = True
    healthy: bool = True
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def is_healthy(self) -> bool:
        """True unless a health check or a caller marked the connection bad."""
        with self.lock:
            return self.healthy

    def mark_unhealthy(self) -> None:
        """Flag the connection so the pool drops it."""
        with self.lock:
            self.healthy = False


def _close_quietly(client: ChunkServerClient) -> None:
    try:
        client.close()
    except Exception as err:
        log.debug("Closing chunk server connection failed: %s", err)


class ChunkServerConnectionPool:
    """Hands out connections per address, reusing idle healthy ones."""

    def __init__(
        self,
        connect: Callable[[str], ChunkServerClient],
        config: Optional[ConnectionPoolConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        start_maintenance: bool = True,
    ) -> None:
        cfg = dataclasses.replace(config) if config is not None else ConnectionPoolConfig()
        if cfg.max_idle_conns == 0:
            cfg.max_idle_conns = _DEFAULT_MAX_IDLE_CONNS
        if cfg.idle_timeout == 0:
            cfg.idle_timeout = _DEFAULT_IDLE_TIMEOUT
        if cfg.connect_timeout == 0:
            cfg.connect_timeout = _DEFAULT_CONNECT_TIMEOUT
        if cfg.max_lifetime == 0:
            cfg.max_lifetime = _DEFAULT_MAX_LIFETIME
        if cfg.health_check_interval == 0:
            cfg.health_check_interval = _DEFAULT_HEALTH_CHECK_INTERVAL
        self.config = cfg
        self._connect = connect
        self._clock = clock
        self._connections: Dict[str, List[PooledConnection]] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        if start_maintenance:
            self._thread = threading.Thread(
                target=self._maintenance_loop, name="chunk-pool-maintenance", daemon=True
            )
            self._thread.start()

    def get_connection(self, address: str) -> PooledConnection:
        """Return an idle healthy connection to ``address`` or open a new one."""
        with self._lock:
            conns = self._connections.get(address, [])
            for conn in list(conns):
                with conn.lock:
                    if not conn.in_use and conn.healthy:
                        conn.in_use = True
                        conn.last_used = self._clock()
                        return conn
                    unhealthy = not conn.healthy
                if unhealthy:
                    _close_quietly(conn.client)
                    conns.remove(conn)
            return self._create_connection(address)

    def _create_connection(self, address: str) -> PooledConnection:
        try:
            client = self._connect(address)
        except Exception as err:
            raise ConnectionError(
                f"failed to connect to chunk server {address}: {err}"
            ) from err
        try:
            client.health_check()
        except Exception as err:
            _close_quietly(client)
            raise ConnectionError(
                f"health check failed for chunk server {address}: {err}"
            ) from err

        now = self._clock()
        conn = PooledConnection(client=client, created_at=now, last_used=now)
        self._connections.setdefault(address, []).append(conn)
        log.info("Created new connection to chunk server: %s", address)
        return conn

    def release_connection(self, conn: Optional[PooledConnection]) -> None:
        """Return a connection to the pool."""
        if conn is None:
            return
        with conn.lock:
            conn.in_use = False
            conn.last_used = self._clock()

    def _maintenance_loop(self) -> None:
        while not self._stop.wait(self.config.health_check_interval):
            self.perform_maintenance()

    def perform_maintenance(self) -> None:
        """Close expired or surplus idle connections and health-check the rest."""
        to_check: List[Tuple[PooledConnection, str]] = []
        with self._lock:
            now = self._clock()
            for address in list(self._connections):
                active: List[PooledConnection] = []
                idle_count = 0
                for conn in self._connections[address]:
                    with conn.lock:
                        in_use = conn.in_use
                        remove = now - conn.created_at > self.config.max_lifetime
                        if not in_use and now - conn.last_used > self.config.idle_timeout:
                            remove = True
                        if not in_use:
                            idle_count += 1
                            if idle_count > self.config.max_idle_conns:
                                remove = True
                    if remove and not in_use:
                        _close_quietly(conn.client)
                        log.info("Closed expired connection to chunk server: %s", address)
                        continue
                    active.append(conn)
                    if not in_use:
                        to_check.append((conn, address))
                if active:
                    self._connections[address] = active
                else:
                    del self._connections[address]

        for conn, address in to_check:
            self._health_check(conn, address)

    def _health_check(self, conn: PooledConnection, address: str) -> None:
        try:
            conn.client.health_check()
            healthy = True
        except Exception as err:
            healthy = False
            log.warning("Health check failed for chunk server %s: %s", address, err)
        with conn.lock:
            conn.healthy = healthy

    def close(self) -> None:
        """Stop upkeep and close every connection."""
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()
        with self._lock:
            for address, conns in self._connections.items():
                for conn in conns:
                    _close_quietly(conn.client)
                log.info("Closed all connections to chunk server: %s", address)
            self._connections = {}

    def get_stats(self) -> Dict[str, int]:
        """Counts of total, active and idle connections and of servers."""
        with self._lock:
            total = active = idle = 0
            for conns in self._connections.values():
                total += len(conns)
                for conn in conns:
                    with conn.lock:
                        if conn.in_use:
                            active += 1
                        else:
                            idle += 1
            return {
                "total_connections": total,
                "active_connections": active,
                "idle_connections": idle,
                "servers": len(self._connections),
            }