"""Client-side tracking and automatic renewal of chunk leases."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Union

from .base import MasterClient
from .handles import ChunkHandle

log = logging.getLogger(__name__)

Duration = Union[timedelta, float, int]


def _seconds(value: Duration) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


@dataclass
class ClientLeaseInfo:
    """A lease held by this client; times are Unix seconds."""

    chunk_handle: ChunkHandle
    lease_id: str
    primary: str
    replicas: List[str] = field(default_factory=list)
    version: int = 0
    expire_time: float = 0.0
    renewable_after: float = 0.0
    renewal_count: int = 0
    auto_renew: bool = True
    last_used: float = 0.0


@dataclass
class ClientLeaseStats:
    """Counts describing the leases held."""

    active_leases: int = 0
    auto_renew_leases: int = 0
    renewable_leases: int = 0
    total_renewals: int = 0


class LeaseClient:
    """Requests, renews and revokes chunk leases through the master."""

    def __init__(
        self,
        master: MasterClient,
        renewal_threshold: Duration = timedelta(seconds=30),
        check_interval: Duration = timedelta(seconds=10),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._master = master
        self._renewal_threshold = _seconds(renewal_threshold)
        self._check_interval = _seconds(check_interval)
        self._clock = clock
        self._leases: Dict[ChunkHandle, ClientLeaseInfo] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the background renewal thread."""
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(
                target=self._renewal_loop, name="lease-renewal", daemon=True
            )
            self._thread.start()
        log.info("Lease client started")

    def stop(self) -> None:
        """Stop the renewal thread and wait for it to finish."""
        self._stop.set()
        with self._lock:
            thread, self._thread = self._thread, None
        if thread is not None:
            thread.join()
        log.info("Lease client stopped")

    def _renewal_loop(self) -> None:
        while not self._stop.wait(self._check_interval):
            self.process_lease_renewals()

    def request_lease(
        self,
        chunk_handle: ChunkHandle,
        requesting_server: str,
        replicas: List[str],
        version: int,
    ) -> ClientLeaseInfo:
        """Obtain a lease from the master and remember it."""
        grant = self._master.grant_lease(str(chunk_handle), requesting_server, replicas, version)
        lease = ClientLeaseInfo(
            chunk_handle=chunk_handle,
            lease_id=grant.lease_id,
            primary=grant.primary,
            replicas=replicas,
            version=version,
            expire_time=grant.expire_time,
            renewable_after=grant.renewable_after,
            renewal_count=0,
            auto_renew=True,
            last_used=self._clock(),
        )
        with self._lock:
            self._leases[chunk_handle] = lease
        log.info("Obtained lease %s for chunk %s", grant.lease_id, chunk_handle)
        return lease

    def get_lease(self, chunk_handle: ChunkHandle) -> Optional[ClientLeaseInfo]:
        """Return the lease if it has not expired, else None."""
        with self._lock:
            lease = self._leases.get(chunk_handle)
            if lease is None:
                return None
            now = self._clock()
            if now < lease.expire_time:
                lease.last_used = now
                return lease
            return None

    def renew_lease(self, chunk_handle: ChunkHandle) -> None:
        """Renew a held lease; raises LookupError if none is held."""
        with self._lock:
            lease = self._leases.get(chunk_handle)
            if lease is None:
                raise LookupError(f"no lease found for chunk {chunk_handle}")
            lease_id, primary, version = lease.lease_id, lease.primary, lease.version

        renewal = self._master.renew_lease(str(chunk_handle), lease_id, primary, version)

        with self._lock:
            current = self._leases.get(chunk_handle)
            if current is not None and current.lease_id == lease_id:
                current.expire_time = renewal.expire_time
                current.renewable_after = renewal.renewable_after
                current.renewal_count = renewal.renewal_count
                current.last_used = self._clock()
        log.info(
            "Renewed lease %s for chunk %s (renewal #%d)",
            lease_id,
            chunk_handle,
            renewal.renewal_count,
        )

    def revoke_lease(self, chunk_handle: ChunkHandle, reason: str) -> None:
        """Ask the master to revoke the lease and forget it."""
        result = self._master.revoke_lease(str(chunk_handle), reason)
        if not result.success:
            raise RuntimeError(f"lease revocation failed: {result.message}")
        with self._lock:
            self._leases.pop(chunk_handle, None)
        log.info("Revoked lease for chunk %s (reason: %s)", chunk_handle, reason)

    def set_auto_renew(self, chunk_handle: ChunkHandle, auto_renew: bool) -> None:
        """Turn automatic renewal of a lease on or off."""
        with self._lock:
            lease = self._leases.get(chunk_handle)
            if lease is not None:
                lease.auto_renew = auto_renew

    def process_lease_renewals(self) -> None:
        """Renew leases close to expiry and drop expired ones."""
        with self._lock:
            now = self._clock()
            to_renew = [
                handle
                for handle, lease in self._leases.items()
                if lease.auto_renew
                and lease.expire_time - now <= self._renewal_threshold
                and now > lease.renewable_after
            ]
            to_cleanup = [
                handle for handle, lease in self._leases.items() if now > lease.expire_time
            ]

        for handle in to_renew:
            try:
                self.renew_lease(handle)
            except Exception as err:  # keep renewing the others
                log.warning("Failed to auto-renew lease for chunk %s: %s", handle, err)

        if to_cleanup:
            with self._lock:
                for handle in to_cleanup:
                    self._leases.pop(handle, None)
                    log.info("Cleaned up expired lease for chunk %s", handle)

    def get_active_leases(self) -> Dict[ChunkHandle, ClientLeaseInfo]:
        """Return copies of every held lease."""
        with self._lock:
            return {
                handle: dataclasses.replace(lease, replicas=list(lease.replicas))
                for handle, lease in self._leases.items()
            }

    def get_lease_stats(self) -> ClientLeaseStats:
        """Summarise the held leases."""
        with self._lock:
            now = self._clock()
            stats = ClientLeaseStats(active_leases=len(self._leases))
            for lease in self._leases.values():
                if lease.auto_renew:
                    stats.auto_renew_leases += 1
                if now > lease.renewable_after:
                    stats.renewable_leases += 1
                stats.total_renewals += lease.renewal_count
            return stats