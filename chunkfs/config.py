"""Configuration defaults, environment loading and validation."""

from __future__ import annotations

import enum
import os
import re
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from fractions import Fraction
from typing import Mapping, Optional

# Common defaults
DEFAULT_DEBUG = True

# Master service defaults
DEFAULT_MASTER_PORT = "8000"
DEFAULT_REPLICATION_FACTOR = 3
DEFAULT_CHUNK_SIZE = 64 * 1024 * 1024
DEFAULT_MAX_INODES = 1_000_000
DEFAULT_HEARTBEAT_INTERVAL = timedelta(seconds=30)
DEFAULT_HEARTBEAT_TIMEOUT = timedelta(seconds=60)
DEFAULT_LEASE_TIMEOUT = timedelta(minutes=30)
DEFAULT_CHECKPOINT_INTERVAL = timedelta(minutes=2)
DEFAULT_GC_INTERVAL = timedelta(minutes=5)
DEFAULT_ORPHANED_CHUNK_GRACE_PERIOD = timedelta(hours=24)
DEFAULT_LOG_DIR = "./logs"
DEFAULT_ROOT_INODE = 1

# Chunk server defaults
DEFAULT_CHUNK_SERVER_PORT = 8081
DEFAULT_STORAGE_ROOT = "./storage"
DEFAULT_CHUNK_SERVER_CHUNK_SIZE = 64 * 1024 * 1024
DEFAULT_MASTER_ADDR = "localhost:8000"

# Client defaults
DEFAULT_BLOCK_SIZE = 64 * 1024
DEFAULT_MAX_NAME_LENGTH = 255
DEFAULT_MOUNT_POINT = "./mnt"
DEFAULT_ALLOW_OTHERS = False

# Client cache defaults
DEFAULT_BUFFER_SIZE = 20 * 1024 * 1024
DEFAULT_METADATA_CACHE_TTL = timedelta(minutes=5)
DEFAULT_CHUNK_LOC_CACHE_TTL = timedelta(minutes=10)
DEFAULT_MAX_METADATA_ENTRIES = 10_000
DEFAULT_CHUNK_TIMEOUT = timedelta(seconds=8)
DEFAULT_MAX_RETRIES = 2
DEFAULT_RPC_TIMEOUT = timedelta(seconds=5)
DEFAULT_CONN_IDLE_TIMEOUT = timedelta(minutes=1)

# Attribute cache
DEFAULT_ATTR_CACHE_TIMEOUT = timedelta(minutes=5)
DEFAULT_DIR_CACHE_TIMEOUT = timedelta(minutes=5)

# Client write defaults
DEFAULT_WRITE_BATCH_SIZE = 1024 * 1024

# RPC settings
DEFAULT_MAX_GRPC_MESSAGE_SIZE = 128 * 1024 * 1024

# Log and persistence defaults
DEFAULT_MAX_LOG_FILE_SIZE = 64 * 1024 * 1024
DEFAULT_LOG_ROTATION_SIZE = 32 * 1024 * 1024
DEFAULT_LOG_BUFFER_SIZE = 1024 * 1024
DEFAULT_CHECKPOINT_DIR = "./checkpoints"
DEFAULT_RECOVERY_TIMEOUT = timedelta(seconds=15)
DEFAULT_LOG_SYNC_INTERVAL = timedelta(seconds=2)
DEFAULT_LOG_VERSION = 1
DEFAULT_LOG_RETENTION_PERIOD = timedelta(days=7)
LOG_FILE_MAGIC = 0x4746534C  # "GFSL"

# Service lifecycle
DEFAULT_SHUTDOWN_TIMEOUT = timedelta(seconds=15)
DEFAULT_STARTUP_TIMEOUT = timedelta(seconds=5)


class ServiceState(enum.IntEnum):
    """Lifecycle state of a service."""

    UNKNOWN = 0
    STARTING = 1
    RUNNING = 2
    STOPPING = 3
    STOPPED = 4
    ERROR = 5


_UNIT_NS = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_COMPONENT = r"([0-9]+(?:\.[0-9]*)?|\.[0-9]+)(ns|us|\u00b5s|\u03bcs|ms|s|m|h)"
_COMPONENT_RE = re.compile(_COMPONENT)
_DURATION_RE = re.compile(rf"(?:{_COMPONENT})+")
_MAX_NS = 2**63 - 1


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``"1h30m"``, ``"1.5s"`` or ``"-250ms"``."""
    if not isinstance(text, str):
        raise TypeError("duration must be a string")
    body = text
    negative = False
    if body and body[0] in "+-":
        negative = body[0] == "-"
        body = body[1:]
    if body == "0":
        return timedelta(0)
    if not body or _DURATION_RE.fullmatch(body) is None:
        raise ValueError(f"invalid duration {text!r}")

    total_ns = 0
    for match in _COMPONENT_RE.finditer(body):
        number = match.group(1).rstrip(".") or "0"
        total_ns += int(Fraction(number) * _UNIT_NS[match.group(2)])
        if total_ns > _MAX_NS:
            raise ValueError(f"invalid duration {text!r}")

    value = timedelta(microseconds=total_ns // 1000)
    return -value if negative else value


_INT_RE = re.compile(r"[+-]?[0-9]+")
_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


def _env_str(env: Mapping[str, str], key: str, default: str) -> str:
    return env.get(key) or default


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    value = env.get(key)
    if value and _INT_RE.fullmatch(value):
        return int(value)
    return default


def _env_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    value = env.get(key)
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    return default


def _env_duration(env: Mapping[str, str], key: str, default: timedelta) -> timedelta:
    value = env.get(key)
    if value:
        try:
            return parse_duration(value)
        except ValueError:
            pass
    return default


def _u32(value: int) -> int:
    return value & 0xFFFFFFFF


def _u64(value: int) -> int:
    return value & 0xFFFFFFFFFFFFFFFF


def _i32(value: int) -> int:
    return ((value + 2**31) % 2**32) - 2**31


@dataclass
class ClientConfig:
    """Settings for the filesystem client."""

    debug: bool = DEFAULT_DEBUG
    master_addr: str = DEFAULT_MASTER_ADDR
    mount_point: str = DEFAULT_MOUNT_POINT
    allow_others: bool = DEFAULT_ALLOW_OTHERS
    block_size: int = DEFAULT_BLOCK_SIZE
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_name_length: int = DEFAULT_MAX_NAME_LENGTH
    buffer_size: int = DEFAULT_BUFFER_SIZE
    metadata_cache_ttl: timedelta = DEFAULT_METADATA_CACHE_TTL
    chunk_loc_cache_ttl: timedelta = DEFAULT_CHUNK_LOC_CACHE_TTL
    max_metadata_entries: int = DEFAULT_MAX_METADATA_ENTRIES
    chunk_timeout: timedelta = DEFAULT_CHUNK_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    rpc_timeout: timedelta = DEFAULT_RPC_TIMEOUT
    conn_idle_timeout: timedelta = DEFAULT_CONN_IDLE_TIMEOUT
    attr_cache_timeout: timedelta = DEFAULT_ATTR_CACHE_TIMEOUT
    dir_cache_timeout: timedelta = DEFAULT_DIR_CACHE_TIMEOUT
    write_batch_size: int = DEFAULT_WRITE_BATCH_SIZE

    def validate(self) -> None:
        """Raise ValueError if the configuration cannot be used."""
        if not self.master_addr:
            raise ValueError("master address cannot be empty")
        if not self.mount_point:
            raise ValueError("mount point cannot be empty")
        if self.chunk_size == 0:
            raise ValueError("chunk size must be positive")
        if self.block_size == 0:
            raise ValueError("block size must be positive")


@dataclass
class MasterConfig:
    """Settings for the master server."""

    debug: bool = DEFAULT_DEBUG
    port: str = DEFAULT_MASTER_PORT
    replication_factor: int = DEFAULT_REPLICATION_FACTOR
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_inodes: int = DEFAULT_MAX_INODES
    heartbeat_interval: timedelta = DEFAULT_HEARTBEAT_INTERVAL
    heartbeat_timeout: timedelta = DEFAULT_HEARTBEAT_TIMEOUT
    lease_timeout: timedelta = DEFAULT_LEASE_TIMEOUT
    checkpoint_interval: timedelta = DEFAULT_CHECKPOINT_INTERVAL
    gc_interval: timedelta = DEFAULT_GC_INTERVAL
    orphaned_chunk_grace_period: timedelta = DEFAULT_ORPHANED_CHUNK_GRACE_PERIOD
    log_dir: str = DEFAULT_LOG_DIR
    checkpoint_dir: str = DEFAULT_CHECKPOINT_DIR
    root_inode: int = DEFAULT_ROOT_INODE
    max_log_file_size: int = DEFAULT_MAX_LOG_FILE_SIZE
    log_buffer_size: int = DEFAULT_LOG_BUFFER_SIZE
    log_sync_interval: timedelta = DEFAULT_LOG_SYNC_INTERVAL
    recovery_timeout: timedelta = DEFAULT_RECOVERY_TIMEOUT
    enable_log_recovery: bool = True
    log_retention_period: timedelta = DEFAULT_LOG_RETENTION_PERIOD
    shutdown_timeout: timedelta = DEFAULT_SHUTDOWN_TIMEOUT
    startup_timeout: timedelta = DEFAULT_STARTUP_TIMEOUT

    def validate(self) -> None:
        """Raise ValueError if the configuration cannot be used."""
        if not self.port:
            raise ValueError("port cannot be empty")
        if self.replication_factor < 1:
            raise ValueError("replication factor must be at least 1")
        if self.chunk_size <= 0:
            raise ValueError("chunk size must be positive")
        if self.heartbeat_interval <= timedelta(0):
            raise ValueError("heartbeat interval must be positive")
        if self.heartbeat_timeout <= self.heartbeat_interval:
            raise ValueError("heartbeat timeout must be greater than heartbeat interval")
        if self.gc_interval <= timedelta(0):
            raise ValueError("GC interval must be positive")
        if self.orphaned_chunk_grace_period <= timedelta(0):
            raise ValueError("orphaned chunk grace period must be positive")


@dataclass
class ChunkServerConfig:
    """Settings for a chunk server."""

    debug: bool = DEFAULT_DEBUG
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    grpc_port: int = DEFAULT_CHUNK_SERVER_PORT
    master_addr: str = DEFAULT_MASTER_ADDR
    heartbeat_interval: timedelta = DEFAULT_HEARTBEAT_INTERVAL
    heartbeat_timeout: timedelta = DEFAULT_HEARTBEAT_TIMEOUT
    storage_root: str = DEFAULT_STORAGE_ROOT
    chunk_size: int = DEFAULT_CHUNK_SERVER_CHUNK_SIZE
    shutdown_timeout: timedelta = DEFAULT_SHUTDOWN_TIMEOUT
    startup_timeout: timedelta = DEFAULT_STARTUP_TIMEOUT

    def validate(self) -> None:
        """Raise ValueError if the configuration cannot be used."""
        if self.grpc_port <= 0 or self.grpc_port > 65535:
            raise ValueError("grpc port must be between 1 and 65535")
        if not self.master_addr:
            raise ValueError("master address cannot be empty")
        if not self.storage_root:
            raise ValueError("storage root cannot be empty")
        if self.chunk_size <= 0:
            raise ValueError("chunk size must be positive")


def load_master_config(environ: Optional[Mapping[str, str]] = None) -> MasterConfig:
    """Build a master configuration from environment variables."""
    env = os.environ if environ is None else environ
    return MasterConfig(
        debug=_env_bool(env, "DFS_DEBUG", DEFAULT_DEBUG),
        port=_env_str(env, "DFS_MASTER_PORT", DEFAULT_MASTER_PORT),
        replication_factor=_env_int(env, "DFS_REPLICATION_FACTOR", DEFAULT_REPLICATION_FACTOR),
        chunk_size=_env_int(env, "DFS_CHUNK_SIZE", DEFAULT_CHUNK_SIZE),
        max_inodes=_u64(_env_int(env, "MAX_INODES", DEFAULT_MAX_INODES)),
        heartbeat_interval=_env_duration(env, "DFS_HEARTBEAT_INTERVAL", DEFAULT_HEARTBEAT_INTERVAL),
        heartbeat_timeout=_env_duration(env, "DFS_HEARTBEAT_TIMEOUT", DEFAULT_HEARTBEAT_TIMEOUT),
        lease_timeout=_env_duration(env, "DFS_LEASE_TIMEOUT", DEFAULT_LEASE_TIMEOUT),
        checkpoint_interval=_env_duration(env, "DFS_CHECKPOINT_INTERVAL", DEFAULT_CHECKPOINT_INTERVAL),
        gc_interval=_env_duration(env, "DFS_GC_INTERVAL", DEFAULT_GC_INTERVAL),
        orphaned_chunk_grace_period=_env_duration(
            env, "DFS_ORPHANED_CHUNK_GRACE_PERIOD", DEFAULT_ORPHANED_CHUNK_GRACE_PERIOD
        ),
        log_dir=_env_str(env, "DFS_LOG_DIR", DEFAULT_LOG_DIR),
        checkpoint_dir=_env_str(env, "DFS_CHECKPOINT_DIR", DEFAULT_CHECKPOINT_DIR),
        root_inode=_u64(_env_int(env, "DFS_ROOT_INODE", DEFAULT_ROOT_INODE)),
        max_log_file_size=_env_int(env, "DFS_MAX_LOG_FILE_SIZE", DEFAULT_MAX_LOG_FILE_SIZE),
        log_buffer_size=_env_int(env, "DFS_LOG_BUFFER_SIZE", DEFAULT_LOG_BUFFER_SIZE),
        log_sync_interval=_env_duration(env, "DFS_LOG_SYNC_INTERVAL", DEFAULT_LOG_SYNC_INTERVAL),
        recovery_timeout=_env_duration(env, "DFS_RECOVERY_TIMEOUT", DEFAULT_RECOVERY_TIMEOUT),
        enable_log_recovery=_env_bool(env, "DFS_ENABLE_LOG_RECOVERY", True),
        log_retention_period=_env_duration(
            env, "DFS_LOG_RETENTION_PERIOD", DEFAULT_LOG_RETENTION_PERIOD
        ),
        shutdown_timeout=_env_duration(env, "DFS_SHUTDOWN_TIMEOUT", DEFAULT_SHUTDOWN_TIMEOUT),
        startup_timeout=_env_duration(env, "DFS_STARTUP_TIMEOUT", DEFAULT_STARTUP_TIMEOUT),
    )


def load_chunk_server_config(environ: Optional[Mapping[str, str]] = None) -> ChunkServerConfig:
    """Build a chunk server configuration from environment variables."""
    env = os.environ if environ is None else environ
    return ChunkServerConfig(
        debug=_env_bool(env, "DFS_DEBUG", DEFAULT_DEBUG),
        id=uuid.uuid4(),
        grpc_port=_env_int(env, "DFS_CHUNKSERVER_PORT", DEFAULT_CHUNK_SERVER_PORT),
        master_addr=_env_str(env, "DFS_MASTER_ADDR", DEFAULT_MASTER_ADDR),
        heartbeat_interval=_env_duration(env, "DFS_HEARTBEAT_INTERVAL", DEFAULT_HEARTBEAT_INTERVAL),
        heartbeat_timeout=_env_duration(env, "DFS_HEARTBEAT_TIMEOUT", DEFAULT_HEARTBEAT_TIMEOUT),
        storage_root=_env_str(env, "DFS_STORAGE_ROOT", DEFAULT_STORAGE_ROOT),
        chunk_size=_i32(_env_int(env, "DFS_CHUNK_SIZE", DEFAULT_CHUNK_SERVER_CHUNK_SIZE)),
        shutdown_timeout=_env_duration(env, "DFS_SHUTDOWN_TIMEOUT", DEFAULT_SHUTDOWN_TIMEOUT),
        startup_timeout=_env_duration(env, "DFS_STARTUP_TIMEOUT", DEFAULT_STARTUP_TIMEOUT),
    )


def load_client_config(environ: Optional[Mapping[str, str]] = None) -> ClientConfig:
    """Build a client configuration from environment variables."""
    env = os.environ if environ is None else environ
    return ClientConfig(
        debug=_env_bool(env, "DFS_DEBUG", DEFAULT_DEBUG),
        master_addr=_env_str(env, "DFS_MASTER_ADDR", DEFAULT_MASTER_ADDR),
        mount_point=_env_str(env, "DFS_MOUNT_POINT", DEFAULT_MOUNT_POINT),
        allow_others=_env_bool(env, "DFS_ALLOW_OTHERS", DEFAULT_ALLOW_OTHERS),
        block_size=_u32(_env_int(env, "DFS_BLOCK_SIZE", DEFAULT_BLOCK_SIZE)),
        chunk_size=_u32(_env_int(env, "DFS_CHUNK_SIZE", DEFAULT_CHUNK_SIZE)),
        max_name_length=_u32(_env_int(env, "DFS_MAX_NAME_LENGTH", DEFAULT_MAX_NAME_LENGTH)),
        buffer_size=_env_int(env, "DFS_CACHE_SIZE", DEFAULT_BUFFER_SIZE),
        metadata_cache_ttl=_env_duration(env, "DFS_METADATA_CACHE_TTL", DEFAULT_METADATA_CACHE_TTL),
        chunk_loc_cache_ttl=_env_duration(
            env, "DFS_CHUNK_LOC_CACHE_TTL", DEFAULT_CHUNK_LOC_CACHE_TTL
        ),
        max_metadata_entries=_env_int(env, "DFS_MAX_METADATA_ENTRIES", DEFAULT_MAX_METADATA_ENTRIES),
        chunk_timeout=_env_duration(env, "DFS_CHUNK_TIMEOUT", DEFAULT_CHUNK_TIMEOUT),
        max_retries=_env_int(env, "DFS_MAX_RETRIES", DEFAULT_MAX_RETRIES),
        rpc_timeout=_env_duration(env, "DFS_RPC_TIMEOUT", DEFAULT_RPC_TIMEOUT),
        conn_idle_timeout=_env_duration(env, "DFS_CONN_IDLE_TIMEOUT", DEFAULT_CONN_IDLE_TIMEOUT),
        attr_cache_timeout=_env_duration(env, "ATTR_CACHE_TIMEOUT", DEFAULT_ATTR_CACHE_TIMEOUT),
        dir_cache_timeout=_env_duration(env, "DIR_CACHE_TIMEOUT", DEFAULT_DIR_CACHE_TIMEOUT),
        write_batch_size=_env_int(env, "DFS_WRITE_BATCH_SIZE", DEFAULT_WRITE_BATCH_SIZE),
    )