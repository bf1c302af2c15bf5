# chunkfs

The client side of a chunk-based distributed filesystem. Each file is split into
fixed-size chunks. A master server holds the namespace and the location of every
chunk. The chunks themselves are stored on chunk servers, and each chunk is kept
on several replicas.

This package provides the filesystem operations that a mount layer calls:

- lookups and attributes
- directories, links and symlinks
- extended attributes
- reads that fail over between replicas
- buffered writes that use a two-phase data-flow / control-flow protocol

It uses only the standard library.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Configuration

`chunkfs.config` holds the defaults and the dataclasses `ClientConfig`,
`MasterConfig` and `ChunkServerConfig`. Each of these has a `validate()` method,
which raises `ValueError` when a setting cannot be used.

The loaders build a configuration from a mapping of environment variables.
When no mapping is given, they read `os.environ`:

```python
from chunkfs.config import load_client_config

config = load_client_config({"DFS_MASTER_ADDR": "localhost:9000", "DFS_RPC_TIMEOUT": "2s"})
config.validate()
print(config.master_addr, config.rpc_timeout)
```

The client reads these variables:

| Variable | Default |
| --- | --- |
| `DFS_MASTER_ADDR` | `localhost:8000` |
| `DFS_MOUNT_POINT` | `./mnt` |
| `DFS_CHUNK_SIZE` | 64 MiB |
| `DFS_BLOCK_SIZE` | 64 KiB |
| `DFS_MAX_NAME_LENGTH` | 255 |
| `DFS_CACHE_SIZE` | 20 MiB, the per-handle write buffer |
| `DFS_METADATA_CACHE_TTL` | `5m` |
| `DFS_CHUNK_LOC_CACHE_TTL` | `10m` |
| `DFS_MAX_METADATA_ENTRIES` | 10000 |
| `DFS_RPC_TIMEOUT` | `5s` |
| `ATTR_CACHE_TIMEOUT` | `5m` |
| `DIR_CACHE_TIMEOUT` | `5m` |
| `DFS_DEBUG` | true |

Durations are written as a number followed by a unit suffix, such as `250ms`,
`5s` or `1h30m`. `parse_duration` turns them into a `timedelta`. If a value
cannot be parsed, the default is used in its place.

`load_master_config` and `load_chunk_server_config` read the settings for the
two server roles.

## Using the filesystem

The filesystem reaches the cluster through two interfaces, both declared in
`chunkfs.base` as `typing.Protocol` classes:

- `MasterClient`: namespace, attribute, chunk-allocation, statx, extended-attribute and lease calls.
- `ChunkServerClient`: `health_check`, `read_chunk`, `buffer_data`, `serialize_writes` and `close`.

When one of these calls fails, it should raise `RpcError(StatusCode.…, message)`.
Supply implementations for your transport. Then build a `Filesystem` from
`chunkfs.filesystem` with:

- a `ClientConfig`
- a master client
- a `connect` function that opens a chunk server client for an address

Given a `connect` function, the `Filesystem` sets up a
`ChunkServerConnectionPool`.

```python
import os
from chunkfs.config import load_client_config
from chunkfs.filesystem import Filesystem

with Filesystem(load_client_config(), master, connect=connect) as fs:
    entry, fh = fs.create(parent=1, name="notes.txt", mode=0o644, flags=os.O_RDWR, uid=1000, gid=1000)
    fs.write(fh, 0, b"hello", uid=1000, gid=1000)
    fs.read(fh, 0, 5)              # served from the pending write buffer
    fs.release(fh, entry.node_id)  # flushes the buffer to the chunk servers
```

`Filesystem` combines these operation groups:

- `AttrOps`: `lookup`, `forget`, `getattr`, `setattr`, `access`, `statfs`, `statx`.
- `NamespaceOps`: `mkdir`, `rmdir`, `opendir`, `readdir`, `readdirplus`, `releasedir`, `mknod`, `unlink`, `rename`, `symlink` and `readlink`. `readlink` reads the `symlink_target` extended attribute.
- `FileOps`: `create`, `open`, `release`, `flush`, `fsync`, `fallocate`, `lseek` and `copy_file_range`. It builds on `ReadOps.read` and `WriteOps.write`.
- `XattrOps`: `get_xattr`, `list_xattr`, `set_xattr`, `remove_xattr`. For the two get/list calls, a `size` of 0 returns only the length that is needed.

It also provides the lifecycle methods `start`, `close`, `get_state`,
`is_running` and `on_unmount`, plus `set_debug`.

A background thread drops write buffers that have been idle for more than five
seconds. `close()` stops that thread. `close()` also closes the connection pool,
and it closes the master client if that client has a `close` method.

### Errors

Operations that fail raise `FsError`. It is an `OSError` whose `errno` is set to
the matching value. `status_to_errno` maps `RpcError` status codes to errno values:

| Status code | errno |
| --- | --- |
| `NOT_FOUND` | `ENOENT`, or `ENODATA` for "attribute not found" |
| `ALREADY_EXISTS` | `EEXIST` |
| `UNAVAILABLE` | `EAGAIN` |
| `RESOURCE_EXHAUSTED` | `ENOSPC` |
| `FAILED_PRECONDITION` | `ESTALE` |
| anything else | `EIO` |

## Building blocks

You can also use these parts on their own:

- `chunkfs.cache.Cache`: a TTL cache of inodes and chunk locations. It is bounded by `max_entries`, and evicts the entry that is nearest to expiring first. It keeps hit, miss and eviction counters in `CacheStats`.
- `chunkfs.cache.ChunkLeaseCache`: a lease cache that treats a lease as expired ten seconds before its actual expiry.
- `chunkfs.lease_client.LeaseClient`: requests, renews and revokes chunk leases through a master client. A background thread started by `start()` renews leases when they come within 30 seconds of expiry, and drops leases that have already expired.
- `chunkfs.pool.ChunkServerConnectionPool`: reuses idle, healthy connections for each address. `perform_maintenance` closes connections that are too old, idle for too long or surplus, and health-checks the remaining ones.
- `chunkfs.handles`: `ChunkHandle`, `new_chunk_handle` and `parse_chunk_handle`. These are UUID-based chunk identifiers, and the parser accepts the canonical, braced, URN and plain-hex forms.
- `chunkfs.messages`: the dataclasses that are exchanged with the master and the chunk servers, such as `Inode`, `FileAttributes` and `ChunkLocation`.

## What this package does not do

This package is only the client logic.

- It contains no network transport. `MasterClient` and `ChunkServerClient` are interfaces that you implement.
- It does not mount anything with the kernel, and it provides no command-line program.
- It contains no master server and no chunk server. There is therefore no storage of its own and no server-side lease management: it only holds settings for those roles (`MasterConfig`, `ChunkServerConfig`).
- Hard links (`link`), directory sync (`fsyncdir`) and `ioctl` are not supported. They raise `FsError` with `ENOTSUP` or `ENOSYS`.