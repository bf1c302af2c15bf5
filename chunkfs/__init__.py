"""Client logic for a chunk-based distributed filesystem: configuration, caches,
leases, a chunk-server connection pool and the filesystem operations."""

__version__ = "0.1.0"