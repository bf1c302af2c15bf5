import errno
import stat
from concurrent import futures

import pytest

from chunkfs.base import (
    FilesystemBase,
    FsError,
    RpcError,
    StatusCode,
    has_write_permission,
    status_to_errno,
    statx_to_out,
)
from chunkfs.config import ClientConfig
from chunkfs.messages import (
    AllocatedChunk,
    ChunkLocation,
    FileAttributes,
    Inode,
    StatxAttributes,
    StatxTimestamp,
)


class FakeMaster:
    def __init__(self, inodes=None):
        self.inodes = dict(inodes or {})
        self.get_calls = 0
        self.allocate_calls = 0

    def get_attributes(self, ino):
        self.get_calls += 1
        if ino not in self.inodes:
            raise RpcError(StatusCode.NOT_FOUND, f"inode not found: {ino}")
        return self.inodes[ino]

    def allocate_chunk(self, file_ino, chunk_index):
        self.allocate_calls += 1
        return AllocatedChunk(
            chunk_handle=f"handle-{file_ino}-{chunk_index}",
            locations=[
                ChunkLocation(address="cs1:9000", version=4, is_primary=True),
                ChunkLocation(address="cs2:9000", version=4),
            ],
        )


def make_inode(ino, mode, size=0, uid=1000, gid=1000):
    return Inode(ino=ino, attributes=FileAttributes(mode=mode, size=size, uid=uid, gid=gid, nlink=1))


def make_fs(inodes=None, block_size=4096):
    master = FakeMaster(inodes)
    return FilesystemBase(ClientConfig(block_size=block_size), master), master


@pytest.mark.parametrize(
    "code, expected",
    [
        (StatusCode.NOT_FOUND, errno.ENOENT),
        (StatusCode.PERMISSION_DENIED, errno.EACCES),
        (StatusCode.INVALID_ARGUMENT, errno.EINVAL),
        (StatusCode.ALREADY_EXISTS, errno.EEXIST),
        (StatusCode.DEADLINE_EXCEEDED, errno.ETIMEDOUT),
        (StatusCode.CANCELLED, errno.ETIMEDOUT),
        (StatusCode.UNAVAILABLE, errno.EAGAIN),
        (StatusCode.RESOURCE_EXHAUSTED, errno.ENOSPC),
        (StatusCode.FAILED_PRECONDITION, errno.ESTALE),
        (StatusCode.INTERNAL, errno.EIO),
        (StatusCode.DATA_LOSS, errno.EIO),
        (StatusCode.UNIMPLEMENTED, errno.EIO),
        (StatusCode.OK, 0),
    ],
)
def test_status_to_errno_codes(code, expected):
    assert status_to_errno(RpcError(code, "x")) == expected


def test_status_to_errno_missing_attribute_is_enodata():
    assert status_to_errno(RpcError(StatusCode.NOT_FOUND, "attribute not found")) == errno.ENODATA


def test_status_to_errno_non_rpc_errors():
    assert status_to_errno(None) == 0
    assert status_to_errno(TimeoutError()) == errno.ETIMEDOUT
    assert status_to_errno(futures.CancelledError()) == errno.EINTR
    assert status_to_errno(ValueError("boom")) == errno.EIO
    assert status_to_errno(FsError(errno.EBADF)) == errno.EBADF


def test_has_write_permission_owner_group_other():
    inode = make_inode(2, stat.S_IFREG | 0o620, uid=10, gid=20)
    assert has_write_permission(inode, 10, 99) is True
    assert has_write_permission(inode, 11, 20) is True
    assert has_write_permission(inode, 11, 21) is False


def test_has_write_permission_owner_bit_wins():
    inode = make_inode(2, stat.S_IFREG | 0o466, uid=10, gid=20)
    assert has_write_permission(inode, 10, 20) is False


def test_statx_to_out_copies_fields():
    attrs = StatxAttributes(
        mode=stat.S_IFREG | 0o644,
        uid=5,
        gid=6,
        size=123,
        ino=77,
        nlink=1,
        mtime=StatxTimestamp(sec=1000, nsec=5),
    )
    out = statx_to_out(attrs, 0xFFF)
    assert out.mask == 0xFFF
    assert out.ino == 77
    assert out.mode == stat.S_IFREG | 0o644
    assert (out.uid, out.gid, out.size) == (5, 6, 123)
    assert (out.mtime.sec, out.mtime.nsec) == (1000, 5)
    assert (out.atime.sec, out.atime.nsec) == (0, 0)


def test_inode_to_attr_block_counts():
    fs, _ = make_fs(block_size=4096)
    empty = fs.inode_to_attr(make_inode(3, stat.S_IFREG | 0o644, size=0))
    partial = fs.inode_to_attr(make_inode(3, stat.S_IFREG | 0o644, size=4097))
    assert empty.blocks == 0
    assert partial.blocks == 2
    assert partial.blksize == 4096
    assert partial.ino == 3
    assert partial.size == 4097


def test_get_inode_with_cache_fetches_once():
    inode = make_inode(4, stat.S_IFREG | 0o644)
    fs, master = make_fs({4: inode})
    assert fs.get_inode_with_cache(4) is inode
    assert fs.get_inode_with_cache(4) is inode
    assert master.get_calls == 1


def test_get_inode_with_cache_raises_rpc_error():
    fs, _ = make_fs()
    with pytest.raises(RpcError) as info:
        fs.get_inode_with_cache(99)
    assert info.value.code is StatusCode.NOT_FOUND


def test_validate_directory_and_file():
    directory = make_inode(1, stat.S_IFDIR | 0o755)
    regular = make_inode(2, stat.S_IFREG | 0o644)
    fs, _ = make_fs({1: directory, 2: regular})
    assert fs.validate_directory(1) is directory
    assert fs.validate_file(2) is regular
    with pytest.raises(FsError) as not_dir:
        fs.validate_directory(2)
    assert not_dir.value.errno == errno.ENOTDIR
    with pytest.raises(FsError) as is_dir:
        fs.validate_file(1)
    assert is_dir.value.errno == errno.EISDIR


def test_validate_missing_inode_is_enoent():
    fs, _ = make_fs()
    with pytest.raises(FsError) as info:
        fs.validate_file(12)
    assert info.value.errno == errno.ENOENT


def test_allocate_chunk_with_lease_uses_cache_second_time():
    fs, master = make_fs()
    handle, locations = fs.allocate_chunk_with_lease(9, 0)
    assert handle == "handle-9-0"
    assert [loc.address for loc in locations] == ["cs1:9000", "cs2:9000"]

    cached_handle, cached_locations = fs.allocate_chunk_with_lease(9, 0)
    assert master.allocate_calls == 1
    assert cached_handle == handle
    assert [loc.address for loc in cached_locations] == ["cs1:9000", "cs2:9000"]
    assert [loc.is_primary for loc in cached_locations] == [True, False]
    assert {loc.version for loc in cached_locations} == {4}


def test_inode_from_fh_unknown_handle_is_ebadf():
    fs, _ = make_fs()
    with pytest.raises(FsError) as info:
        fs._inode_from_fh(123)
    assert info.value.errno == errno.EBADF