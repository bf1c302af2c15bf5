import errno

import pytest

from chunkfs.base import FsError, RpcError, StatusCode
from chunkfs.config import ClientConfig
from chunkfs.messages import Inode
from chunkfs.xattrs import XATTR_CREATE, XattrOps

INO = 5


class FakeMaster:
    def __init__(self):
        self.xattrs = {INO: {}}

    def _attrs(self, ino):
        if ino not in self.xattrs:
            raise RpcError(StatusCode.NOT_FOUND, f"inode not found: {ino}")
        return self.xattrs[ino]

    def get_xattr(self, ino, name):
        attrs = self._attrs(ino)
        if name not in attrs:
            raise RpcError(StatusCode.NOT_FOUND, "attribute not found")
        return attrs[name]

    def list_xattr(self, ino):
        return list(self._attrs(ino))

    def set_xattr(self, ino, name, value, flags):
        attrs = self._attrs(ino)
        if flags & XATTR_CREATE and name in attrs:
            raise RpcError(StatusCode.ALREADY_EXISTS, f"attribute already exists: {name}")
        attrs[name] = value

    def remove_xattr(self, ino, name):
        attrs = self._attrs(ino)
        if name not in attrs:
            raise RpcError(StatusCode.NOT_FOUND, "attribute not found")
        del attrs[name]


@pytest.fixture
def setup():
    master = FakeMaster()
    return XattrOps(ClientConfig(debug=False), master), master


def test_set_then_get_round_trip(setup):
    fs, _ = setup
    fs.set_xattr(INO, "user.note", b"hello")
    assert fs.get_xattr(INO, "user.note", 64) == b"hello"


def test_get_size_query_returns_length(setup):
    fs, _ = setup
    fs.set_xattr(INO, "user.note", b"hello")
    assert fs.get_xattr(INO, "user.note") == len(b"hello")


def test_get_into_small_buffer_raises_erange(setup):
    fs, _ = setup
    fs.set_xattr(INO, "user.note", b"hello")
    with pytest.raises(FsError) as info:
        fs.get_xattr(INO, "user.note", 2)
    assert info.value.errno == errno.ERANGE


def test_get_missing_attribute_raises_enodata(setup):
    fs, _ = setup
    with pytest.raises(FsError) as info:
        fs.get_xattr(INO, "user.missing", 10)
    assert info.value.errno == errno.ENODATA


def test_get_on_missing_inode_raises_enoent(setup):
    fs, _ = setup
    with pytest.raises(FsError) as info:
        fs.get_xattr(999, "user.note", 10)
    assert info.value.errno == errno.ENOENT


def test_list_returns_nul_terminated_names(setup):
    fs, _ = setup
    fs.set_xattr(INO, "user.a", b"1")
    fs.set_xattr(INO, "user.bb", b"2")
    expected = b"user.a\0user.bb\0"
    assert fs.list_xattr(INO) == len(expected)
    assert fs.list_xattr(INO, 100) == expected


def test_list_into_small_buffer_raises_erange(setup):
    fs, _ = setup
    fs.set_xattr(INO, "user.a", b"1")
    with pytest.raises(FsError) as info:
        fs.list_xattr(INO, 3)
    assert info.value.errno == errno.ERANGE


def test_list_on_missing_inode_raises_enoent(setup):
    fs, _ = setup
    with pytest.raises(FsError) as info:
        fs.list_xattr(999, 10)
    assert info.value.errno == errno.ENOENT


def test_set_empty_name_raises_einval(setup):
    fs, _ = setup
    with pytest.raises(FsError) as info:
        fs.set_xattr(INO, "", b"x")
    assert info.value.errno == errno.EINVAL


def test_set_create_on_existing_raises_eexist(setup):
    fs, _ = setup
    fs.set_xattr(INO, "user.a", b"1")
    with pytest.raises(FsError) as info:
        fs.set_xattr(INO, "user.a", b"2", XATTR_CREATE)
    assert info.value.errno == errno.EEXIST


def test_set_invalidates_cached_inode(setup):
    fs, _ = setup
    fs.cache.store_inode(Inode(ino=INO))
    fs.set_xattr(INO, "user.a", b"1")
    assert fs.cache.get_inode(INO) is None


def test_remove_deletes_attribute_and_invalidates(setup):
    fs, master = setup
    fs.set_xattr(INO, "user.a", b"1")
    fs.cache.store_inode(Inode(ino=INO))
    fs.remove_xattr(INO, "user.a")
    assert master.xattrs[INO] == {}
    assert fs.cache.get_inode(INO) is None


def test_remove_missing_attribute_raises_enodata(setup):
    fs, _ = setup
    with pytest.raises(FsError) as info:
        fs.remove_xattr(INO, "user.none")
    assert info.value.errno == errno.ENODATA


def test_remove_empty_name_raises_einval(setup):
    fs, _ = setup
    with pytest.raises(FsError) as info:
        fs.remove_xattr(INO, "")
    assert info.value.errno == errno.EINVAL