import errno
import time

import pytest

from chunkfs.base import FsError
from chunkfs.config import ServiceState, load_client_config
from chunkfs.filesystem import Filesystem
from chunkfs.messages import WriteBuffer


class FakeMaster:
    def __init__(self, fail_close=False):
        self.closes = 0
        self.fail_close = fail_close

    def close(self):
        self.closes += 1
        if self.fail_close:
            raise OSError("close failed")


class FakeServer:
    def __init__(self):
        self.closed = False

    def health_check(self):
        pass

    def close(self):
        self.closed = True


@pytest.fixture
def config():
    cfg = load_client_config({})
    cfg.debug = False
    return cfg


@pytest.fixture
def master():
    return FakeMaster()


@pytest.fixture
def fs(config, master):
    filesystem = Filesystem(config, master)
    yield filesystem
    filesystem.close()


def test_running_after_creation(fs):
    assert fs.get_state() == ServiceState.RUNNING
    assert fs.is_running()


def test_close_stops_and_closes_master(fs, master):
    fs.close()
    assert fs.get_state() == ServiceState.STOPPED
    assert not fs.is_running()
    fs.close()
    assert master.closes == 1


def test_close_error_propagates(config):
    master = FakeMaster(fail_close=True)
    filesystem = Filesystem(config, master)
    with pytest.raises(OSError):
        filesystem.close()
    assert filesystem.get_state() == ServiceState.STOPPING


def test_start_keeps_running(fs):
    fs.start()
    assert fs.get_state() == ServiceState.RUNNING


def test_invalid_config_rejected(config, master):
    config.chunk_size = 0
    with pytest.raises(ValueError):
        Filesystem(config, master)


def test_str_describes_mount(fs):
    assert str(fs) == "DFS Filesystem [mount=./mnt, debug=false, server=localhost:8000]"


def test_set_debug(fs):
    fs.set_debug(True)
    assert fs.config.debug is True
    fs.set_debug(False)
    assert fs.config.debug is False


def test_ioctl_not_supported(fs):
    with pytest.raises(FsError) as info:
        fs.ioctl(1, 0)
    assert info.value.errno == errno.ENOTSUP


def test_cleanup_removes_only_stale_buffers(fs):
    stale = WriteBuffer(
        file_handle=1,
        node_id=5,
        start_offset=0,
        data=bytearray(b"abc"),
        last_write=time.monotonic() - 60,
    )
    fresh = WriteBuffer(file_handle=2, node_id=5, start_offset=0, data=bytearray(b"xyz"))
    with fs.write_buffers_lock:
        fs.write_buffers[1] = stale
        fs.write_buffers[2] = fresh
    fs.cleanup_stale_write_buffers()
    assert 1 not in fs.write_buffers
    assert fs.write_buffers[2] is fresh


def test_on_unmount_closes(fs, master):
    fs.on_unmount()
    assert fs.get_state() == ServiceState.STOPPED
    assert master.closes == 1


def test_context_manager_closes(config, master):
    with Filesystem(config, master) as filesystem:
        assert filesystem.is_running()
    assert filesystem.get_state() == ServiceState.STOPPED


def test_pool_created_and_closed(config, master):
    servers = []

    def connect(address):
        server = FakeServer()
        servers.append(server)
        return server

    filesystem = Filesystem(config, master, connect=connect)
    conn = filesystem.connection_pool.get_connection("a:1")
    assert conn.client is servers[0]
    assert filesystem.connection_pool.config.max_idle_conns == 20
    filesystem.close()
    assert servers[0].closed
    assert filesystem.connection_pool.get_stats()["total_connections"] == 0