from datetime import timedelta

import pytest

from chunkfs import config
from chunkfs.config import (
    ChunkServerConfig,
    ClientConfig,
    MasterConfig,
    load_chunk_server_config,
    load_client_config,
    load_master_config,
    parse_duration,
)


def test_parse_duration_compound():
    assert parse_duration("1h30m") == timedelta(hours=1, minutes=30)


def test_parse_duration_equivalent_forms():
    assert parse_duration("90m") == parse_duration("1h30m")
    assert parse_duration("1.5s") == parse_duration("1500ms")
    assert parse_duration("1000us") == parse_duration("1ms")
    assert parse_duration("\u00b5s".join(["1000", ""])) == parse_duration("1ms")


def test_parse_duration_sign_and_zero():
    assert parse_duration("0") == timedelta(0)
    assert parse_duration("-0") == timedelta(0)
    assert parse_duration("-2m") == -parse_duration("2m")
    assert parse_duration("+2m") == parse_duration("2m")


@pytest.mark.parametrize("text", ["", "5", "abc", "1x", "h", "1h-2m", "-", ".s"])
def test_parse_duration_invalid(text):
    with pytest.raises(ValueError):
        parse_duration(text)


def test_client_defaults():
    cfg = load_client_config({})
    assert cfg == ClientConfig()
    assert cfg.master_addr == config.DEFAULT_MASTER_ADDR
    assert cfg.chunk_size == config.DEFAULT_CHUNK_SIZE
    assert cfg.block_size == config.DEFAULT_BLOCK_SIZE
    cfg.validate()


def test_client_env_overrides():
    env = {
        "DFS_MASTER_ADDR": "example.com:9000",
        "DFS_DEBUG": "false",
        "DFS_RPC_TIMEOUT": "2s",
        "DFS_BLOCK_SIZE": "4096",
        "ATTR_CACHE_TIMEOUT": "1m",
    }
    cfg = load_client_config(env)
    assert cfg.master_addr == "example.com:9000"
    assert cfg.debug is False
    assert cfg.rpc_timeout == parse_duration("2s")
    assert cfg.block_size == 4096
    assert cfg.attr_cache_timeout == parse_duration("1m")


def test_client_bad_values_fall_back():
    env = {
        "DFS_CHUNK_SIZE": "not-a-number",
        "DFS_DEBUG": "maybe",
        "DFS_RPC_TIMEOUT": "soon",
        "DFS_MASTER_ADDR": "",
    }
    cfg = load_client_config(env)
    assert cfg.chunk_size == config.DEFAULT_CHUNK_SIZE
    assert cfg.debug == config.DEFAULT_DEBUG
    assert cfg.rpc_timeout == config.DEFAULT_RPC_TIMEOUT
    assert cfg.master_addr == config.DEFAULT_MASTER_ADDR


@pytest.mark.parametrize(
    "changes, message",
    [
        ({"master_addr": ""}, "master address"),
        ({"mount_point": ""}, "mount point"),
        ({"chunk_size": 0}, "chunk size"),
        ({"block_size": 0}, "block size"),
    ],
)
def test_client_validate_errors(changes, message):
    cfg = ClientConfig(**changes)
    with pytest.raises(ValueError, match=message):
        cfg.validate()


def test_master_defaults_and_env():
    cfg = load_master_config({"DFS_MASTER_PORT": "9100", "DFS_ENABLE_LOG_RECOVERY": "0"})
    assert cfg.port == "9100"
    assert cfg.enable_log_recovery is False
    assert cfg.log_retention_period == config.DEFAULT_LOG_RETENTION_PERIOD
    assert cfg.replication_factor == config.DEFAULT_REPLICATION_FACTOR
    cfg.validate()


@pytest.mark.parametrize(
    "changes, message",
    [
        ({"port": ""}, "port"),
        ({"replication_factor": 0}, "replication factor"),
        ({"chunk_size": 0}, "chunk size"),
        ({"heartbeat_interval": timedelta(0)}, "heartbeat interval"),
        ({"heartbeat_timeout": config.DEFAULT_HEARTBEAT_INTERVAL}, "heartbeat timeout"),
        ({"gc_interval": timedelta(0)}, "GC interval"),
        ({"orphaned_chunk_grace_period": timedelta(0)}, "grace period"),
    ],
)
def test_master_validate_errors(changes, message):
    with pytest.raises(ValueError, match=message):
        MasterConfig(**changes).validate()


def test_chunk_server_env():
    cfg = load_chunk_server_config({"DFS_CHUNKSERVER_PORT": "8082", "DFS_STORAGE_ROOT": "data"})
    assert cfg.grpc_port == 8082
    assert cfg.storage_root == "data"
    assert cfg.chunk_size == config.DEFAULT_CHUNK_SERVER_CHUNK_SIZE
    other = load_chunk_server_config({})
    assert other.id != cfg.id
    cfg.validate()


@pytest.mark.parametrize(
    "changes, message",
    [
        ({"grpc_port": 0}, "grpc port"),
        ({"grpc_port": 65536}, "grpc port"),
        ({"master_addr": ""}, "master address"),
        ({"storage_root": ""}, "storage root"),
        ({"chunk_size": 0}, "chunk size"),
    ],
)
def test_chunk_server_validate_errors(changes, message):
    with pytest.raises(ValueError, match=message):
        ChunkServerConfig(**changes).validate()