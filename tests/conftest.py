"""Shared fixtures: a directory-backed server and stores pointed at it."""
import pytest

from raftsync.config.settings import RaftConfig
from raftsync.raft_store.store import RaftStore


@pytest.fixture
def server_root(tmp_path):
    """Directory acting as the central version control server."""
    root = tmp_path / "server"
    root.mkdir()
    return root


@pytest.fixture
def make_config(tmp_path, server_root):
    """Factory for raft settings pointing at the test server."""
    def _make(raft_name: str = "demo", **overrides) -> RaftConfig:
        values = {
            "base_url": server_root.as_uri(),
            "username": "alice",
            "password": "",
            "service_temp_path": str(tmp_path / "temp"),
        }
        values.update(overrides)
        return RaftConfig(raft_name=raft_name, **values)

    return _make


@pytest.fixture
def make_store(make_config):
    """Factory for raft stores; all are closed at teardown."""
    stores = []

    def _make(raft_name: str = "demo", **overrides) -> RaftStore:
        store = RaftStore(make_config(raft_name, **overrides))
        stores.append(store)
        return store

    yield _make

    for store in stores:
        store.close()


@pytest.fixture
def store(make_store):
    return make_store()
