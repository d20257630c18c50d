"""Tests for the persisted pool state."""

import json

import pytest

from nas_pool.errors import ConfigurationError
from nas_pool.models import DiskRole, DiskSpec, PoolConfiguration
from nas_pool.state_store import StateStore


@pytest.fixture
def store(tmp_path):
    return StateStore(str(tmp_path / "state" / "data.json"))


def test_missing_file_yields_initial_state(store):
    assert store.load() == {"storageConfig": [], "poolConfigured": False}
    assert store.get_pool_configuration() == PoolConfiguration()


def test_round_trip_keeps_unrelated_keys(store, tmp_path):
    store.save({"themes": ["dark"], "poolConfigured": False})

    store.save_pool_configuration(PoolConfiguration(
        disks=[DiskSpec("sda", DiskRole.DATA), DiskSpec("sdb", DiskRole.PARITY)],
        configured=True,
    ))

    with open(store.path) as handle:
        data = json.load(handle)
    assert data["themes"] == ["dark"]
    assert data["poolConfigured"] is True
    assert data["storageConfig"] == [{"id": "sda", "role": "data"}, {"id": "sdb", "role": "parity"}]

    pool = store.get_pool_configuration()
    assert pool.configured
    assert [disk.role for disk in pool.disks] == [DiskRole.DATA, DiskRole.PARITY]


def test_corrupt_file_is_ignored(store, tmp_path):
    store.save({})
    with open(store.path, "w") as handle:
        handle.write("{truncated")
    assert store.load()["poolConfigured"] is False


def test_non_object_document_is_ignored(store):
    store.save(["not", "a", "dict"])
    assert store.load() == {"storageConfig": [], "poolConfigured": False}


def test_invalid_entries_are_skipped(store):
    store.save({"storageConfig": [{"id": "sda", "role": "data"}, {"id": "sdb", "role": "bogus"}]})
    assert [disk.id for disk in store.get_pool_configuration().disks] == ["sda"]


def test_write_failure_raises(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("")
    store = StateStore(str(blocker / "data.json"))
    with pytest.raises(ConfigurationError):
        store.save({})
