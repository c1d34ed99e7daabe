"""Tests for database operations."""

import pytest
from locator.database import Database, MemoryStorage


@pytest.fixture
def db(tmp_path):
    """Create temporary database."""
    db_path = tmp_path / "test.db"
    return Database(db_path=db_path)


def test_read_missing_key(db):
    """Unknown keys read as None."""
    assert db.read("nothing") is None


def test_write_and_read(db):
    """Test value storage."""
    db.write("location_cache", '{"entries": []}')
    assert db.read("location_cache") == '{"entries": []}'


def test_write_overwrites(db):
    """Writing an existing key replaces its value."""
    db.write("k", "one")
    db.write("k", "two")

    assert db.read("k") == "two"
    assert db.keys() == ["k"]


def test_remove(db):
    """Test key removal."""
    db.write("k", "value")
    db.remove("k")
    db.remove("never-written")

    assert db.read("k") is None


def test_values_survive_reopen(tmp_path):
    """Data is durable across Database instances."""
    db_path = tmp_path / "durable.db"
    Database(db_path=db_path).write("k", "compressed:eJzLSM3JyQcABiwCFQ==")

    reopened = Database(db_path=db_path)
    assert reopened.read("k") == "compressed:eJzLSM3JyQcABiwCFQ=="


def test_keys_sorted(db):
    """Test key listing."""
    db.write("b", "2")
    db.write("a", "1")

    assert db.keys() == ["a", "b"]


def test_memory_storage_interface():
    """MemoryStorage behaves like Database."""
    storage = MemoryStorage()
    assert storage.read("k") is None

    storage.write("k", "v1")
    storage.write("k", "v2")
    storage.write("a", "x")
    assert storage.read("k") == "v2"
    assert storage.keys() == ["a", "k"]

    storage.remove("k")
    storage.remove("k")
    assert storage.read("k") is None
