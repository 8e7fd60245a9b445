from __future__ import annotations

from genguard.infra import KeyValueStore, MemoryKeyValueStore, SQLiteKeyValueStore, SQLiteManager


def test_sqlite_manager_initialises_schema(tmp_path) -> None:
    manager = SQLiteManager()
    conn = manager.connect(tmp_path / "kv.db")
    columns = conn.execute("PRAGMA table_info(kv_store)").fetchall()
    assert {"key", "value", "updated_at"}.issubset({row["name"] for row in columns})
    manager.close_all()


def test_sqlite_store_roundtrip(tmp_path) -> None:
    manager = SQLiteManager()
    store = SQLiteKeyValueStore(manager, tmp_path / "kv.db")
    assert store.get("missing") is None
    store.set("results:a", b"one")
    store.set("results:a", b"two")
    store.set("checkpoint:x", b"three")
    assert store.get("results:a") == b"two"
    assert store.keys("results:") == ["results:a"]
    store.delete("results:a")
    store.delete("results:a")
    assert store.get("results:a") is None
    manager.close_all()


def test_sqlite_store_persists_across_connections(tmp_path) -> None:
    path = tmp_path / "kv.db"
    first = SQLiteManager()
    SQLiteKeyValueStore(first, path).set("k", b"v")
    first.close_all()

    second = SQLiteManager()
    assert SQLiteKeyValueStore(second, path).get("k") == b"v"
    second.close_all()


def test_sqlite_store_reset(tmp_path) -> None:
    manager = SQLiteManager()
    store = SQLiteKeyValueStore(manager, tmp_path / "kv.db")
    store.set("k", b"v")
    store.reset()
    assert store.get("k") is None
    manager.close_all()


def test_memory_store_matches_protocol() -> None:
    store = MemoryKeyValueStore()
    assert isinstance(store, KeyValueStore)
    store.set("a", b"1")
    assert store.get("a") == b"1"
    assert store.keys() == ["a"]
    store.delete("a")
    store.delete("a")
    assert len(store) == 0
