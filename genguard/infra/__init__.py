"""Infra layer utilities (key-value storage)."""

from .storage import KeyValueStore, MemoryKeyValueStore, SQLiteKeyValueStore, SQLiteManager

__all__ = ["KeyValueStore", "MemoryKeyValueStore", "SQLiteKeyValueStore", "SQLiteManager"]
