"""Striped lock registry: one key always maps to the same lock."""

from __future__ import annotations

import zlib
from contextlib import contextmanager
from threading import Lock
from typing import Iterator


class KeyedLock:
    """Serialise work per key with a bounded pool of locks.

    Keys are spread over ``stripes`` locks by CRC32, so memory stays bounded
    however many identifiers pass through. Callers must never hold two keys
    at once.
    """

    def __init__(self, stripes: int = 64) -> None:
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self._locks = [Lock() for _ in range(stripes)]

    def get(self, key: str) -> Lock:
        index = zlib.crc32(key.encode("utf-8")) % len(self._locks)
        return self._locks[index]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self.get(key):
            yield

    def __len__(self) -> int:
        return len(self._locks)


__all__ = ["KeyedLock"]
