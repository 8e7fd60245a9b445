from __future__ import annotations

import threading

import pytest

from genguard.engine.locks import KeyedLock


def test_same_key_maps_to_same_lock() -> None:
    locks = KeyedLock(stripes=8)
    assert locks.get("job-1") is locks.get("job-1")
    assert len(locks) == 8


def test_hold_serialises_work_per_key() -> None:
    locks = KeyedLock()
    counter = {"value": 0}

    def worker() -> None:
        for _ in range(500):
            with locks.hold("shared"):
                current = counter["value"]
                counter["value"] = current + 1

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert counter["value"] == 2000


def test_stripes_must_be_positive() -> None:
    with pytest.raises(ValueError):
        KeyedLock(stripes=0)
