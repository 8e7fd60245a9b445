"""Shared fixtures for the genguard test-suite."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Iterable

import pytest

from genguard.config import ConfigLocator, ConfigRepository
from genguard.engine import ContentItem
from genguard.infra import MemoryKeyValueStore


class FakeClock:
    """Manually advanced replacement for ``time.time``."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def make_item() -> Callable[..., ContentItem]:
    def _builder(description: str = "A chef preparing vegetables", **overrides: Any) -> ContentItem:
        base: dict[str, Any] = {
            "description": description,
            "actor_ref": "",
            "prop_ref": "",
            "setting": "",
        }
        base.update(overrides)
        return ContentItem(**base)

    return _builder


@pytest.fixture
def temp_config_repository(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterable[ConfigRepository]:
    monkeypatch.setenv("GENGUARD_HOME", str(tmp_path))
    locator = ConfigLocator(project_root=tmp_path)
    repository = ConfigRepository(locator)
    yield repository
