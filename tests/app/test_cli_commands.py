from __future__ import annotations

import json
import warnings
from types import SimpleNamespace

import pytest
from typer.testing import CliRunner

from genguard.app import AppState, app
from genguard.config import GlobalConfig
from genguard.engine import CheckpointStore, ContentItem, ResultCache, ResultCacheEntry
from genguard.infra import MemoryKeyValueStore


@pytest.fixture
def state(monkeypatch, clock) -> AppState:
    store = MemoryKeyValueStore()
    config = GlobalConfig()
    app_state = AppState(
        repository=SimpleNamespace(),
        config=config,
        store=store,
        checkpoints=CheckpointStore(store, clock=clock),
        results=ResultCache(store, clock=clock),
    )
    monkeypatch.setattr("genguard.app.build_state", lambda verbose: app_state)
    return app_state


def test_cache_list_and_show(state, clock) -> None:
    state.results.put(
        ResultCacheEntry(id="job-1", parent_id="proj", payload={"status": "completed"}, timestamp=clock())
    )
    runner = CliRunner()

    result = runner.invoke(app, ["cache", "list"])
    assert result.exit_code == 0, result.stdout
    assert "job-1" in result.stdout
    assert "completed" in result.stdout

    shown = runner.invoke(app, ["cache", "show", "job-1"])
    assert shown.exit_code == 0, shown.stdout
    assert '"parent_id": "proj"' in shown.stdout

    missing = runner.invoke(app, ["cache", "show", "nope"])
    assert missing.exit_code == 1


def test_cache_clear(state, clock) -> None:
    state.results.put(ResultCacheEntry(id="a", payload={}, timestamp=clock()))
    result = CliRunner().invoke(app, ["cache", "clear"])
    assert result.exit_code == 0, result.stdout
    assert "Removed 1" in result.stdout
    assert state.results.list() == []


def test_checkpoint_show_and_clear(state) -> None:
    state.checkpoints.record_phase0("job-9", "profile", 0.8)
    state.checkpoints.record_phase2_batch("job-9", 0, [ContentItem(description="s")], {"hero": "Sam"})
    runner = CliRunner()

    shown = runner.invoke(app, ["checkpoint", "show", "job-9"])
    assert shown.exit_code == 0, shown.stdout
    assert "hero=Sam" in shown.stdout
    assert "next batch" in shown.stdout

    cleared = runner.invoke(app, ["checkpoint", "clear", "job-9"])
    assert cleared.exit_code == 0
    assert runner.invoke(app, ["checkpoint", "show", "job-9"]).exit_code == 1


def test_limits_table(state) -> None:
    result = CliRunner().invoke(app, ["limits"])
    assert result.exit_code == 0, result.stdout
    assert "generate" in result.stdout
    assert "20 / 60s" in result.stdout


def test_dedup_command_reports_duplicates(state, tmp_path) -> None:
    path = tmp_path / "items.json"
    path.write_text(
        json.dumps(
            {
                "existing": [{"description": "A chef preparing vegetables"}],
                "new": [
                    {"description": "A chef preparing vegetables"},
                    {"description": "Chef plating the finished dish"},
                ],
            }
        ),
        encoding="utf-8",
    )
    result = CliRunner().invoke(app, ["dedup", str(path)])
    assert result.exit_code == 0, result.stdout
    assert "duplicates" in result.stdout
    assert "existing item #0" in result.stdout


def test_run_requires_service_url(state) -> None:
    result = CliRunner().invoke(app, ["run", "job-1"])
    assert result.exit_code == 2
    assert "generation_base_url" in result.stdout


def test_verbose_flag_reaches_state_builder(monkeypatch, state) -> None:
    seen: list[bool] = []

    def build(verbose: bool) -> AppState:
        seen.append(verbose)
        return state

    monkeypatch.setattr("genguard.app.build_state", build)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        result = CliRunner().invoke(app, ["--verbose", "limits"])
    assert result.exit_code == 0, result.stdout
    assert seen == [True]
    assert not [item for item in caught if "is_flag" in str(item.message)]
