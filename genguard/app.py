"""Typer CLI entrypoint for genguard."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from .config import ConfigRepository, GlobalConfig
from .engine import CheckpointStore, ContentItem, DeduplicationEngine, HttpGenerationClient, ResultCache, ResultCacheEntry
from .infra import KeyValueStore, SQLiteKeyValueStore, SQLiteManager
from .logging_conf import configure_logging
from .orchestrator import Job, JobRunner

app = typer.Typer(
    help="genguard command line tools",
    no_args_is_help=True,
    rich_markup_mode=None,
)
cache_app = typer.Typer(name="cache", help="Inspect cached job results", no_args_is_help=True)
checkpoint_app = typer.Typer(
    name="checkpoint", help="Inspect job checkpoints", no_args_is_help=True
)

console = Console()


@dataclass
class AppState:
    repository: ConfigRepository
    config: GlobalConfig
    store: KeyValueStore
    checkpoints: CheckpointStore
    results: ResultCache


def build_state(verbose: bool) -> AppState:
    repository = ConfigRepository()
    config = repository.load_global_config()
    configure_logging(verbose=verbose)
    store = SQLiteKeyValueStore(SQLiteManager(), repository.store_path())
    return AppState(
        repository=repository,
        config=config,
        store=store,
        checkpoints=CheckpointStore.from_config(store, config.checkpoint),
        results=ResultCache.from_config(store, config.result_cache),
    )


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


def _format_ts(value: float | None) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat(timespec="seconds")


def _render_cache_table(entries: Sequence[ResultCacheEntry]) -> Table:
    table = Table(title=f"Cached results · {len(entries)}", box=box.SIMPLE_HEAD)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Parent", style="magenta")
    table.add_column("Status", style="green")
    table.add_column("Stored", style="yellow")
    table.add_column("Expires", style="dim")
    for entry in entries:
        status = entry.payload.get("status", "-") if isinstance(entry.payload, dict) else "-"
        table.add_row(
            entry.id,
            entry.parent_id or "-",
            str(status),
            _format_ts(entry.timestamp),
            _format_ts(entry.expires_at),
        )
    return table


def _load_items(raw: Any) -> list[ContentItem]:
    if not isinstance(raw, list):
        raise typer.BadParameter("expected a JSON list of items")
    return [ContentItem.from_mapping(item) for item in raw if isinstance(item, dict)]


app.add_typer(cache_app, name="cache")
app.add_typer(checkpoint_app, name="checkpoint")


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging"),
) -> None:
    ctx.obj = build_state(verbose)


@cache_app.command("list", help="List live cached results, newest first.")
def cache_list(
    ctx: typer.Context,
    parent: Optional[str] = typer.Option(None, "--parent", help="Only entries for this parent id."),
) -> None:
    state = _get_state(ctx)
    entries = state.results.list_for_parent(parent) if parent else state.results.list()
    if not entries:
        console.print("No cached results.", style="dim")
        return
    console.print(_render_cache_table(entries))


@cache_app.command("show", help="Print one cached result as JSON.")
def cache_show(ctx: typer.Context, entry_id: str = typer.Argument(...)) -> None:
    state = _get_state(ctx)
    entry = state.results.get(entry_id)
    if entry is None:
        console.print(f"No cached result for {entry_id}", style="red")
        raise typer.Exit(code=1)
    console.print_json(json.dumps(entry.to_mapping(), default=str))


@cache_app.command("clear", help="Remove every cached result.")
def cache_clear(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    removed = state.results.clear()
    console.print(f"Removed {removed} cached result(s).", style="green")


@checkpoint_app.command("show", help="Show what a job would resume with.")
def checkpoint_show(ctx: typer.Context, job_id: str = typer.Argument(...)) -> None:
    state = _get_state(ctx)
    resume = state.checkpoints.reconstruct(job_id)
    if resume is None:
        console.print(f"No checkpoint for {job_id}", style="yellow")
        raise typer.Exit(code=1)
    table = Table(title=f"Checkpoint · {job_id}", box=box.SIMPLE_HEAD, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", overflow="fold")
    table.add_row("phase0", "done" if resume.has_phase0 else "-")
    table.add_row("phase1", "done" if resume.has_phase1 else "-")
    table.add_row("batches", ", ".join(str(index) for index in resume.batch_indices) or "-")
    table.add_row("next batch", str(resume.next_batch()))
    table.add_row("scenes", str(len(resume.scenes)))
    table.add_row("registry", ", ".join(f"{k}={v}" for k, v in sorted(resume.registry.items())) or "-")
    table.add_row("updated", _format_ts(resume.updated_at))
    console.print(table)


@checkpoint_app.command("clear", help="Delete a job's checkpoint.")
def checkpoint_clear(ctx: typer.Context, job_id: str = typer.Argument(...)) -> None:
    state = _get_state(ctx)
    state.checkpoints.clear(job_id)
    console.print(f"Checkpoint cleared for {job_id}", style="green")


@app.command("limits", help="Show per-category rate limits for each tier.")
def limits(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    tiers = state.config.admission.tiers
    table = Table(title="Rate limits", box=box.SIMPLE_HEAD)
    table.add_column("Category", style="cyan", no_wrap=True)
    table.add_column("Free", style="yellow")
    table.add_column("Paid", style="green")
    for category in tiers.categories:
        free, paid = tiers.free[category], tiers.paid[category]
        table.add_row(
            category,
            f"{free.limit} / {free.window_seconds:g}s",
            f"{paid.limit} / {paid.window_seconds:g}s",
        )
    console.print(table)


@app.command("dedup", help="Report near-duplicates in a JSON file of content items.")
def dedup(
    ctx: typer.Context,
    path: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True),
    threshold: Optional[float] = typer.Option(None, "--threshold", min=0.0, max=1.0),
) -> None:
    """Accept either a list of items or ``{"existing": [...], "new": [...]}``."""

    state = _get_state(ctx)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise typer.BadParameter(f"{path} is not valid JSON") from exc
    if isinstance(payload, dict):
        existing = _load_items(payload.get("existing", []))
        new = _load_items(payload.get("new", []))
    else:
        existing, new = [], _load_items(payload)

    engine = DeduplicationEngine(state.config.deduplication)
    result = engine.deduplicate(existing, new, threshold)
    stats = result.stats()

    summary = Table(title="Deduplication", box=box.SIMPLE_HEAD, show_header=False)
    summary.add_column("Metric", style="cyan")
    summary.add_column("Value", style="green")
    summary.add_row("processed", str(stats.total_processed))
    summary.add_row("unique", str(stats.unique_count))
    summary.add_row("duplicates", str(stats.duplicate_count))
    summary.add_row("removal rate", f"{stats.removal_rate:.0%}")
    summary.add_row("avg similarity", f"{stats.average_similarity:.2f}")
    console.print(summary)

    if result.similarities:
        pairs = Table(title="Duplicates", box=box.SIMPLE_HEAD)
        pairs.add_column("#", style="cyan")
        pairs.add_column("Description", overflow="fold")
        pairs.add_column("Reason", style="yellow", no_wrap=True)
        for pair in result.similarities:
            pairs.add_row(str(pair.index_b), pair.item_b.description, pair.reason)
        console.print(pairs)


@app.command("run", help="Run (or resume) a generation job against the configured service.")
def run(
    ctx: typer.Context,
    job_id: str = typer.Argument(...),
    batches: int = typer.Option(1, "--batches", min=1, help="Number of phase2 batches."),
    mode: str = typer.Option("default", "--mode", help="Workflow mode sent to the service."),
    parent: Optional[str] = typer.Option(None, "--parent", help="Owner id used for rate limiting."),
) -> None:
    state = _get_state(ctx)
    base_url = state.config.generation_base_url
    if not base_url:
        console.print("generation_base_url is not configured.", style="red")
        raise typer.Exit(code=2)

    async def _execute():
        async with HttpGenerationClient(base_url, timeout=state.config.generation_timeout) as client:
            runner = JobRunner.from_config(state.config, client, state.store)
            job = Job(id=job_id, workflow_mode=mode, total_batches=batches, parent_id=parent)
            return await runner.run(job)

    outcome = asyncio.run(_execute())
    job = outcome.job
    if not outcome.admitted:
        console.print(f"Rate limited; retry in {outcome.retry_after:.0f}s.", style="yellow")
        raise typer.Exit(code=3)
    if not outcome.succeeded:
        hint = "retryable" if job.retryable else "fatal"
        console.print(f"Job {job.id} failed ({hint}): {job.last_error}", style="red")
        raise typer.Exit(code=1)
    console.print(
        f"Job {job.id} completed: {len(outcome.scenes)} scene(s) across {job.completed_batches} batch(es).",
        style="green",
    )


__all__ = ["AppState", "app", "build_state"]
