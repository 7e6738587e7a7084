# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Typer CLI application root."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Annotated

import typer

from tiace.cli.commands import feeds as feeds_cmd
from tiace.cli.common import (
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_PARTIAL,
    TenantOption,
    exit_code_for_jobs,
    run_with_engine,
    tenant_or_exit,
)
from tiace.core.constants import Severity
from tiace.engine import Engine
from tiace.models.feed import SyncJob
from tiace.models.normalize import canonical_kind
from tiace.query.service import SearchRequest

app = typer.Typer(
    name="tiace",
    help="Threat intelligence aggregation and correlation engine",
    no_args_is_help=True,
)

app.add_typer(feeds_cmd.app, name="feeds", help="Inspect and control configured feeds")


# ---------------------------------------------------------------------------
# Shared filter options
# ---------------------------------------------------------------------------

KindOption = Annotated[
    list[str] | None, typer.Option("--kind", "-k", help="Indicator kind (repeatable)")
]
SeverityOption = Annotated[
    list[Severity] | None, typer.Option("--severity", "-s", help="Severity (repeatable)")
]
TagOption = Annotated[list[str] | None, typer.Option("--tag", help="Tag (repeatable)")]
FeedOption = Annotated[list[str] | None, typer.Option("--feed", help="Source feed (repeatable)")]
MinConfidenceOption = Annotated[
    float, typer.Option("--min-confidence", min=0.0, max=1.0, help="Minimum confidence")
]
LimitOption = Annotated[int | None, typer.Option("--limit", "-n", min=1, help="Maximum results")]
JsonOption = Annotated[bool, typer.Option("--json", help="Print JSON instead of a table")]


def _request(
    text: str,
    kinds: list[str] | None,
    severities: list[Severity] | None,
    tags: list[str] | None,
    feeds: list[str] | None,
    min_confidence: float,
    limit: int | None,
) -> SearchRequest:
    return SearchRequest(
        text=text,
        kinds={canonical_kind(k) for k in kinds or []},
        severities=set(severities or []),
        min_confidence=min_confidence,
        tags=set(tags or []),
        feeds=set(feeds or []),
        limit=limit,
    )


def _print_json(data: object) -> None:
    import json

    sys.stdout.write(json.dumps(data, indent=2, sort_keys=True, default=str) + "\n")


def _report_jobs(jobs: list[SyncJob], as_json: bool) -> None:
    if as_json:
        _print_json([job.summary() for job in jobs])
        return
    from tiace.cli.formatters.console import print_jobs

    print_jobs(jobs)


def _sync_exit_code(job: SyncJob) -> int:
    code = exit_code_for_jobs([job])
    if code == EXIT_OK and job.items_conflicted:
        return EXIT_PARTIAL
    return code


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------

@app.command()
def sync(
    feed_id: Annotated[str, typer.Argument(help="Feed to synchronize now")],
    tenant: TenantOption = None,
    as_json: JsonOption = False,
) -> None:
    """Synchronize one feed and wait for the outcome.

    Exits 0 on success, 1 when some items errored or conflicted and
    2 when the job failed or was cancelled.
    """
    ctx = tenant_or_exit(tenant)

    async def _work(engine: Engine) -> SyncJob:
        return await engine.scheduler.run_now(ctx, feed_id)

    job = run_with_engine(_work)
    _report_jobs([job], as_json)
    raise typer.Exit(_sync_exit_code(job))


@app.command(name="sync-all")
def sync_all(
    tenant: TenantOption = None,
    timeout: Annotated[
        float | None,
        typer.Option("--timeout", min=0.0, help="Cancel outstanding jobs after this many seconds"),
    ] = None,
    as_json: JsonOption = False,
) -> None:
    """Synchronize every enabled feed of the tenant.

    Ctrl-C (or ``--timeout``) cancels the jobs still in flight; items
    already committed by finished jobs are kept.
    """
    ctx = tenant_or_exit(tenant)

    async def _work(engine: Engine) -> list[SyncJob]:
        task = asyncio.ensure_future(engine.scheduler.sync_all(ctx))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            await engine.scheduler.cancel(ctx)
            raise
        if not done:
            typer.echo(f"Timed out after {timeout}s; cancelling outstanding jobs", err=True)
            await engine.scheduler.cancel(ctx)
        return await task

    try:
        jobs = run_with_engine(_work)
    except KeyboardInterrupt:
        typer.echo("Interrupted; outstanding jobs were cancelled", err=True)
        raise typer.Exit(EXIT_FAILURE) from None

    if not jobs:
        typer.echo("No enabled feeds to synchronize.")
        raise typer.Exit(EXIT_OK)
    _report_jobs(jobs, as_json)
    code = exit_code_for_jobs(jobs)
    if code == EXIT_OK and any(j.items_conflicted for j in jobs):
        code = EXIT_PARTIAL
    raise typer.Exit(code)


@app.command(name="import")
def import_file(
    path: Annotated[Path, typer.Argument(help="Local file or directory to ingest", exists=True)],
    fmt: Annotated[
        str | None,
        typer.Option("--format", "-f", help="Record format (inferred from the file when omitted)"),
    ] = None,
    feed_id: Annotated[
        str | None, typer.Option("--feed-id", help="Feed id recorded as the source")
    ] = None,
    reliability: Annotated[
        float, typer.Option("--reliability", min=0.0, max=1.0, help="Source reliability")
    ] = 0.5,
    tenant: TenantOption = None,
    as_json: JsonOption = False,
) -> None:
    """Ingest a local file through the same pipeline as a feed sync."""
    ctx = tenant_or_exit(tenant)

    async def _work(engine: Engine) -> SyncJob:
        return await engine.import_file(ctx, path, fmt=fmt, feed_id=feed_id, reliability=reliability)

    job = run_with_engine(_work)
    _report_jobs([job], as_json)
    raise typer.Exit(_sync_exit_code(job))


# ---------------------------------------------------------------------------
# Query
# ---------------------------------------------------------------------------

@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Substring to search for")] = "",
    kind: KindOption = None,
    severity: SeverityOption = None,
    tag: TagOption = None,
    feed: FeedOption = None,
    min_confidence: MinConfidenceOption = 0.0,
    limit: LimitOption = None,
    tenant: TenantOption = None,
    as_json: JsonOption = False,
) -> None:
    """Search the tenant's indicators, ranked by score then recency."""
    ctx = tenant_or_exit(tenant)
    request = _request(query, kind, severity, tag, feed, min_confidence, limit)

    async def _work(engine: Engine):
        return await engine.query.search(ctx, request)

    indicators = run_with_engine(_work)
    if as_json:
        _print_json([i.to_canonical() for i in indicators])
        return
    from tiace.cli.formatters.console import print_indicators

    print_indicators(indicators, title="Search results")


@app.command()
def hunt(
    query: Annotated[str, typer.Argument(help="Indicator value, substring or actor name")],
    depth: Annotated[
        int | None, typer.Option("--depth", "-d", min=0, help="Traversal depth")
    ] = None,
    kind: KindOption = None,
    severity: SeverityOption = None,
    limit: LimitOption = None,
    tenant: TenantOption = None,
    as_json: JsonOption = False,
) -> None:
    """Search, then follow correlation edges to related entities."""
    ctx = tenant_or_exit(tenant)
    request = _request(query, kind, severity, None, None, 0.0, limit)

    async def _work(engine: Engine):
        return await engine.query.hunt(ctx, request, depth=depth)

    result = run_with_engine(_work)
    if as_json:
        _print_json(result.to_dict())
        return
    from tiace.cli.formatters.console import print_hunt

    print_hunt(result)


@app.command()
def changes(
    since: Annotated[int, typer.Option("--since", min=0, help="Watermark of the last page seen")] = 0,
    limit: Annotated[int, typer.Option("--limit", "-n", min=1, help="Maximum events")] = 1000,
    tenant: TenantOption = None,
    as_json: JsonOption = False,
) -> None:
    """List committed changes after a watermark.

    Changes are held in process memory, so this is mostly useful against
    a long-running engine; a fresh CLI process starts with an empty feed.
    """
    from tiace.query.service import describe_change

    ctx = tenant_or_exit(tenant)

    async def _work(engine: Engine):
        return engine.query.changes(ctx, since=since, limit=limit)

    page = run_with_engine(_work)
    if as_json:
        _print_json(page.to_dict())
        return
    for event in page.events:
        typer.echo(describe_change(event))
    if page.lagged:
        typer.echo("Events were pruned after this watermark; resynchronize with a search", err=True)
    typer.echo(f"watermark: {page.watermark}")


@app.command()
def aggregates(
    top: Annotated[int, typer.Option("--top", min=1, help="Entries in each top list")] = 10,
    history_limit: Annotated[int, typer.Option("--history", min=0, help="Recent sync jobs")] = 20,
    tenant: TenantOption = None,
    as_json: JsonOption = False,
) -> None:
    """Summary counts for the tenant's dashboard."""
    ctx = tenant_or_exit(tenant)

    async def _work(engine: Engine):
        return await engine.query.aggregates(ctx, top_n=top, history_limit=history_limit)

    result = run_with_engine(_work)
    if as_json:
        _print_json(result.to_dict())
        return
    from tiace.cli.formatters.console import print_aggregates

    print_aggregates(result)


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

@app.command()
def export(
    fmt: Annotated[str, typer.Argument(help="stix | misp | json | csv | yara")],
    output: Annotated[
        Path | None, typer.Option("--output", "-o", help="Output file (default: stdout)")
    ] = None,
    query: Annotated[str, typer.Option("--query", "-q", help="Substring filter")] = "",
    kind: KindOption = None,
    severity: SeverityOption = None,
    tag: TagOption = None,
    feed: FeedOption = None,
    min_confidence: MinConfidenceOption = 0.0,
    tenant: TenantOption = None,
) -> None:
    """Export the tenant's indicators in a sharing format."""
    ctx = tenant_or_exit(tenant)
    criteria = _request(query, kind, severity, tag, feed, min_confidence, None).criteria()

    async def _work(engine: Engine):
        return await engine.exporter.export(ctx, fmt, criteria)

    result = run_with_engine(_work)
    if output:
        output.write_text(result.content, encoding="utf-8")
        typer.echo(f"Exported {result.count} indicators to {output}")
    else:
        sys.stdout.write(result.content)


# ---------------------------------------------------------------------------
# Server and version
# ---------------------------------------------------------------------------

@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port"),
    no_scheduler: Annotated[
        bool, typer.Option("--no-scheduler", help="Disable periodic feed synchronization")
    ] = False,
) -> None:
    """Start the tiace API server."""
    import uvicorn

    if no_scheduler:
        # Pass flag via environment; the app factory reads it
        import os
        os.environ["TIACE_NO_SCHEDULER"] = "1"

    uvicorn.run(
        "tiace.api.app:_create_app_from_env",
        host=host,
        port=port,
        factory=True,
    )


@app.command()
def version() -> None:
    """Show the tiace version."""
    from tiace import __version__

    typer.echo(f"tiace v{__version__}")
