# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""CLI commands for feed status and operator controls."""

from __future__ import annotations

from typing import Annotated

import typer

from tiace.cli.common import TenantOption, run_with_engine, tenant_or_exit
from tiace.engine import Engine

app = typer.Typer(help="Inspect and control configured feeds")


@app.command(name="list")
def list_feeds(tenant: TenantOption = None) -> None:
    """Show every feed of the tenant with its scheduler state."""
    from tiace.cli.formatters.console import print_feeds

    ctx = tenant_or_exit(tenant)

    async def _work(engine: Engine) -> list[dict[str, object]]:
        return engine.scheduler.status(ctx)

    print_feeds(run_with_engine(_work))


@app.command()
def enable(
    feed_id: Annotated[str, typer.Argument(help="Feed to re-enable")],
    tenant: TenantOption = None,
) -> None:
    """Re-enable a disabled or quarantined feed."""
    ctx = tenant_or_exit(tenant)

    async def _work(engine: Engine) -> str:
        runtime = await engine.scheduler.enable(ctx, feed_id)
        return runtime.state.value

    state = run_with_engine(_work)
    typer.echo(f"Feed {feed_id} enabled (state: {state})")


@app.command()
def disable(
    feed_id: Annotated[str, typer.Argument(help="Feed to disable")],
    tenant: TenantOption = None,
) -> None:
    """Disable a feed; it is skipped by the scheduler until re-enabled."""
    ctx = tenant_or_exit(tenant)

    async def _work(engine: Engine) -> None:
        await engine.scheduler.disable(ctx, feed_id)

    run_with_engine(_work)
    typer.echo(f"Feed {feed_id} disabled")


@app.command()
def history(
    feed_id: Annotated[
        str | None, typer.Argument(help="Feed to show (all feeds when omitted)")
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum jobs to show")] = 20,
    tenant: TenantOption = None,
) -> None:
    """Show recent sync jobs, newest first."""
    from tiace.cli.formatters.console import print_jobs

    ctx = tenant_or_exit(tenant)

    async def _work(engine: Engine):
        return await engine.scheduler.history(ctx, feed_id=feed_id, limit=limit)

    jobs = run_with_engine(_work)
    if not jobs:
        typer.echo("No sync jobs recorded.")
        return
    print_jobs(jobs, title="Sync History")
