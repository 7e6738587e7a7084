# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Shared CLI plumbing: tenant option, engine lifetime and exit codes.

Exit codes: ``0`` success, ``1`` partial success, ``2`` failure,
``3`` permission denied (including a missing tenant).
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import Annotated, TypeVar

import typer
from rich.console import Console

from tiace.core.config import Settings, get_settings
from tiace.core.constants import SyncStatus
from tiace.core.exceptions import PermissionDeniedError, TiaceError
from tiace.core.logging import setup_logging
from tiace.engine import Engine
from tiace.models.feed import SyncJob
from tiace.models.tenant import TenantContext

T = TypeVar("T")

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_FAILURE = 2
EXIT_PERMISSION_DENIED = 3

TenantOption = Annotated[
    str | None,
    typer.Option(
        "--tenant",
        "-t",
        envvar="TIACE_TENANT_ID",
        help="Tenant to act in (required; or set TIACE_TENANT_ID)",
    ),
]

err_console = Console(stderr=True)


def tenant_or_exit(tenant: str | None) -> TenantContext:
    """Build the CLI caller's context; exit 3 when no tenant is given."""
    try:
        return TenantContext(tenant_id=tenant or "", caller="cli")
    except PermissionDeniedError as exc:
        err_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(EXIT_PERMISSION_DENIED) from None


def exit_code_for_jobs(jobs: Iterable[SyncJob]) -> int:
    """``0`` if every job fully succeeded, ``2`` if every job failed outright, else ``1``.

    A job whose transport dropped after records were committed is partial,
    not failed, even though its status is ``failed``.
    """
    jobs = list(jobs)
    if not jobs:
        return EXIT_OK
    landed = [j for j in jobs if j.status is SyncStatus.SUCCEEDED or j.is_partial]
    if not landed:
        return EXIT_FAILURE
    if len(landed) < len(jobs) or any(j.is_partial for j in landed):
        return EXIT_PARTIAL
    return EXIT_OK


def run_with_engine(
    work: Callable[[Engine], Awaitable[T]],
    *,
    settings: Settings | None = None,
) -> T:
    """Open an engine, run *work*, close the engine; map errors to exit codes."""
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_format)

    async def _main() -> T:
        engine = await Engine.create(settings)
        try:
            await engine.start(scheduler=False)
            return await work(engine)
        finally:
            await engine.close()

    try:
        return asyncio.run(_main())
    except PermissionDeniedError as exc:
        err_console.print(f"[red]Permission denied:[/red] {exc}")
        raise typer.Exit(EXIT_PERMISSION_DENIED) from None
    except TiaceError as exc:
        err_console.print(f"[red]Error ({exc.kind.value}):[/red] {exc}")
        raise typer.Exit(EXIT_FAILURE) from None
