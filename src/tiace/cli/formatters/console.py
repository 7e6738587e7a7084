# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Rich console output for indicators, sync jobs, feeds and hunts."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from rich.console import Console
from rich.table import Table

from tiace.core.constants import Severity, SyncStatus
from tiace.models.feed import SyncJob
from tiace.models.indicator import Indicator, format_timestamp
from tiace.query.service import Aggregates, HuntResult

console = Console()

SEVERITY_COLORS = {
    Severity.CRITICAL: "bold red",
    Severity.HIGH: "red",
    Severity.MEDIUM: "yellow",
    Severity.LOW: "cyan",
    Severity.INFO: "dim",
}

STATUS_COLORS = {
    SyncStatus.SUCCEEDED: "bold green",
    SyncStatus.FAILED: "bold red",
    SyncStatus.CANCELLED: "yellow",
    SyncStatus.RUNNING: "cyan",
    SyncStatus.PENDING: "dim",
}


def _severity(severity: Severity) -> str:
    color = SEVERITY_COLORS.get(severity, "white")
    return f"[{color}]{severity.value}[/{color}]"


def _status(status: SyncStatus) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status.value}[/{color}]"


def print_indicators(indicators: list[Indicator], *, title: str = "Indicators") -> None:
    table = Table(title=f"{title} ({len(indicators)})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Kind")
    table.add_column("Value", style="bold")
    table.add_column("Severity")
    table.add_column("Confidence", justify="right")
    table.add_column("Feeds")
    table.add_column("Last Seen", style="dim")
    for indicator in indicators:
        table.add_row(
            indicator.indicator_id,
            indicator.kind,
            indicator.value,
            _severity(indicator.severity),
            f"{indicator.confidence:.2f}",
            ", ".join(sorted(indicator.source_feeds)) or "-",
            format_timestamp(indicator.last_seen),
        )
    console.print(table)


def print_jobs(jobs: Iterable[SyncJob], *, title: str = "Sync Jobs") -> None:
    table = Table(title=title)
    table.add_column("Job", style="cyan", no_wrap=True)
    table.add_column("Feed", style="bold")
    table.add_column("Status")
    table.add_column("Imported", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Errored", justify="right")
    table.add_column("Conflicted", justify="right")
    table.add_column("Reason", style="dim")
    for job in jobs:
        table.add_row(
            job.job_id,
            job.feed_id,
            _status(job.status),
            str(job.items_imported),
            str(job.items_updated),
            str(job.items_skipped),
            str(job.items_errored),
            str(job.items_conflicted),
            job.failure_reason or "-",
        )
    console.print(table)


def print_feeds(feeds: list[Mapping[str, Any]]) -> None:
    table = Table(title=f"Feeds ({len(feeds)})")
    table.add_column("Feed", style="cyan", no_wrap=True)
    table.add_column("Type")
    table.add_column("Format")
    table.add_column("Enabled")
    table.add_column("State", style="bold")
    table.add_column("Failures", justify="right")
    table.add_column("Next Due", style="dim")
    for feed in feeds:
        table.add_row(
            str(feed.get("feed_id", "")),
            str(feed.get("feed_type") or "-"),
            str(feed.get("format") or "-"),
            "yes" if feed.get("enabled", True) else "no",
            str(feed.get("state", "")),
            str(feed.get("consecutive_failures", 0)),
            str(feed.get("next_due") or "-"),
        )
    console.print(table)


def print_hunt(result: HuntResult) -> None:
    print_indicators(result.hits, title=f"Hunt hits (depth {result.depth})")
    if not result.linked:
        console.print("[dim]No linked entities.[/dim]")
        return
    table = Table(title=f"Linked Entities ({len(result.linked)})")
    table.add_column("Entity", style="cyan", no_wrap=True)
    table.add_column("Type")
    table.add_column("Depth", justify="right")
    table.add_column("Via")
    table.add_column("Cluster", style="dim")
    for linked in result.linked:
        via = " > ".join(step.relationship_type for step in linked.path)
        table.add_row(
            linked.entity_id,
            linked.entity_type.value,
            str(linked.depth),
            via or "-",
            linked.cluster_id or "-",
        )
    console.print(table)


def print_aggregates(aggregates: Aggregates) -> None:
    console.print(f"[bold]Total indicators:[/bold] {aggregates.total}")
    console.print(f"[bold]Clusters:[/bold] {aggregates.cluster_count}")
    console.print()

    def _counts(title: str, rows: Iterable[tuple[str, int]]) -> None:
        table = Table(title=title)
        table.add_column("Name", style="cyan")
        table.add_column("Count", justify="right")
        for name, count in rows:
            table.add_row(name, str(count))
        console.print(table)

    _counts("By Kind", aggregates.by_kind.items())
    _counts("By Severity", aggregates.by_severity.items())
    _counts("By Feed", aggregates.by_feed.items())
    _counts("Top Malware Families", aggregates.top_malware_families)
    _counts("Top Actors", aggregates.top_actors)
