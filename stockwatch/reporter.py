from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from rich import box
from rich.console import Console
from rich.table import Table

from stockwatch.domain.models import Alert, SyncCursor
from stockwatch.scheduler import CycleResult
from stockwatch.services.load_monitor import LoadSnapshot


def _fmt_ms(value: float) -> str:
    return f"{value:,.1f} ms"


def _print_alerts(alerts: Iterable[Alert], console: Console) -> None:
    alerts = list(alerts)
    if not alerts:
        return
    table = Table(title="Alerts", box=box.SIMPLE)
    table.add_column("When", style="dim")
    table.add_column("Type", style="red")
    table.add_column("Message")
    for alert in alerts:
        table.add_row(alert.emitted_at.isoformat(timespec="seconds"), alert.type, alert.message)
    console.print(table)


def print_cycle_result(
    result: CycleResult,
    alerts: Iterable[Alert] = (),
    console: Optional[Console] = None,
) -> None:
    """
    Render the outcome of one synchronization cycle, and any alerts it raised.
    """
    console = console or Console()
    table = Table(title="Synchronization Cycle", box=box.ROUNDED, show_header=False)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value", justify="right", style="magenta")

    failed_style = "bold red" if result.batches_failed else "green"
    table.add_row("Mode", result.mode)
    table.add_row("Records", f"{result.records:,}")
    table.add_row("Batches", f"{result.batches_succeeded}/{result.batches_total} delivered")
    table.add_row("Failed batches", f"[{failed_style}]{result.batches_failed}[/{failed_style}]")
    table.add_row("Pending changes", f"{result.changes_pending:,}")
    table.add_row("Changes acknowledged", f"{result.changes_acknowledged:,}")
    table.add_row("Retrieval", _fmt_ms(result.retrieval_ms))
    table.add_row("Transmission", _fmt_ms(result.transmission_ms))
    table.add_row("Total", _fmt_ms(result.duration_ms))
    if result.next_interval_seconds is not None:
        table.add_row("Next interval", f"{result.next_interval_seconds:.1f} s")

    console.print(table)

    _print_alerts(alerts, console)


def print_status(
    cursor: Optional[SyncCursor],
    pending_changes: Optional[int],
    snapshot: LoadSnapshot,
    database_probe: Dict[str, Any],
    console: Optional[Console] = None,
) -> None:
    """
    Render the operator status view: sync cursor, backlog and load.

    `cursor` and `pending_changes` are None when change tracking is disabled
    or the tracking tables could not be read.
    """
    console = console or Console()

    table = Table(title="stockwatch status", box=box.ROUNDED, show_header=False)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value", justify="right")

    if cursor is None:
        table.add_row("Last sync", "[dim]n/a[/dim]")
    elif cursor.never_synced:
        table.add_row("Last sync", "[yellow]never[/yellow]")
    else:
        table.add_row("Last sync", cursor.last_sync_time.isoformat(timespec="seconds"))
        table.add_row("Records at last sync", f"{cursor.last_sync_count:,}")
    table.add_row(
        "Pending changes",
        "[dim]n/a[/dim]" if pending_changes is None else f"{pending_changes:,}",
    )

    load_style = "bold red" if snapshot.high_load else "green"
    table.add_row("CPU", f"{snapshot.cpu_percent:.1f} %")
    table.add_row("Memory", f"{snapshot.memory_mb:.1f} MB")
    table.add_row("Database load", f"{snapshot.database_load:.0f} / 100")
    table.add_row("High load", f"[{load_style}]{snapshot.high_load}[/{load_style}]")
    table.add_row("Recommended delay", f"{snapshot.delay.total_seconds():.1f} s")

    if "error" in database_probe:
        table.add_row("Database probe", f"[red]{database_probe['error']}[/red]")
    else:
        slow = database_probe.get("query_threshold_exceeded")
        probe_style = "bold red" if slow else "green"
        table.add_row("Catalog items", f"{database_probe.get('product_count', 0):,}")
        table.add_row(
            "Probe query",
            f"[{probe_style}]{database_probe.get('test_query_duration_ms', 0.0):.1f} ms[/{probe_style}]",
        )

    console.print(table)


__all__ = ["print_cycle_result", "print_status"]
