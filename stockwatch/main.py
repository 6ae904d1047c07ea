from __future__ import annotations

import asyncio
import contextlib
import signal
import sys
from typing import List, Optional, Tuple, cast

import typer

from stockwatch.config import Settings, get_settings
from stockwatch.domain.models import ChangeOperation, SyncCursor
from stockwatch.exceptions import StockWatchError, StorageError
from stockwatch.infrastructure.db_factory import connection_factory
from stockwatch.reporter import print_cycle_result, print_status
from stockwatch.scheduler import CycleResult, SyncScheduler
from stockwatch.services.change_tracking import ChangeTrackingStore
from stockwatch.services.load_monitor import LoadMonitor
from stockwatch.utils.logging import configure_logging, get_logger

app = typer.Typer(help="Watch the Busy catalog and push stock/price changes downstream.")
log = get_logger(__name__)


@app.callback()
def _configure(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", "-l", help="Override LOG_LEVEL for this invocation."
    ),
) -> None:
    settings = get_settings()
    configure_logging(level=(log_level or settings.log_level).upper(), json_logs=settings.log_json)


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    auth = "set" if settings.api_auth_header_value else "none"
    typer.echo(
        f"DB={settings.db_user}@{settings.db_host}:{settings.db_port}/{settings.db_name} | "
        f"endpoint={settings.api_endpoint} auth={auth}"
    )
    typer.echo(
        f"interval={settings.polling_interval_seconds}s batch={settings.batch_size} "
        f"retries={settings.max_retries} change_tracking={settings.change_tracking_enabled} "
        f"adaptive={settings.adaptive_interval_enabled} "
        f"business_hours={settings.business_hours_enabled}"
        f"({settings.business_hours_start:02d}-{settings.business_hours_end:02d})"
    )


@app.command("init-schema")
def init_schema() -> None:
    """
    Create the change-tracking tables if they do not exist yet.
    """
    settings = get_settings()
    store = ChangeTrackingStore(connection_factory(settings))
    try:
        asyncio.run(store.ensure_schema())
    except StorageError as exc:
        typer.echo(f"Schema creation failed: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo("Change-tracking schema ready.")


async def _serve(settings: Settings, received: List[int]) -> None:
    scheduler = SyncScheduler.from_settings(settings)
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()

    def _stop(signum: int) -> None:
        received.append(signum)
        task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        # add_signal_handler is unavailable on Windows event loops.
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _stop, sig)
    try:
        await scheduler.run_forever()
    finally:
        await scheduler.aclose()


@app.command()
def run() -> None:
    """
    Run the synchronization loop until interrupted.
    """
    settings = get_settings()
    received: List[int] = []
    try:
        asyncio.run(_serve(settings, received))
    except asyncio.CancelledError:
        typer.echo("Watcher stopped.")
        if signal.SIGINT in received:
            raise typer.Exit(code=130)
    except StockWatchError as exc:
        log.critical(f"Watcher terminated: {exc}")
        raise typer.Exit(code=1) from exc


async def _sync_once(settings: Settings) -> Tuple[CycleResult, SyncScheduler]:
    scheduler = SyncScheduler.from_settings(settings)
    try:
        if settings.change_tracking_enabled:
            await scheduler.ensure_schema()
        return await scheduler.run_cycle(), scheduler
    finally:
        await scheduler.aclose()


@app.command("sync-once")
def sync_once() -> None:
    """
    Run a single synchronization cycle and print its summary.
    """
    settings = get_settings()
    try:
        result, scheduler = asyncio.run(_sync_once(settings))
    except StockWatchError as exc:
        typer.echo(f"Sync failed: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    print_cycle_result(result, alerts=scheduler.alerts.history)
    if result.batches_failed:
        raise typer.Exit(code=2)


async def _status(settings: Settings) -> None:
    scheduler = SyncScheduler.from_settings(settings)
    monitor = cast(LoadMonitor, scheduler.load)
    cursor: Optional[SyncCursor] = None
    pending: Optional[int] = None
    try:
        if settings.change_tracking_enabled:
            try:
                cursor = await scheduler.changes.get_cursor()
                pending = len(await scheduler.changes.pending_changes())
            except StorageError as exc:
                log.warning(f"Change-tracking tables unavailable: {exc}")
        snapshot = await monitor.snapshot()
        probe = await monitor.probe_database()
    finally:
        await scheduler.aclose()
    print_status(cursor, pending, snapshot, probe)


@app.command()
def status() -> None:
    """
    Show the sync cursor, change backlog, host load and a database probe.
    """
    asyncio.run(_status(get_settings()))


@app.command("record-change")
def record_change(
    code: int = typer.Argument(..., help="Business key (item code) that changed."),
    operation: ChangeOperation = typer.Option(
        ChangeOperation.UPDATE, "--operation", "-o", case_sensitive=False
    ),
) -> None:
    """
    Append a change event by hand, e.g. for items edited outside the triggers.
    """
    store = ChangeTrackingStore(connection_factory(get_settings()))
    asyncio.run(store.record_change(code, operation))
    typer.echo(f"Recorded {operation.value} for item {code}.")


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
