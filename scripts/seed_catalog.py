"""
Seed a PostgreSQL database with a synthetic Busy-style catalog.

Creates `master1` (items and other masters) and `tran2` (signed stock
movements), fills them deterministically through COPY, and can install the
triggers that feed `product_change_log` on every catalog edit.
"""

from __future__ import annotations

import random
import sys
import time
from decimal import Decimal

import psycopg
import typer

from stockwatch.infrastructure.db_factory import get_sync_connection
from stockwatch.services.change_tracking import SCHEMA_STATEMENTS
from stockwatch.services.data_access import ITEM_MASTER_TYPE

app = typer.Typer(help="Create and populate the master1/tran2 catalog tables.")

# Account and unit masters share master1 with items; they must never sync.
OTHER_MASTER_TYPES = (1, 2, 8)

CATALOG_DDL = (
    """
    CREATE TABLE IF NOT EXISTS master1 (
        code INTEGER PRIMARY KEY,
        master_type SMALLINT NOT NULL,
        name VARCHAR(200),
        print_name VARCHAR(200),
        d3 NUMERIC(14, 2),
        d4 NUMERIC(14, 2)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tran2 (
        id BIGSERIAL PRIMARY KEY,
        master_code1 INTEGER NOT NULL,
        value1 NUMERIC(14, 3) NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_tran2_master_code1 ON tran2 (master_code1)",
)

TRIGGER_DDL = (
    f"""
    CREATE OR REPLACE FUNCTION stockwatch_log_item_change() RETURNS trigger AS $$
    BEGIN
        IF TG_OP = 'DELETE' THEN
            IF OLD.master_type = {ITEM_MASTER_TYPE} THEN
                INSERT INTO product_change_log (product_code, operation) VALUES (OLD.code, 'DELETE');
            END IF;
            RETURN OLD;
        END IF;
        IF NEW.master_type = {ITEM_MASTER_TYPE} THEN
            INSERT INTO product_change_log (product_code, operation) VALUES (NEW.code, TG_OP);
        END IF;
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    """
    CREATE OR REPLACE FUNCTION stockwatch_log_stock_change() RETURNS trigger AS $$
    BEGIN
        INSERT INTO product_change_log (product_code, operation)
        VALUES (COALESCE(NEW.master_code1, OLD.master_code1), 'UPDATE');
        RETURN COALESCE(NEW, OLD);
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS trg_master1_change_log ON master1",
    """
    CREATE TRIGGER trg_master1_change_log
    AFTER INSERT OR UPDATE OR DELETE ON master1
    FOR EACH ROW EXECUTE FUNCTION stockwatch_log_item_change()
    """,
    "DROP TRIGGER IF EXISTS trg_tran2_change_log ON tran2",
    """
    CREATE TRIGGER trg_tran2_change_log
    AFTER INSERT OR UPDATE OR DELETE ON tran2
    FOR EACH ROW EXECUTE FUNCTION stockwatch_log_stock_change()
    """,
)


def _generate_masters(items: int, seed: int) -> list[tuple]:
    """Items with codes 1..items plus a sprinkling of non-item masters."""
    rng = random.Random(seed)
    rows: list[tuple] = []
    for code in range(1, items + 1):
        cost = Decimal(rng.randint(100, 500_000)) / 100
        sale = (cost * Decimal(rng.choice(["1.10", "1.25", "1.40"]))).quantize(Decimal("0.01"))
        name = f"Item {code:05d}"
        # Some items carry no print name, as in real Busy data.
        print_name = None if rng.random() < 0.1 else name.upper()
        rows.append((code, ITEM_MASTER_TYPE, name, print_name, sale, cost))
    for offset, master_type in enumerate(OTHER_MASTER_TYPES, start=1):
        rows.append((items + offset, master_type, f"Master {master_type}", None, None, None))
    return rows


def _generate_movements(items: int, per_item: int, seed: int) -> list[tuple]:
    """
    Signed stock movements; roughly one item in ten ends up oversold so the
    zero clamp on available stock gets exercised.
    """
    rng = random.Random(seed + 1)
    rows: list[tuple] = []
    for code in range(1, items + 1):
        oversold = rng.random() < 0.1
        for _ in range(rng.randint(0, per_item)):
            qty = Decimal(rng.randint(1, 50))
            if oversold or rng.random() < 0.3:
                qty = -qty
            rows.append((code, qty))
    return rows


def _reset_tables(conn: psycopg.Connection) -> None:
    with conn.cursor() as cur:
        for statement in CATALOG_DDL:
            cur.execute(statement)
        cur.execute("DROP TRIGGER IF EXISTS trg_master1_change_log ON master1")
        cur.execute("DROP TRIGGER IF EXISTS trg_tran2_change_log ON tran2")
        cur.execute("TRUNCATE TABLE tran2, master1 RESTART IDENTITY")


def _copy_rows(conn: psycopg.Connection, masters: list[tuple], movements: list[tuple]) -> None:
    with conn.cursor() as cur:
        with cur.copy(
            "COPY master1 (code, master_type, name, print_name, d3, d4) FROM STDIN"
        ) as copy:
            for row in masters:
                copy.write_row(row)
        with cur.copy("COPY tran2 (master_code1, value1) FROM STDIN") as copy:
            for row in movements:
                copy.write_row(row)


def _install_triggers(conn: psycopg.Connection) -> None:
    with conn.cursor() as cur:
        for statement in SCHEMA_STATEMENTS:
            cur.execute(statement)
        for statement in TRIGGER_DDL:
            cur.execute(statement)


def seed_catalog(
    dsn: str | None = None,
    items: int = 1_000,
    movements_per_item: int = 5,
    seed: int = 42,
    with_triggers: bool = False,
) -> int:
    """
    Recreate the catalog contents and return the number of items written.

    Triggers are installed after loading so the seed itself does not flood
    the change log.
    """
    masters = _generate_masters(items, seed)
    movements = _generate_movements(items, movements_per_item, seed)
    conn = psycopg.connect(dsn) if dsn else get_sync_connection()
    with conn:
        _reset_tables(conn)
        _copy_rows(conn, masters, movements)
        if with_triggers:
            _install_triggers(conn)
        conn.commit()
    return items


@app.command()
def main(
    items: int = typer.Option(1_000, "--items", "-n", help="Number of catalog items."),
    movements_per_item: int = typer.Option(
        5, "--movements", "-m", help="Maximum stock movements per item."
    ),
    seed: int = typer.Option(42, "--seed", help="Deterministic RNG seed."),
    dsn: str | None = typer.Option(None, "--dsn", help="Optional DSN override for Postgres."),
    with_triggers: bool = typer.Option(
        False, "--with-triggers", help="Install change-log triggers on master1 and tran2."
    ),
) -> None:
    """
    Generate a synthetic catalog and load it into Postgres using COPY.
    """
    start = time.perf_counter()
    typer.echo(f"Seeding {items:,} items (seed={seed}, triggers={with_triggers})")
    seed_catalog(dsn, items, movements_per_item, seed, with_triggers)
    typer.echo(f"Seed completed in {time.perf_counter() - start:.2f}s")


if __name__ == "__main__":
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)
