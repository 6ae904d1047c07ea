"""
Catalog repository: the read queries against the source accounting database.

Items live in `master1` (rows with `master_type = 6`); their stock is the sum
of the signed quantities in `tran2`. Both the snapshot and the keyed lookup
return the same shape, with stock clamped at zero.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Iterable, List, Optional, Sequence

import psycopg
from psycopg import errors as pg_errors
from psycopg.rows import dict_row

from stockwatch.domain.models import Record
from stockwatch.exceptions import DataAccessError, QueryTimeoutError
from stockwatch.infrastructure.db_factory import ConnectionFactory, apply_statement_timeout
from stockwatch.utils.batching import partition
from stockwatch.utils.logging import get_logger

log = get_logger(__name__)

ITEM_MASTER_TYPE = 6
DEFAULT_LOOKUP_CHUNK_SIZE = 2000

_SNAPSHOT_SQL = f"""
    WITH stock_data AS (
        SELECT master_code1 AS item_id, SUM(value1) AS total_available_stock
        FROM tran2
        GROUP BY master_code1
    )
    SELECT
        m.code,
        COALESCE(m.name, '') AS item_name,
        COALESCE(m.print_name, '') AS print_name,
        COALESCE(m.d3, 0) AS sale_price,
        COALESCE(m.d4, 0) AS cost_price,
        GREATEST(COALESCE(s.total_available_stock, 0), 0) AS total_available_stock
    FROM master1 m
    LEFT JOIN stock_data s ON s.item_id = m.code
    WHERE m.master_type = {ITEM_MASTER_TYPE}
    ORDER BY m.code
"""

_BY_KEYS_SQL = f"""
    WITH stock_data AS (
        SELECT master_code1 AS item_id, SUM(value1) AS total_available_stock
        FROM tran2
        WHERE master_code1 = ANY(%(codes)s)
        GROUP BY master_code1
    )
    SELECT
        m.code,
        COALESCE(m.name, '') AS item_name,
        COALESCE(m.print_name, '') AS print_name,
        COALESCE(m.d3, 0) AS sale_price,
        COALESCE(m.d4, 0) AS cost_price,
        GREATEST(COALESCE(s.total_available_stock, 0), 0) AS total_available_stock
    FROM master1 m
    LEFT JOIN stock_data s ON s.item_id = m.code
    WHERE m.master_type = {ITEM_MASTER_TYPE}
      AND m.code = ANY(%(codes)s)
    ORDER BY m.code
"""

_COUNT_SQL = f"SELECT COUNT(*) AS total FROM master1 WHERE master_type = {ITEM_MASTER_TYPE}"


def _to_record(row: Dict[str, Any]) -> Record:
    return Record(
        code=row["code"],
        item_name=row["item_name"],
        print_name=row["print_name"],
        sale_price=row["sale_price"],
        cost_price=row["cost_price"],
        total_available_stock=row["total_available_stock"],
    )


class CatalogRepository:
    """
    Executes the snapshot, keyed-lookup and count queries.

    Parameters
    ----------
    connect : ConnectionFactory
        Zero-argument coroutine returning a fresh psycopg AsyncConnection.
    statement_timeout_ms : int
        Server-side timeout applied to every query (0 disables it).
    lookup_chunk_size : int
        Maximum number of keys bound into a single keyed lookup.
    """

    def __init__(
        self,
        connect: ConnectionFactory,
        statement_timeout_ms: int = 30_000,
        lookup_chunk_size: int = DEFAULT_LOOKUP_CHUNK_SIZE,
    ) -> None:
        if lookup_chunk_size < 1:
            raise ValueError("lookup_chunk_size must be positive")
        self._connect = connect
        self.statement_timeout_ms = statement_timeout_ms
        self.lookup_chunk_size = lookup_chunk_size

    async def _query(
        self,
        operation: str,
        sql: str,
        params: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        started = time.perf_counter()
        try:
            async with await self._connect() as conn:
                async with conn.cursor(row_factory=dict_row) as cur:
                    await apply_statement_timeout(cur, self.statement_timeout_ms)
                    await cur.execute(sql, params)
                    return await cur.fetchall()
        except pg_errors.QueryCanceled as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            log.error(
                f"[{operation}] query exceeded {self.statement_timeout_ms} ms",
                extra={"operation": operation, "duration_ms": round(duration_ms, 1), **(context or {})},
            )
            raise QueryTimeoutError(
                f"{operation} exceeded the {self.statement_timeout_ms} ms statement timeout",
                operation=operation,
            ) from exc
        except (psycopg.Error, OSError) as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            log.exception(
                f"[{operation}] query failed",
                extra={"operation": operation, "duration_ms": round(duration_ms, 1), **(context or {})},
            )
            raise DataAccessError(f"{operation} failed: {exc}", operation=operation) from exc

    async def fetch_all(self) -> List[Record]:
        """Full snapshot of active catalog items, sorted by code."""
        rows = await self._query("fetch_all", _SNAPSHOT_SQL)
        records = sorted((_to_record(row) for row in rows), key=lambda r: r.code)
        log.debug("Snapshot read", extra={"records": len(records)})
        return records

    async def fetch_by_keys(self, keys: Iterable[int]) -> List[Record]:
        """
        Records for the given business keys, sorted by code.

        Keys without a matching active item (e.g. deleted ones) are simply
        absent from the result. No query is issued for an empty key set.
        """
        codes: Sequence[int] = sorted({int(key) for key in keys})
        if not codes:
            return []

        records: List[Record] = []
        chunks = partition(codes, self.lookup_chunk_size)
        for index, chunk in enumerate(chunks, start=1):
            rows = await self._query(
                "fetch_by_keys",
                _BY_KEYS_SQL,
                {"codes": chunk},
                context={"chunk": index, "chunks": len(chunks), "keys": len(chunk)},
            )
            records.extend(_to_record(row) for row in rows)

        records.sort(key=lambda r: r.code)
        log.debug(
            "Keyed lookup read",
            extra={"keys": len(codes), "records": len(records), "chunks": len(chunks)},
        )
        return records

    async def count(self) -> int:
        """Number of active catalog items."""
        rows = await self._query("count", _COUNT_SQL)
        return int(rows[0]["total"]) if rows else 0


__all__ = ["CatalogRepository", "DEFAULT_LOOKUP_CHUNK_SIZE", "ITEM_MASTER_TYPE"]
