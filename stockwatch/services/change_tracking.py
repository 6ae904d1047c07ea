"""
Change-tracking store backed by two tables in the source database.

`product_change_log` receives one row per insert/update/delete of a catalog
item (written by database triggers or by `record_change`), and
`product_sync_state` holds the single sync-cursor row (id = 1). Every method
opens its own connection and releases it before returning.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List

import psycopg
from psycopg.rows import dict_row

from stockwatch.domain.models import ChangeEvent, ChangeOperation, SyncCursor
from stockwatch.exceptions import StorageError
from stockwatch.infrastructure.db_factory import ConnectionFactory
from stockwatch.utils.logging import get_logger

log = get_logger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS product_change_log (
        id BIGSERIAL PRIMARY KEY,
        product_code INTEGER NOT NULL,
        operation VARCHAR(10) NOT NULL CHECK (operation IN ('INSERT', 'UPDATE', 'DELETE')),
        change_timestamp TIMESTAMPTZ NOT NULL DEFAULT now(),
        processed BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_product_change_log_product_code "
    "ON product_change_log (product_code)",
    "CREATE INDEX IF NOT EXISTS ix_product_change_log_change_timestamp "
    "ON product_change_log (change_timestamp)",
    "CREATE INDEX IF NOT EXISTS ix_product_change_log_pending "
    "ON product_change_log (change_timestamp) WHERE NOT processed",
    """
    CREATE TABLE IF NOT EXISTS product_sync_state (
        id INTEGER PRIMARY KEY DEFAULT 1 CHECK (id = 1),
        last_sync_time TIMESTAMPTZ NULL,
        last_sync_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    "INSERT INTO product_sync_state (id) VALUES (1) ON CONFLICT (id) DO NOTHING",
)

_INSERT_CHANGE_SQL = """
    INSERT INTO product_change_log (product_code, operation, change_timestamp, processed)
    VALUES (%s, %s, now(), FALSE)
"""

_PENDING_SQL = """
    SELECT id, product_code, operation, change_timestamp, processed
    FROM product_change_log
    WHERE processed = FALSE
    ORDER BY change_timestamp, id
"""

_MARK_PROCESSED_SQL = "UPDATE product_change_log SET processed = TRUE WHERE id = ANY(%s)"

_GET_CURSOR_SQL = "SELECT last_sync_time, last_sync_count FROM product_sync_state WHERE id = 1"

_SET_CURSOR_SQL = """
    INSERT INTO product_sync_state (id, last_sync_time, last_sync_count)
    VALUES (1, %s, %s)
    ON CONFLICT (id) DO UPDATE
    SET last_sync_time = EXCLUDED.last_sync_time,
        last_sync_count = EXCLUDED.last_sync_count
"""

# Connection failures surface as psycopg.Error once retries are exhausted;
# OSError covers DNS/socket problems raised before the driver wraps them.
_STORE_ERRORS = (psycopg.Error, OSError)


class ChangeTrackingStore:
    """
    Read/write access to the change log and the sync cursor.
    """

    def __init__(self, connect: ConnectionFactory) -> None:
        self._connect = connect

    async def ensure_schema(self) -> None:
        """
        Idempotently create the tracking tables and the cursor row.

        Raises
        ------
        StorageError
            If the database is unreachable or rejects the DDL.
        """
        try:
            async with await self._connect() as conn:
                async with conn.cursor() as cur:
                    for statement in SCHEMA_STATEMENTS:
                        await cur.execute(statement)
        except _STORE_ERRORS as exc:
            log.error("Could not create change-tracking tables", extra={"error": str(exc)})
            raise StorageError(f"Could not create change-tracking tables: {exc}") from exc
        log.info("Change-tracking schema ready")

    async def record_change(self, code: int, operation: ChangeOperation | str) -> None:
        """
        Append a change event for `code`.

        Best-effort: storage failures are logged and swallowed so that change
        logging never blocks the caller.
        """
        op = ChangeOperation(operation)
        try:
            async with await self._connect() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(_INSERT_CHANGE_SQL, (code, op.value))
        except _STORE_ERRORS:
            log.exception(
                f"Error logging product change for code {code}",
                extra={"code": code, "operation": op.value},
            )

    async def pending_changes(self) -> List[ChangeEvent]:
        """Return every unprocessed change event, oldest first."""
        try:
            async with await self._connect() as conn:
                async with conn.cursor(row_factory=dict_row) as cur:
                    await cur.execute(_PENDING_SQL)
                    rows = await cur.fetchall()
        except _STORE_ERRORS as exc:
            raise StorageError(f"Could not read pending changes: {exc}") from exc

        return [
            ChangeEvent(
                id=row["id"],
                code=row["product_code"],
                operation=row["operation"],
                timestamp=row["change_timestamp"],
                processed=row["processed"],
            )
            for row in rows
        ]

    async def mark_processed(self, ids: Iterable[int]) -> None:
        """
        Flag the given change events as processed in a single transaction.
        """
        id_list = sorted(set(ids))
        if not id_list:
            return
        try:
            async with await self._connect() as conn:
                async with conn.transaction():
                    async with conn.cursor() as cur:
                        await cur.execute(_MARK_PROCESSED_SQL, (id_list,))
        except _STORE_ERRORS as exc:
            raise StorageError(
                f"Could not mark {len(id_list)} change(s) as processed: {exc}"
            ) from exc
        log.debug("Marked changes processed", extra={"count": len(id_list)})

    async def get_cursor(self) -> SyncCursor:
        try:
            async with await self._connect() as conn:
                async with conn.cursor(row_factory=dict_row) as cur:
                    await cur.execute(_GET_CURSOR_SQL)
                    row = await cur.fetchone()
        except _STORE_ERRORS as exc:
            raise StorageError(f"Could not read sync cursor: {exc}") from exc

        if row is None:
            return SyncCursor()
        return SyncCursor(
            last_sync_time=row["last_sync_time"],
            last_sync_count=row["last_sync_count"] or 0,
        )

    async def set_cursor(self, sync_time: datetime, count: int) -> None:
        try:
            async with await self._connect() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(_SET_CURSOR_SQL, (sync_time, count))
        except _STORE_ERRORS as exc:
            raise StorageError(f"Could not update sync cursor: {exc}") from exc


__all__ = ["ChangeTrackingStore", "SCHEMA_STATEMENTS"]
