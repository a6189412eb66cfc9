"""Committed Inventory Ledger Database Operations.

This module handles all SQLite operations for the ledger:
- Schema initialization
- Bulk delete / per-invoice upsert of committed rows
- Transactional rebuild of the reserved aggregate

The committed_inventory table is the source of truth; reserved_inventory is
derived from it and rebuilt wholesale on every pass.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

from core.config import DEFAULT_LEDGER_DB_PATH
from core.observability.logging import get_logger
from ledger.models import CommittedLine, DeleteResult, LedgerLine, ReservedAggregate, merge_lines
from ledger.store import LedgerStore, StoreFailure

logger = get_logger(__name__)

# Bound on bound parameters per statement (SQLite's historical limit is 999)
DELETE_CHUNK_SIZE = 500


def init_ledger_db(db_path: Path = DEFAULT_LEDGER_DB_PATH) -> None:
    """Initialize ledger tables.

    Creates:
    - committed_inventory: One row per (merchant, invoice, catalog object, location)
    - reserved_inventory: Derived totals per (merchant, catalog object, location)

    Args:
        db_path: Path to SQLite database file
    """
    conn = sqlite3.connect(str(db_path))
    try:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS committed_inventory (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                merchant_id TEXT NOT NULL,
                invoice_id TEXT NOT NULL,
                order_id TEXT,
                catalog_object_id TEXT NOT NULL,
                location_id TEXT NOT NULL,
                quantity INTEGER NOT NULL,
                invoice_status TEXT,
                updated_at TEXT NOT NULL,
                UNIQUE(merchant_id, invoice_id, catalog_object_id, location_id)
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_committed_inventory_invoice
            ON committed_inventory(merchant_id, invoice_id)
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS reserved_inventory (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                merchant_id TEXT NOT NULL,
                catalog_object_id TEXT NOT NULL,
                location_id TEXT NOT NULL,
                quantity INTEGER NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(merchant_id, catalog_object_id, location_id)
            )
        """)

        conn.commit()
        logger.debug("Ledger tables initialized", extra_fields={"db_path": str(db_path)})
    finally:
        conn.close()


class SQLiteLedgerStore(LedgerStore):
    """SQLite-backed ledger.

    Every mutating method runs in a single IMMEDIATE transaction and rolls
    back fully on error, re-raising as StoreFailure.
    """

    def __init__(self, db_path: Path = DEFAULT_LEDGER_DB_PATH, initialize: bool = True):
        self.db_path = Path(db_path)
        if initialize:
            init_ledger_db(self.db_path)

    def _connect(self, operation: str) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(str(self.db_path), isolation_level=None)
        except sqlite3.Error as e:
            raise StoreFailure(f"{operation} failed: cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        conn = self._connect(operation)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise StoreFailure(f"{operation} failed: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def _reader(self, operation: str) -> Iterator[sqlite3.Connection]:
        conn = self._connect(operation)
        try:
            yield conn
        except sqlite3.Error as e:
            raise StoreFailure(f"{operation} failed: {e}") from e
        finally:
            conn.close()

    # =========================================================================
    # Snapshot
    # =========================================================================

    def count_rows(self, merchant_id: str) -> int:
        with self._reader("count_rows") as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM committed_inventory WHERE merchant_id = ?",
                (merchant_id,),
            ).fetchone()
            return int(row[0])

    def list_distinct_invoice_ids(self, merchant_id: str) -> List[str]:
        with self._reader("list_distinct_invoice_ids") as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT invoice_id FROM committed_inventory
                WHERE merchant_id = ?
                ORDER BY invoice_id
                """,
                (merchant_id,),
            ).fetchall()
            return [row["invoice_id"] for row in rows]

    # =========================================================================
    # Mutation
    # =========================================================================

    def delete_rows_for_invoices(self, merchant_id: str, invoice_ids: Iterable[str]) -> DeleteResult:
        targets = sorted(set(invoice_ids))
        result = DeleteResult()
        if not targets:
            return result

        deleted_ids = set()
        with self._transaction("delete_rows_for_invoices") as conn:
            for start in range(0, len(targets), DELETE_CHUNK_SIZE):
                chunk = targets[start:start + DELETE_CHUNK_SIZE]
                placeholders = ",".join("?" for _ in chunk)
                params = [merchant_id, *chunk]

                rows = conn.execute(
                    f"""
                    SELECT DISTINCT invoice_id FROM committed_inventory
                    WHERE merchant_id = ? AND invoice_id IN ({placeholders})
                    """,
                    params,
                ).fetchall()
                deleted_ids.update(row["invoice_id"] for row in rows)

                cursor = conn.execute(
                    f"""
                    DELETE FROM committed_inventory
                    WHERE merchant_id = ? AND invoice_id IN ({placeholders})
                    """,
                    params,
                )
                result.rows_deleted += cursor.rowcount

        result.deleted_invoice_ids = sorted(deleted_ids)
        return result

    def upsert_lines(
        self,
        merchant_id: str,
        invoice_id: str,
        lines: List[LedgerLine],
        order_id: Optional[str] = None,
        invoice_status: Optional[str] = None,
    ) -> int:
        merged = merge_lines(lines)
        now = datetime.utcnow().isoformat()

        with self._transaction("upsert_lines") as conn:
            # Lines removed from the order since the last pass must disappear
            conn.execute(
                "DELETE FROM committed_inventory WHERE merchant_id = ? AND invoice_id = ?",
                (merchant_id, invoice_id),
            )
            conn.executemany(
                """
                INSERT INTO committed_inventory
                    (merchant_id, invoice_id, order_id, catalog_object_id,
                     location_id, quantity, invoice_status, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (merchant_id, invoice_id, catalog_object_id, location_id)
                DO UPDATE SET
                    quantity = excluded.quantity,
                    order_id = excluded.order_id,
                    invoice_status = excluded.invoice_status,
                    updated_at = excluded.updated_at
                """,
                [
                    (merchant_id, invoice_id, order_id, catalog_object_id,
                     location_id, quantity, invoice_status, now)
                    for (catalog_object_id, location_id), quantity in merged.items()
                ],
            )
        return len(lines)

    def rebuild_aggregate(self, merchant_id: str) -> int:
        with self._transaction("rebuild_aggregate") as conn:
            conn.execute(
                "DELETE FROM reserved_inventory WHERE merchant_id = ?",
                (merchant_id,),
            )
            return self._insert_aggregate_rows(conn, merchant_id)

    def _insert_aggregate_rows(self, conn: sqlite3.Connection, merchant_id: str) -> int:
        cursor = conn.execute(
            """
            INSERT INTO reserved_inventory
                (merchant_id, catalog_object_id, location_id, quantity, updated_at)
            SELECT merchant_id, catalog_object_id, location_id, SUM(quantity), ?
            FROM committed_inventory
            WHERE merchant_id = ?
            GROUP BY merchant_id, catalog_object_id, location_id
            """,
            (datetime.utcnow().isoformat(), merchant_id),
        )
        return cursor.rowcount

    # =========================================================================
    # Reads
    # =========================================================================

    def list_lines(self, merchant_id: str) -> List[CommittedLine]:
        with self._reader("list_lines") as conn:
            rows = conn.execute(
                """
                SELECT merchant_id, invoice_id, order_id, catalog_object_id,
                       location_id, quantity, invoice_status, updated_at
                FROM committed_inventory
                WHERE merchant_id = ?
                ORDER BY invoice_id, catalog_object_id, location_id
                """,
                (merchant_id,),
            ).fetchall()
            return [_row_to_committed_line(row) for row in rows]

    def list_aggregates(self, merchant_id: str) -> List[ReservedAggregate]:
        with self._reader("list_aggregates") as conn:
            rows = conn.execute(
                """
                SELECT merchant_id, catalog_object_id, location_id, quantity
                FROM reserved_inventory
                WHERE merchant_id = ?
                ORDER BY catalog_object_id, location_id
                """,
                (merchant_id,),
            ).fetchall()
            return [
                ReservedAggregate(
                    merchant_id=row["merchant_id"],
                    catalog_object_id=row["catalog_object_id"],
                    location_id=row["location_id"],
                    quantity=row["quantity"],
                )
                for row in rows
            ]


def _row_to_committed_line(row: sqlite3.Row) -> CommittedLine:
    """Convert a database row to CommittedLine."""
    return CommittedLine(
        merchant_id=row["merchant_id"],
        invoice_id=row["invoice_id"],
        order_id=row["order_id"],
        catalog_object_id=row["catalog_object_id"],
        location_id=row["location_id"],
        quantity=row["quantity"],
        invoice_status=row["invoice_status"],
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )
