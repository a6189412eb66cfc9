"""Committed Inventory Ledger.

Durable per-invoice-line reservation rows plus the derived reserved-for-sale
aggregate. Backends share the LedgerStore interface:

    from ledger import SQLiteLedgerStore

    store = SQLiteLedgerStore("committed_inventory.db")
    store.upsert_lines("M-001", "inv-1", [LedgerLine(catalog_object_id="var-1", location_id="L1", quantity=3)])
    store.rebuild_aggregate("M-001")
"""

from ledger.models import (
    AggregateKey,
    CommittedLine,
    DeleteResult,
    LedgerLine,
    ReservedAggregate,
    merge_lines,
)
from ledger.store import InMemoryLedgerStore, LedgerStore, StoreFailure
from ledger.db import SQLiteLedgerStore, init_ledger_db

__all__ = [
    # Models
    "AggregateKey",
    "CommittedLine",
    "DeleteResult",
    "LedgerLine",
    "ReservedAggregate",
    "merge_lines",
    # Stores
    "LedgerStore",
    "InMemoryLedgerStore",
    "SQLiteLedgerStore",
    "StoreFailure",
    "init_ledger_db",
]
