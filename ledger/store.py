"""Ledger Store Interface and In-Memory Backend.

The reconciler talks to the ledger only through these fixed, parameterised
operations; it never builds query text itself. Backends:
- InMemoryLedgerStore: For development/testing
- SQLiteLedgerStore (ledger.db): For single-server deployments
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from ledger.models import (
    AggregateKey,
    CommittedLine,
    DeleteResult,
    LedgerLine,
    ReservedAggregate,
    merge_lines,
)


class StoreFailure(Exception):
    """A ledger or aggregate operation failed. Always propagated."""
    pass


class LedgerStore(ABC):
    """Abstract base class for the committed inventory ledger and its aggregate."""

    # --- snapshot ---

    @abstractmethod
    def count_rows(self, merchant_id: str) -> int:
        """Number of ledger rows for the merchant."""
        pass

    @abstractmethod
    def list_distinct_invoice_ids(self, merchant_id: str) -> List[str]:
        """Invoice IDs that currently hold at least one ledger row."""
        pass

    # --- mutation ---

    @abstractmethod
    def delete_rows_for_invoices(self, merchant_id: str, invoice_ids: Iterable[str]) -> DeleteResult:
        """Delete every row belonging to the given invoices in one bulk operation."""
        pass

    @abstractmethod
    def upsert_lines(
        self,
        merchant_id: str,
        invoice_id: str,
        lines: List[LedgerLine],
        order_id: Optional[str] = None,
        invoice_status: Optional[str] = None,
    ) -> int:
        """Replace the invoice's rows with `lines`. Returns lines written.

        Idempotent: writing the same lines twice leaves the same row set.
        """
        pass

    @abstractmethod
    def rebuild_aggregate(self, merchant_id: str) -> int:
        """Atomically recompute the merchant's reserved aggregate from the ledger.

        Returns the number of aggregate rows written.
        """
        pass

    # --- reads ---

    @abstractmethod
    def list_lines(self, merchant_id: str) -> List[CommittedLine]:
        """All ledger rows for the merchant."""
        pass

    @abstractmethod
    def list_aggregates(self, merchant_id: str) -> List[ReservedAggregate]:
        """All aggregate rows for the merchant."""
        pass

    def get_aggregate(self, merchant_id: str) -> Dict[AggregateKey, int]:
        """Aggregate as a {(catalog_object_id, location_id): quantity} map."""
        return {
            (agg.catalog_object_id, agg.location_id): agg.quantity
            for agg in self.list_aggregates(merchant_id)
        }


class InMemoryLedgerStore(LedgerStore):
    """In-memory ledger for development/testing.

    WARNING: Data is lost on restart. Use only for development.
    """

    def __init__(self):
        self._lines: Dict[str, Dict[Tuple[str, str, str], CommittedLine]] = {}
        self._aggregates: Dict[str, Dict[AggregateKey, int]] = {}
        self._lock = threading.Lock()

    def count_rows(self, merchant_id: str) -> int:
        with self._lock:
            return len(self._lines.get(merchant_id, {}))

    def list_distinct_invoice_ids(self, merchant_id: str) -> List[str]:
        with self._lock:
            rows = self._lines.get(merchant_id, {})
            return sorted({invoice_id for invoice_id, _, _ in rows})

    def delete_rows_for_invoices(self, merchant_id: str, invoice_ids: Iterable[str]) -> DeleteResult:
        targets = set(invoice_ids)
        result = DeleteResult()
        if not targets:
            return result

        with self._lock:
            rows = self._lines.get(merchant_id, {})
            doomed = [key for key in rows if key[0] in targets]
            for key in doomed:
                del rows[key]
            result.rows_deleted = len(doomed)
            result.deleted_invoice_ids = sorted({key[0] for key in doomed})
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
        now = datetime.utcnow()

        with self._lock:
            rows = self._lines.setdefault(merchant_id, {})
            for key in [k for k in rows if k[0] == invoice_id]:
                del rows[key]
            for (catalog_object_id, location_id), quantity in merged.items():
                rows[(invoice_id, catalog_object_id, location_id)] = CommittedLine(
                    merchant_id=merchant_id,
                    invoice_id=invoice_id,
                    catalog_object_id=catalog_object_id,
                    location_id=location_id,
                    quantity=quantity,
                    order_id=order_id,
                    invoice_status=invoice_status,
                    updated_at=now,
                )
        return len(lines)

    def rebuild_aggregate(self, merchant_id: str) -> int:
        with self._lock:
            totals: Dict[AggregateKey, int] = {}
            for line in self._lines.get(merchant_id, {}).values():
                key = (line.catalog_object_id, line.location_id)
                totals[key] = totals.get(key, 0) + line.quantity
            # Swap in one assignment so readers never see a half-built aggregate
            self._aggregates[merchant_id] = totals
            return len(totals)

    def list_lines(self, merchant_id: str) -> List[CommittedLine]:
        with self._lock:
            return sorted(self._lines.get(merchant_id, {}).values(), key=lambda l: l.key)

    def list_aggregates(self, merchant_id: str) -> List[ReservedAggregate]:
        with self._lock:
            return [
                ReservedAggregate(
                    merchant_id=merchant_id,
                    catalog_object_id=catalog_object_id,
                    location_id=location_id,
                    quantity=quantity,
                )
                for (catalog_object_id, location_id), quantity in sorted(
                    self._aggregates.get(merchant_id, {}).items()
                )
            ]
