"""
Shared fixtures and fakes for the reconciliation tests.

FakeInvoiceSource serves scripted invoice pages, details and orders, and can
be told to fail per location. RecordingLedgerStore is an InMemoryLedgerStore
that records every mutating call so tests can assert "no mutation".
"""

from typing import Dict, List, Optional

import pytest

from connectors.invoice_base import (
    InvoicePage,
    InvoiceSource,
    InvoiceSummary,
    OrderLine,
)
from core.config import ReconciliationConfig
from core.observability.metrics import MetricsCollector
from ledger.models import LedgerLine
from ledger.store import InMemoryLedgerStore
from reconciliation.engine import CommittedInventoryReconciler


MERCHANT = "M-001"


class FakeInvoiceSource(InvoiceSource):
    """Scripted invoice source.

    Args:
        locations: Active location IDs
        invoices: Invoices per location; split into pages of `page_size`
        orders: Order lines per order ID
        details: Invoice detail overrides per invoice ID
        page_size: Invoices per search page
    """

    source_name = "fake"

    def __init__(
        self,
        locations: Optional[List[str]] = None,
        invoices: Optional[Dict[str, List[InvoiceSummary]]] = None,
        orders: Optional[Dict[str, List[OrderLine]]] = None,
        details: Optional[Dict[str, InvoiceSummary]] = None,
        page_size: int = 200,
    ):
        self.locations = list(locations or [])
        self.invoices = dict(invoices or {})
        self.orders = dict(orders or {})
        self.details = dict(details or {})
        self.page_size = page_size

        self.location_errors: Dict[str, Exception] = {}
        self.locations_error: Optional[Exception] = None
        self.order_errors: Dict[str, Exception] = {}
        self.detail_errors: Dict[str, Exception] = {}
        # location_id -> cursor to return forever (pagination fault injection)
        self.stuck_cursors: Dict[str, str] = {}

        self.search_calls: List[tuple] = []
        self.detail_calls: List[str] = []
        self.order_calls: List[str] = []
        self.closed = False

    async def list_active_locations(self, merchant_id: str) -> List[str]:
        if self.locations_error is not None:
            raise self.locations_error
        return list(self.locations)

    async def search_invoices(self, merchant_id: str, location_id: str, cursor: Optional[str] = None) -> InvoicePage:
        self.search_calls.append((location_id, cursor))
        if location_id in self.location_errors:
            raise self.location_errors[location_id]
        if location_id in self.stuck_cursors:
            return InvoicePage(invoices=[], next_cursor=self.stuck_cursors[location_id])

        invoices = self.invoices.get(location_id, [])
        start = int(cursor) if cursor else 0
        end = start + self.page_size
        next_cursor = str(end) if end < len(invoices) else None
        return InvoicePage(invoices=invoices[start:end], next_cursor=next_cursor)

    async def get_invoice_detail(self, merchant_id: str, invoice_id: str) -> InvoiceSummary:
        self.detail_calls.append(invoice_id)
        if invoice_id in self.detail_errors:
            raise self.detail_errors[invoice_id]
        if invoice_id in self.details:
            return self.details[invoice_id]
        for location_invoices in self.invoices.values():
            for invoice in location_invoices:
                if invoice.id == invoice_id:
                    return invoice
        return InvoiceSummary(id=invoice_id)

    async def get_order_lines(self, merchant_id: str, order_id: str) -> List[OrderLine]:
        self.order_calls.append(order_id)
        if order_id in self.order_errors:
            raise self.order_errors[order_id]
        return list(self.orders.get(order_id, []))

    async def close(self) -> None:
        self.closed = True


class RecordingLedgerStore(InMemoryLedgerStore):
    """InMemoryLedgerStore that records mutating calls."""

    def __init__(self):
        super().__init__()
        self.mutations: List[tuple] = []

    def delete_rows_for_invoices(self, merchant_id, invoice_ids):
        invoice_ids = list(invoice_ids)
        self.mutations.append(("delete", merchant_id, sorted(invoice_ids)))
        return super().delete_rows_for_invoices(merchant_id, invoice_ids)

    def upsert_lines(self, merchant_id, invoice_id, lines, order_id=None, invoice_status=None):
        self.mutations.append(("upsert", merchant_id, invoice_id))
        return super().upsert_lines(merchant_id, invoice_id, lines, order_id=order_id, invoice_status=invoice_status)

    def rebuild_aggregate(self, merchant_id):
        self.mutations.append(("rebuild", merchant_id))
        return super().rebuild_aggregate(merchant_id)

    def seed(self, merchant_id: str, invoice_id: str, lines: List[LedgerLine]) -> None:
        """Write rows and the aggregate without recording them."""
        InMemoryLedgerStore.upsert_lines(self, merchant_id, invoice_id, lines)
        InMemoryLedgerStore.rebuild_aggregate(self, merchant_id)


def invoice(
    invoice_id: str,
    status: Optional[str],
    location_id: Optional[str] = "L1",
    with_order: bool = True,
) -> InvoiceSummary:
    """Invoice linked to order `order-<invoice_id>` unless with_order is False."""
    return InvoiceSummary(
        id=invoice_id,
        status=status,
        location_id=location_id,
        order_id=f"order-{invoice_id}" if with_order else None,
    )


def line(catalog_object_id: Optional[str], quantity: int, location_id: Optional[str] = None) -> OrderLine:
    return OrderLine(catalog_object_id=catalog_object_id, quantity=quantity, location_id=location_id)


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def store():
    return RecordingLedgerStore()


@pytest.fixture
def source():
    return FakeInvoiceSource(locations=["L1"])


@pytest.fixture
def reconciler(source, store, metrics):
    return CommittedInventoryReconciler(
        source,
        store,
        config=ReconciliationConfig(location_concurrency=2, max_pages_per_location=20),
        metrics=metrics,
    )
