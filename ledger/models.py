"""Ledger Data Models.

This module defines the models for the committed inventory ledger:
- LedgerLine: One line to reserve for an invoice (input to upsert)
- CommittedLine: A stored ledger row
- ReservedAggregate: A derived per-(catalog object, location) total
- DeleteResult: Outcome of a bulk stale-row delete
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field


AggregateKey = Tuple[str, str]  # (catalog_object_id, location_id)


class LedgerLine(BaseModel):
    """A resolved order line ready to be written to the ledger."""
    catalog_object_id: str = Field(..., description="Catalog variation ID")
    location_id: str = Field(..., description="Location the stock is held at")
    quantity: int = Field(default=0, description="Reserved quantity (0 allowed)")

    class Config:
        frozen = True

    @property
    def key(self) -> AggregateKey:
        return (self.catalog_object_id, self.location_id)


class CommittedLine(BaseModel):
    """One committed inventory row.

    Key: (merchant_id, invoice_id, catalog_object_id, location_id).
    Exists while its invoice is open; deleted once the invoice is observed
    terminal or absent.
    """
    merchant_id: str
    invoice_id: str
    catalog_object_id: str
    location_id: str
    quantity: int
    order_id: Optional[str] = None
    invoice_status: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        from_attributes = True

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.invoice_id, self.catalog_object_id, self.location_id)


class ReservedAggregate(BaseModel):
    """Derived reserved-for-sale quantity. Never written by hand."""
    merchant_id: str
    catalog_object_id: str
    location_id: str
    quantity: int

    class Config:
        from_attributes = True


@dataclass
class DeleteResult:
    """Outcome of deleting rows for a set of invoices."""
    rows_deleted: int = 0
    deleted_invoice_ids: List[str] = field(default_factory=list)


def merge_lines(lines: Iterable[LedgerLine]) -> Dict[AggregateKey, int]:
    """Collapse lines sharing a (catalog object, location) key by summing.

    An order may list the same variation twice; the ledger keeps one row per
    key. Insertion order is preserved.
    """
    merged: Dict[AggregateKey, int] = {}
    for line in lines:
        merged[line.key] = merged.get(line.key, 0) + line.quantity
    return merged
