"""Reconciliation Result Models.

- ReconciliationResult: Metrics of one full pass for one merchant
- InvoiceChangeResult: Outcome of applying a single invoice change
- ScopeDenial: Cached marker that the merchant denied invoice access
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ReconciliationValidationError(ValueError):
    """Input to the reconciler is unusable (e.g. missing merchant id). Never retried."""
    pass


class ReconciliationResult(BaseModel):
    """Metrics of one reconciliation pass.

    Attributes:
        merchant_id: Tenant the pass ran for
        invoices_fetched: Invoices returned by search, across all pages/locations
        status_counts: Invoices per raw remote status
        open_invoices: Distinct invoices classified OPEN
        invoices_processed: Open invoices whose order lines were fetched
        invoices_without_order: Open invoices with no linked order
        line_items_upserted: Order lines written to the ledger
        rows_before: Ledger rows at snapshot time
        rows_deleted: Rows removed by stale cleanup
        rows_remaining: rows_before - rows_deleted
        deleted_invoice_ids: Invoices whose reservation was released
        skipped: True when the pass made no remote calls or stopped on a permission denial
        reason: Why the pass was skipped or short-circuited
        duration_ms: Wall time of the pass
    """
    merchant_id: str
    invoices_fetched: int = 0
    status_counts: Dict[str, int] = Field(default_factory=dict)
    open_invoices: int = 0
    invoices_processed: int = 0
    invoices_without_order: int = 0
    line_items_upserted: int = 0
    rows_before: int = 0
    rows_deleted: int = 0
    rows_remaining: int = 0
    deleted_invoice_ids: List[str] = Field(default_factory=list)
    skipped: bool = False
    reason: Optional[str] = None
    duration_ms: float = 0.0

    @classmethod
    def skipped_result(cls, merchant_id: str, reason: str) -> "ReconciliationResult":
        return cls(merchant_id=merchant_id, skipped=True, reason=reason)

    @property
    def made_no_progress(self) -> bool:
        """Existing rows, none deleted: the anomaly monitor's trigger."""
        return self.rows_before > 0 and self.rows_deleted == 0

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class InvoiceChangeAction(str, Enum):
    """What apply_invoice_change did to the ledger."""
    UPSERTED = "upserted"
    REMOVED = "removed"
    SKIPPED = "skipped"


class InvoiceChangeResult(BaseModel):
    """Outcome of applying one invoice change event."""
    merchant_id: str
    invoice_id: str
    action: InvoiceChangeAction
    status: Optional[str] = None
    order_id: Optional[str] = None
    rows_written: int = 0
    rows_removed: int = 0
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class ScopeDenial(BaseModel):
    """Marker that a merchant's last attempt was permission-denied."""
    merchant_id: str
    reason: str
    recorded_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        frozen = True
