"""Abstract Invoice Source Interface.

This module defines the read-only interface the reconciliation engine uses to
observe the remote invoicing system of record. It is intentionally
provider-agnostic - no Square specifics here.

Sources implement this interface to:
1. List the merchant's active locations
2. Page through invoice search results per location
3. Look up a single invoice (to recover a missing order id)
4. Fetch the order lines an invoice reserves

Key Design Principles:
- All methods return NORMALIZED objects (InvoiceSummary, OrderLine) - not
  provider-specific payloads
- The reconciler, Temporal activities and scripts depend ONLY on this interface
- Provider-specific implementations live in connector subfolders
- Every method may raise PermissionDenied or RemoteFailure, nothing else
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Errors
# =============================================================================

class InvoiceSourceError(Exception):
    """Base exception for invoice source errors."""
    def __init__(self, message: str, status_code: int = 0, response_body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class PermissionDenied(InvoiceSourceError):
    """The merchant has not granted the permission needed to read invoices.

    This is expected tenant state, not an outage. The reconciler caches it
    and skips the merchant until the denial is invalidated.
    """
    pass


class RemoteFailure(InvoiceSourceError):
    """Any other remote or network failure. Never recovered locally."""
    pass


class PaginationLimitExceeded(RemoteFailure):
    """Invoice search kept returning cursors past the page budget."""
    pass


# =============================================================================
# Status classification
# =============================================================================

class InvoiceStatusClass(str, Enum):
    """Whether an invoice still holds stock."""
    OPEN = "OPEN"
    TERMINAL = "TERMINAL"


OPEN_INVOICE_STATUSES = frozenset({
    "DRAFT",
    "UNPAID",
    "SCHEDULED",
    "PARTIALLY_PAID",
})

TERMINAL_INVOICE_STATUSES = frozenset({
    "PAID",
    "CANCELED",
    "REFUNDED",
    "PARTIALLY_REFUNDED",
    "FAILED",
})


def classify_invoice_status(status: Optional[str]) -> InvoiceStatusClass:
    """Classify a raw remote status.

    Only the known terminal statuses release a reservation. Anything else,
    including statuses this code has never seen, is treated as OPEN so a
    hold is never dropped silently.
    """
    if status and status.strip().upper() in TERMINAL_INVOICE_STATUSES:
        return InvoiceStatusClass.TERMINAL
    return InvoiceStatusClass.OPEN


# =============================================================================
# Normalized Models
# =============================================================================

class InvoiceSummary(BaseModel):
    """One invoice as seen in search results or a detail lookup."""
    id: str = Field(..., description="Remote invoice ID")
    status: Optional[str] = Field(default=None, description="Raw remote status")
    location_id: Optional[str] = Field(default=None, description="Location the invoice belongs to")
    order_id: Optional[str] = Field(default=None, description="Linked order ID, if present")

    class Config:
        frozen = True

    @property
    def status_class(self) -> InvoiceStatusClass:
        return classify_invoice_status(self.status)

    @property
    def is_open(self) -> bool:
        return self.status_class == InvoiceStatusClass.OPEN


class InvoicePage(BaseModel):
    """A single page of invoice search results."""
    invoices: List[InvoiceSummary] = Field(default_factory=list)
    next_cursor: Optional[str] = Field(default=None, description="Cursor for the next page; empty when exhausted")


class OrderLine(BaseModel):
    """One line of the order linked to an invoice."""
    catalog_object_id: Optional[str] = Field(default=None, description="Catalog variation ID")
    quantity: int = Field(default=0, description="Ordered quantity (0 for voided lines)")
    location_id: Optional[str] = Field(default=None, description="Location the line is fulfilled from")
    name: Optional[str] = Field(default=None, description="Line display name")

    class Config:
        frozen = True


# =============================================================================
# Abstract Invoice Source
# =============================================================================

class InvoiceSource(ABC):
    """Read-only view of the remote invoicing system.

    Implementations must map their transport errors onto PermissionDenied
    (missing grant) and RemoteFailure (everything else, timeouts included).
    """

    source_name: str = "abstract"

    @abstractmethod
    async def list_active_locations(self, merchant_id: str) -> List[str]:
        """Return IDs of the merchant's active locations."""
        pass

    @abstractmethod
    async def search_invoices(
        self,
        merchant_id: str,
        location_id: str,
        cursor: Optional[str] = None,
    ) -> InvoicePage:
        """Return one page of invoices for a location."""
        pass

    @abstractmethod
    async def get_invoice_detail(self, merchant_id: str, invoice_id: str) -> InvoiceSummary:
        """Return the full invoice, used when a summary lacks its order id."""
        pass

    @abstractmethod
    async def get_order_lines(self, merchant_id: str, order_id: str) -> List[OrderLine]:
        """Return the lines of an order."""
        pass

    async def close(self) -> None:
        """Release transport resources. Default: nothing to release."""
        return None

    def describe(self) -> Dict[str, Any]:
        return {"source": self.source_name}
