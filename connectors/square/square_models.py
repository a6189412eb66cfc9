"""Square data models.

These are Square-specific models that map to the Square API schema.
They are separate from the normalized models in connectors/invoice_base.py.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Square API Models
# =============================================================================

class SquareBaseModel(BaseModel):
    """Base model for Square API entities."""

    class Config:
        populate_by_name = True


class SquareError(SquareBaseModel):
    """One entry of a Square `errors` array."""
    category: Optional[str] = None
    code: Optional[str] = None
    detail: Optional[str] = None
    field: Optional[str] = None


class SquareLocation(SquareBaseModel):
    """Square Location.

    Maps to: /v2/locations
    """
    id: str
    name: Optional[str] = None
    status: Optional[str] = None  # "ACTIVE", "INACTIVE"
    merchant_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return (self.status or "").upper() == "ACTIVE"


class SquareInvoice(SquareBaseModel):
    """Square Invoice.

    Maps to: /v2/invoices/search, /v2/invoices/{id}
    """
    id: str
    version: Optional[int] = None
    location_id: Optional[str] = None
    order_id: Optional[str] = None
    status: Optional[str] = None  # "DRAFT", "UNPAID", "PAID", ...
    invoice_number: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    primary_recipient: Dict[str, Any] = Field(default_factory=dict)
    payment_requests: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def customer_id(self) -> Optional[str]:
        return self.primary_recipient.get("customer_id")

    @property
    def due_date(self) -> Optional[str]:
        if not self.payment_requests:
            return None
        return self.payment_requests[0].get("due_date")


class SquareLineItem(SquareBaseModel):
    """Square Order line item.

    Quantity is a decimal string in the API ("3", "1.5").
    """
    uid: Optional[str] = None
    name: Optional[str] = None
    catalog_object_id: Optional[str] = None
    quantity: Optional[str] = None
    variation_name: Optional[str] = None

    def quantity_as_int(self) -> int:
        """Whole units reserved by this line; unparseable quantities count as 0."""
        if self.quantity is None:
            return 0
        try:
            return int(Decimal(str(self.quantity)))
        except (InvalidOperation, ValueError, OverflowError):
            return 0

    def has_fractional_quantity(self) -> bool:
        """True when quantity_as_int() drops a fractional part ("1.5" -> 1)."""
        if self.quantity is None:
            return False
        try:
            value = Decimal(str(self.quantity))
        except (InvalidOperation, ValueError):
            return False
        return value.is_finite() and value != value.to_integral_value()


class SquareOrder(SquareBaseModel):
    """Square Order.

    Maps to: /v2/orders/{id}
    """
    id: str
    location_id: Optional[str] = None
    state: Optional[str] = None
    line_items: List[SquareLineItem] = Field(default_factory=list)


class SquareInvoiceSearchResponse(SquareBaseModel):
    """Response body of POST /v2/invoices/search."""
    invoices: List[SquareInvoice] = Field(default_factory=list)
    cursor: Optional[str] = None
