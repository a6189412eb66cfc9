"""Invoice Connectors - Pluggable remote invoicing integrations.

This package contains the abstract invoice source interface and concrete
implementations for specific invoicing systems (Square).

Key Design Principle:
- The reconciler and Temporal activities depend ONLY on the InvoiceSource interface
- All methods return NORMALIZED types (InvoiceSummary, OrderLine, ...)
- No Square-specific types should leak through the interface
"""

from connectors.invoice_base import (
    # Core interface
    InvoiceSource,
    # Normalized types
    InvoicePage,
    InvoiceSummary,
    OrderLine,
    InvoiceStatusClass,
    OPEN_INVOICE_STATUSES,
    TERMINAL_INVOICE_STATUSES,
    classify_invoice_status,
    # Errors
    InvoiceSourceError,
    PermissionDenied,
    RemoteFailure,
    PaginationLimitExceeded,
)

__all__ = [
    "InvoiceSource",
    "InvoicePage",
    "InvoiceSummary",
    "OrderLine",
    "InvoiceStatusClass",
    "OPEN_INVOICE_STATUSES",
    "TERMINAL_INVOICE_STATUSES",
    "classify_invoice_status",
    "InvoiceSourceError",
    "PermissionDenied",
    "RemoteFailure",
    "PaginationLimitExceeded",
]
