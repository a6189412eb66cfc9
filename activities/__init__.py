"""Activity definitions module."""

from activities.reconcile import (
    ReconciliationActivities,
    ReconcileMerchantInput,
    InvoiceChangeInput,
)

__all__ = [
    "ReconciliationActivities",
    "ReconcileMerchantInput",
    "InvoiceChangeInput",
]
