"""Committed Inventory Reconciliation.

Keeps a merchant's committed inventory ledger and reserved aggregate in step
with the remote invoice set.

    from reconciliation import CommittedInventoryReconciler

    reconciler = CommittedInventoryReconciler(source, store)
    result = await reconciler.reconcile("M-001")
"""

from reconciliation.models import (
    InvoiceChangeAction,
    InvoiceChangeResult,
    ReconciliationResult,
    ReconciliationValidationError,
    ScopeDenial,
)
from reconciliation.scope_denial import ScopeDenialCache
from reconciliation.anomaly import AnomalyMonitor
from reconciliation.engine import CommittedInventoryReconciler

__all__ = [
    # Engine
    "CommittedInventoryReconciler",
    # Results
    "ReconciliationResult",
    "InvoiceChangeResult",
    "InvoiceChangeAction",
    "ReconciliationValidationError",
    # Side state
    "ScopeDenial",
    "ScopeDenialCache",
    "AnomalyMonitor",
]
