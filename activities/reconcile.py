"""Committed inventory reconciliation activities.

Temporal activities wrapping CommittedInventoryReconciler. The activities are
methods on ReconciliationActivities so the worker can share one reconciler
(and its scope denial cache and anomaly monitor) across executions.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from temporalio import activity
from temporalio.exceptions import ApplicationError

from core.observability.logging import activity_correlation
from core.security.credentials import MissingCredentialError
from reconciliation.engine import CommittedInventoryReconciler
from reconciliation.models import ReconciliationValidationError


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class ReconcileMerchantInput:
    """Input for reconcile_committed_inventory activity.

    Attributes:
        merchant_id: Tenant to reconcile
    """
    merchant_id: str


@dataclass
class InvoiceChangeInput:
    """Input for apply_invoice_change activity.

    Attributes:
        merchant_id: Tenant the invoice belongs to
        invoice_id: Remote invoice ID
        status: New remote status (None if unknown)
        order_id: Linked order ID, if the event carried it
    """
    merchant_id: str
    invoice_id: str
    status: Optional[str] = None
    order_id: Optional[str] = None


def _non_retryable(error: Exception) -> ApplicationError:
    return ApplicationError(str(error), type=type(error).__name__, non_retryable=True)


# =============================================================================
# Activity Definitions
# =============================================================================

class ReconciliationActivities:
    """Activity implementations bound to one reconciler."""

    def __init__(self, reconciler: CommittedInventoryReconciler):
        self.reconciler = reconciler

    @activity.defn
    async def reconcile_committed_inventory(self, input: ReconcileMerchantInput) -> Dict[str, Any]:
        """Run one reconciliation pass for a merchant.

        Returns:
            ReconciliationResult as a dict

        Raises:
            ApplicationError: Non-retryable, for invalid input or a missing credential
        """
        activity.logger.info(f"Reconciling committed inventory for merchant {input.merchant_id}")

        with activity_correlation(activity.info()):
            try:
                result = await self.reconciler.reconcile(input.merchant_id)
            except (ReconciliationValidationError, MissingCredentialError) as e:
                activity.logger.error(f"Reconciliation rejected: {e}")
                raise _non_retryable(e) from e

        if result.skipped:
            activity.logger.info(f"Merchant {input.merchant_id} skipped: {result.reason}")
        else:
            activity.logger.info(
                f"Merchant {input.merchant_id}: {result.line_items_upserted} lines upserted, "
                f"{result.rows_deleted} rows deleted"
            )
        return result.to_dict()

    @activity.defn
    async def apply_invoice_change(self, input: InvoiceChangeInput) -> Dict[str, Any]:
        """Apply a single invoice status change to the ledger.

        Returns:
            InvoiceChangeResult as a dict
        """
        activity.logger.info(
            f"Applying invoice change {input.invoice_id} -> {input.status} for merchant {input.merchant_id}"
        )
        with activity_correlation(activity.info()):
            try:
                result = await self.reconciler.apply_invoice_change(
                    input.merchant_id,
                    input.invoice_id,
                    input.status,
                    order_id=input.order_id,
                )
            except (ReconciliationValidationError, MissingCredentialError) as e:
                raise _non_retryable(e) from e
        return result.to_dict()
