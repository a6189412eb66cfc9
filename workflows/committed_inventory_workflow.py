"""
Committed Inventory Workflows

- CommittedInventoryReconciliationWorkflow: one reconciliation pass for one merchant
- CommittedInventorySweepWorkflow: the periodic safety net, one pass per merchant
- InvoiceChangeWorkflow: apply a single invoice status change

Per-merchant passes run under the workflow id `committed-inventory-<merchant>`,
so Temporal rejects a second concurrent pass for the same merchant.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ChildWorkflowError, WorkflowAlreadyStartedError

with workflow.unsafe.imports_passed_through():
    from activities.reconcile import (
        InvoiceChangeInput,
        ReconcileMerchantInput,
        ReconciliationActivities,
    )


# =============================================================================
# Configuration
# =============================================================================

TASK_QUEUE = "inventory-reconciliation"
WORKFLOW_ID_PREFIX = "committed-inventory-"

# Don't retry errors that won't self-heal
NON_RETRYABLE_ERROR_TYPES = [
    "ReconciliationValidationError",
    "MissingCredentialError",
    "SquareAuthenticationError",
    "SquareValidationError",
]

RECONCILE_ACTIVITY_OPTIONS = {
    "start_to_close_timeout": timedelta(minutes=15),
    "retry_policy": RetryPolicy(
        maximum_attempts=3,
        initial_interval=timedelta(seconds=30),
        maximum_interval=timedelta(minutes=5),
        backoff_coefficient=2.0,
        non_retryable_error_types=NON_RETRYABLE_ERROR_TYPES,
    ),
}

INVOICE_CHANGE_ACTIVITY_OPTIONS = {
    "start_to_close_timeout": timedelta(minutes=2),
    "retry_policy": RetryPolicy(
        maximum_attempts=5,
        initial_interval=timedelta(seconds=2),
        maximum_interval=timedelta(minutes=1),
        backoff_coefficient=2.0,
        non_retryable_error_types=NON_RETRYABLE_ERROR_TYPES,
    ),
}


def merchant_workflow_id(merchant_id: str) -> str:
    """Workflow id that serializes passes for one merchant."""
    return f"{WORKFLOW_ID_PREFIX}{merchant_id}"


# =============================================================================
# Workflow Input/Output
# =============================================================================

@dataclass
class SweepInput:
    """Input for the sweep workflow.

    Attributes:
        merchant_ids: Merchants to reconcile, in order
    """
    merchant_ids: List[str]


@dataclass
class SweepOutput:
    """Summary of a sweep across merchants."""
    merchants: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    results: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)


# =============================================================================
# Workflows
# =============================================================================

@workflow.defn
class CommittedInventoryReconciliationWorkflow:
    """Run one committed inventory reconciliation pass for a merchant."""

    @workflow.run
    async def run(self, input: ReconcileMerchantInput) -> Dict[str, Any]:
        workflow.logger.info(f"Starting committed inventory reconciliation for {input.merchant_id}")

        result = await workflow.execute_activity_method(
            ReconciliationActivities.reconcile_committed_inventory,
            input,
            **RECONCILE_ACTIVITY_OPTIONS,
        )

        if result.get("skipped"):
            workflow.logger.info(f"Merchant {input.merchant_id} skipped: {result.get('reason')}")
        else:
            workflow.logger.info(
                f"Merchant {input.merchant_id} reconciled: "
                f"{result.get('rows_deleted', 0)} rows deleted, "
                f"{result.get('line_items_upserted', 0)} lines upserted"
            )
        return result


@workflow.defn
class CommittedInventorySweepWorkflow:
    """
    Reconcile every merchant in turn.

    A failure for one merchant is recorded in the summary and the sweep
    continues with the next merchant.
    """

    @workflow.run
    async def run(self, input: SweepInput) -> SweepOutput:
        output = SweepOutput(merchants=len(input.merchant_ids))
        workflow.logger.info(f"Starting committed inventory sweep over {output.merchants} merchants")

        for merchant_id in input.merchant_ids:
            try:
                result = await workflow.execute_child_workflow(
                    CommittedInventoryReconciliationWorkflow.run,
                    ReconcileMerchantInput(merchant_id=merchant_id),
                    id=merchant_workflow_id(merchant_id),
                    task_queue=workflow.info().task_queue,
                )
            except (ChildWorkflowError, WorkflowAlreadyStartedError) as e:
                output.failed += 1
                output.errors[merchant_id] = str(e.cause) if getattr(e, "cause", None) else str(e)
                workflow.logger.warning(f"Reconciliation failed for merchant {merchant_id}: {e}")
                continue

            output.results[merchant_id] = result
            if result.get("skipped"):
                output.skipped += 1
            else:
                output.succeeded += 1

        workflow.logger.info(
            f"Sweep complete: {output.succeeded} succeeded, "
            f"{output.skipped} skipped, {output.failed} failed"
        )
        return output


@workflow.defn
class InvoiceChangeWorkflow:
    """Apply one invoice status change (e.g. from a webhook) to the ledger."""

    @workflow.run
    async def run(self, input: InvoiceChangeInput) -> Dict[str, Any]:
        workflow.logger.info(f"Applying invoice change {input.invoice_id} ({input.status})")
        return await workflow.execute_activity_method(
            ReconciliationActivities.apply_invoice_change,
            input,
            **INVOICE_CHANGE_ACTIVITY_OPTIONS,
        )
