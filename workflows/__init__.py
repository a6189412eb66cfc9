"""Workflow definitions module."""

from workflows.committed_inventory_workflow import (
    CommittedInventoryReconciliationWorkflow,
    CommittedInventorySweepWorkflow,
    InvoiceChangeWorkflow,
    SweepInput,
    SweepOutput,
    TASK_QUEUE,
    merchant_workflow_id,
)

__all__ = [
    "CommittedInventoryReconciliationWorkflow",
    "CommittedInventorySweepWorkflow",
    "InvoiceChangeWorkflow",
    "SweepInput",
    "SweepOutput",
    "TASK_QUEUE",
    "merchant_workflow_id",
]
