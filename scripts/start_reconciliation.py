"""Start committed inventory workflows on Temporal.

Starts a CommittedInventoryReconciliationWorkflow for one merchant, or a
CommittedInventorySweepWorkflow over several, and prints the result.

Usage:
    python scripts/start_reconciliation.py M-001
    python scripts/start_reconciliation.py M-001 M-002 M-003 --sweep
"""

import argparse
import asyncio
import json
import logging
import sys
import uuid
from dataclasses import asdict
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from temporal_client import get_temporal_client
from activities.reconcile import ReconcileMerchantInput
from workflows.committed_inventory_workflow import (
    TASK_QUEUE,
    WORKFLOW_ID_PREFIX,
    CommittedInventoryReconciliationWorkflow,
    CommittedInventorySweepWorkflow,
    SweepInput,
    merchant_workflow_id,
)


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def start_reconciliation(merchant_ids, sweep: bool = False) -> dict:
    """Start the workflow and wait for its result."""
    client = await get_temporal_client()
    logger.info(f"Connected to Temporal: {client.namespace}")

    if sweep:
        workflow_id = f"{WORKFLOW_ID_PREFIX}sweep-{uuid.uuid4().hex[:8]}"
        handle = await client.start_workflow(
            CommittedInventorySweepWorkflow.run,
            SweepInput(merchant_ids=list(merchant_ids)),
            task_queue=TASK_QUEUE,
            id=workflow_id,
        )
    else:
        handle = await client.start_workflow(
            CommittedInventoryReconciliationWorkflow.run,
            ReconcileMerchantInput(merchant_id=merchant_ids[0]),
            task_queue=TASK_QUEUE,
            id=merchant_workflow_id(merchant_ids[0]),
        )

    logger.info(f"Workflow started: {handle.id}")
    result = await handle.result()
    return asdict(result) if sweep else result


def main():
    parser = argparse.ArgumentParser(description="Start committed inventory reconciliation workflows")
    parser.add_argument("merchant_ids", nargs="+", help="Merchant(s) to reconcile")
    parser.add_argument("--sweep", action="store_true", help="Run a sweep over all given merchants")
    args = parser.parse_args()

    if len(args.merchant_ids) > 1 and not args.sweep:
        parser.error("multiple merchants require --sweep")

    result = asyncio.run(start_reconciliation(args.merchant_ids, sweep=args.sweep))
    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
