"""Worker for committed inventory reconciliation.

Connects to Temporal, listens on the inventory-reconciliation task queue and
executes the reconciliation workflows/activities. One reconciler (and so one
scope denial cache and anomaly monitor) is shared by every activity the
worker runs.

Run with --json-logs for structured log output.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from temporalio.worker import Worker

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from temporal_client import get_temporal_client
from activities.reconcile import ReconciliationActivities
from core.config import ReconciliationConfig
from core.observability.logging import configure_logging
from reconciliation.factory import build_square_reconciler
from workflows.committed_inventory_workflow import (
    TASK_QUEUE,
    CommittedInventoryReconciliationWorkflow,
    CommittedInventorySweepWorkflow,
    InvoiceChangeWorkflow,
)


logger = logging.getLogger(__name__)

WORKFLOWS = [
    CommittedInventoryReconciliationWorkflow,
    CommittedInventorySweepWorkflow,
    InvoiceChangeWorkflow,
]


async def run_worker(task_queue: str = TASK_QUEUE):
    """Start worker listening on the task queue.

    Args:
        task_queue: Queue to poll (default: inventory-reconciliation)

    Raises:
        Exception: If connection to Temporal fails
    """
    client = None
    reconciler = None

    try:
        config = ReconciliationConfig.from_env()
        reconciler = await build_square_reconciler(config)
        activities = ReconciliationActivities(reconciler)

        # Connect to Temporal
        client = await get_temporal_client()
        logger.info(f"Connected to Temporal: {client.namespace}")

        worker = Worker(
            client,
            task_queue=task_queue,
            workflows=WORKFLOWS,
            activities=[
                activities.reconcile_committed_inventory,
                activities.apply_invoice_change,
            ],
        )

        logger.info(f"Worker created for queue '{task_queue}':")
        logger.info(f"  - Workflows: {len(WORKFLOWS)}")
        logger.info(f"  - Ledger: {config.ledger_db_path}")

        logger.info("Worker running... (Ctrl+C to stop)")
        await worker.run()

    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    except Exception as e:
        logger.error(f"Worker error: {e}", exc_info=True)
        raise
    finally:
        if reconciler is not None:
            await reconciler.close()
        logger.info("Worker stopped")


def main():
    """Entry point for worker with CLI args."""
    parser = argparse.ArgumentParser(description="Committed Inventory Reconciliation Worker")
    parser.add_argument(
        "--queue", "-q",
        default=TASK_QUEUE,
        help=f"Task queue to poll (default: {TASK_QUEUE})"
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit structured JSON logs"
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)"
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        help="Also append logs to this file"
    )

    args = parser.parse_args()
    configure_logging(level=args.log_level, json_format=args.json_logs, log_file=args.log_file)
    asyncio.run(run_worker(task_queue=args.queue))


if __name__ == "__main__":
    main()
