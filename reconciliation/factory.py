"""Reconciler factory.

Wires the Square invoice source, the SQLite ledger and the environment
configuration into a ready-to-use CommittedInventoryReconciler. Shared by the
Temporal worker and the command-line runner.
"""

from typing import Optional

from connectors.square import SquareApiClient, SquareInvoiceSource
from core.config import ReconciliationConfig, square_api_config_from_env
from core.observability.logging import get_logger
from core.observability.metrics import MetricsCollector
from core.security.credentials import CredentialProvider, EnvCredentialProvider
from ledger.db import SQLiteLedgerStore
from reconciliation.engine import CommittedInventoryReconciler

logger = get_logger(__name__)


async def build_square_reconciler(
    config: Optional[ReconciliationConfig] = None,
    credentials: Optional[CredentialProvider] = None,
    metrics: Optional[MetricsCollector] = None,
) -> CommittedInventoryReconciler:
    """Create a reconciler backed by Square and a SQLite ledger.

    The returned reconciler owns an open HTTP session; call
    `await reconciler.close()` when done.
    """
    if config is None:
        config = ReconciliationConfig.from_env()
    api_config = square_api_config_from_env()

    if credentials is None:
        credentials = EnvCredentialProvider()
    client = SquareApiClient(credentials, api_config)
    await client.connect()

    source = SquareInvoiceSource(client, search_limit=config.search_page_limit)
    store = SQLiteLedgerStore(config.ledger_db_path)

    if metrics is None:
        metrics = MetricsCollector.instance()
    if config.metrics_db_path is not None:
        metrics.enable_persistence(config.metrics_db_path)

    logger.info(
        "Reconciler ready",
        extra_fields={
            "source": source.describe(),
            "ledger_db_path": str(config.ledger_db_path),
            "location_concurrency": config.location_concurrency,
        },
    )
    return CommittedInventoryReconciler(source, store, config=config, metrics=metrics)
