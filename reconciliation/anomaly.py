"""Consecutive no-progress detection.

A single pass that deletes nothing while rows exist is normal (nothing was
settled). Several in a row for the same merchant suggest the remote view and
the ledger have drifted apart: an unnoticed permission loss, or a change in
the remote contract.
"""

import threading
from typing import Dict, Optional

from core.observability.logging import get_logger
from core.observability.metrics import MetricsCollector
from reconciliation.models import ReconciliationResult

logger = get_logger(__name__)

DEFAULT_THRESHOLD = 3


class AnomalyMonitor:
    """Per-merchant counter of consecutive no-progress passes.

    The counter increments when a pass had rows_before > 0 and rows_deleted == 0
    and resets to 0 otherwise. Skipped passes leave it unchanged. Once the
    counter reaches `threshold`, every further no-progress pass emits the
    consecutive-runs warning.
    """

    def __init__(
        self,
        threshold: int = DEFAULT_THRESHOLD,
        metrics: Optional[MetricsCollector] = None,
    ):
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.threshold = threshold
        self.metrics = metrics
        self._streaks: Dict[str, int] = {}
        self._lock = threading.Lock()

    def observe(self, result: ReconciliationResult) -> int:
        """Update the merchant's counter from a finished pass. Returns the new count."""
        if result.skipped:
            return self.consecutive_no_progress(result.merchant_id)

        with self._lock:
            if result.made_no_progress:
                streak = self._streaks.get(result.merchant_id, 0) + 1
            else:
                streak = 0
            self._streaks[result.merchant_id] = streak

        if streak >= self.threshold:
            logger.warning(
                f"{self.threshold}+ consecutive no-progress reconciliation runs "
                f"(streak {streak}) - ledger may be out of sync with invoices",
                extra_fields={
                    "merchant_id": result.merchant_id,
                    "consecutive_no_progress": streak,
                    "rows_before": result.rows_before,
                    "open_invoices": result.open_invoices,
                },
            )
            if self.metrics is not None:
                self.metrics.record_consecutive_no_progress(result.merchant_id, streak)

        return streak

    def consecutive_no_progress(self, merchant_id: str) -> int:
        with self._lock:
            return self._streaks.get(merchant_id, 0)

    def reset(self, merchant_id: Optional[str] = None) -> None:
        """Reset one merchant's counter, or all counters."""
        with self._lock:
            if merchant_id is None:
                self._streaks.clear()
            else:
                self._streaks.pop(merchant_id, None)
