"""
Metrics Collection for Committed Inventory Reconciliation

Collects and exposes metrics for:
- Reconciliation passes (started, completed, skipped, failed) per merchant
- Ledger effects (rows deleted, line items upserted)
- No-progress warnings (single-run and consecutive)
- Processing times per stage (average, p95)

Metrics are stored in-memory. Snapshot persistence to SQLite is opt-in via
MetricsCollector.enable_persistence(db_path).
"""

import json
import sqlite3
import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

from core.observability.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# Metric Data Classes
# =============================================================================

def _merchant_counters() -> Dict[str, int]:
    return {"started": 0, "completed": 0, "skipped": 0, "failed": 0}


@dataclass
class PassMetrics:
    """Metrics for reconciliation pass execution."""
    started: int = 0
    completed: int = 0
    skipped: int = 0
    failed: int = 0
    in_progress: int = 0

    by_merchant: Dict[str, Dict[str, int]] = field(default_factory=lambda: defaultdict(_merchant_counters))


@dataclass
class LedgerMetrics:
    """Effects of reconciliation on the ledger."""
    rows_deleted: int = 0
    line_items_upserted: int = 0
    invoices_fetched: int = 0
    no_progress_warnings: int = 0
    consecutive_no_progress_alerts: int = 0


@dataclass
class TimingMetrics:
    """Processing time metrics."""
    samples: List[float] = field(default_factory=list)
    max_samples: int = 1000

    by_stage: Dict[str, List[float]] = field(default_factory=lambda: defaultdict(list))

    def add_sample(self, duration_ms: float, stage: str = None):
        """Add a timing sample."""
        self.samples.append(duration_ms)
        if len(self.samples) > self.max_samples:
            self.samples = self.samples[-self.max_samples:]

        if stage:
            self.by_stage[stage].append(duration_ms)
            if len(self.by_stage[stage]) > self.max_samples:
                self.by_stage[stage] = self.by_stage[stage][-self.max_samples:]

    def get_average(self, stage: str = None) -> float:
        """Get average processing time."""
        samples = self.by_stage.get(stage, []) if stage else self.samples
        return statistics.mean(samples) if samples else 0.0

    def get_p95(self, stage: str = None) -> float:
        """Get 95th percentile processing time."""
        samples = self.by_stage.get(stage, []) if stage else self.samples
        if not samples:
            return 0.0
        sorted_samples = sorted(samples)
        idx = int(len(sorted_samples) * 0.95)
        return sorted_samples[min(idx, len(sorted_samples) - 1)]


# =============================================================================
# Metrics Collector (Singleton)
# =============================================================================

class MetricsCollector:
    """
    Thread-safe metrics collector for reconciliation passes.

    Usage:
        metrics = MetricsCollector.instance()
        metrics.record_pass_started("M-001")
        metrics.record_pass_completed("M-001", rows_deleted=2, line_items_upserted=3)
    """

    _instance: Optional["MetricsCollector"] = None
    _instance_lock = Lock()

    def __init__(self, db_path: Optional[Path] = None):
        self.passes = PassMetrics()
        self.ledger = LedgerMetrics()
        self.timings = TimingMetrics()
        self._lock = Lock()
        self._db_path: Optional[Path] = None

        if db_path is not None:
            self.enable_persistence(db_path)

    @classmethod
    def instance(cls) -> "MetricsCollector":
        """Get singleton instance."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton (tests)."""
        with cls._instance_lock:
            cls._instance = None

    def enable_persistence(self, db_path: Path) -> None:
        """Persist metric events to a metrics_snapshots table."""
        conn = sqlite3.connect(str(db_path))
        try:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS metrics_snapshots (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    metric_type TEXT NOT NULL,
                    metric_name TEXT NOT NULL,
                    metric_value REAL NOT NULL,
                    labels TEXT
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_metrics_type_time
                ON metrics_snapshots(metric_type, timestamp)
            """)
            conn.commit()
        finally:
            conn.close()
        self._db_path = Path(db_path)

    # =========================================================================
    # Pass Metrics
    # =========================================================================

    def record_pass_started(self, merchant_id: str):
        """Record a reconciliation pass start."""
        with self._lock:
            self.passes.started += 1
            self.passes.in_progress += 1
            self.passes.by_merchant[merchant_id]["started"] += 1

    def record_pass_completed(
        self,
        merchant_id: str,
        rows_deleted: int = 0,
        line_items_upserted: int = 0,
        invoices_fetched: int = 0,
        duration_ms: float = None,
    ):
        """Record a completed (non-skipped) pass."""
        with self._lock:
            self.passes.completed += 1
            self.passes.in_progress = max(0, self.passes.in_progress - 1)
            self.passes.by_merchant[merchant_id]["completed"] += 1
            self.ledger.rows_deleted += rows_deleted
            self.ledger.line_items_upserted += line_items_upserted
            self.ledger.invoices_fetched += invoices_fetched

            if duration_ms:
                self.timings.add_sample(duration_ms, "pass")

        self._persist_metric("pass", "completed", 1, {
            "merchant_id": merchant_id,
            "rows_deleted": rows_deleted,
            "line_items_upserted": line_items_upserted,
        })

    def record_pass_skipped(self, merchant_id: str, reason: str = None):
        """Record a pass that was skipped (permission denial)."""
        with self._lock:
            self.passes.skipped += 1
            self.passes.in_progress = max(0, self.passes.in_progress - 1)
            self.passes.by_merchant[merchant_id]["skipped"] += 1

        self._persist_metric("pass", "skipped", 1, {"merchant_id": merchant_id, "reason": reason})

    def record_pass_failed(self, merchant_id: str, error: str = None):
        """Record a pass that raised."""
        with self._lock:
            self.passes.failed += 1
            self.passes.in_progress = max(0, self.passes.in_progress - 1)
            self.passes.by_merchant[merchant_id]["failed"] += 1

        self._persist_metric("pass", "failed", 1, {"merchant_id": merchant_id, "error": error})

    # =========================================================================
    # Anomaly Signals
    # =========================================================================

    def record_no_progress(self, merchant_id: str):
        """Record a single-run 'no changes despite existing records' warning."""
        with self._lock:
            self.ledger.no_progress_warnings += 1

        self._persist_metric("anomaly", "no_progress", 1, {"merchant_id": merchant_id})

    def record_consecutive_no_progress(self, merchant_id: str, streak: int):
        """Record a '3+ consecutive no-progress runs' alert."""
        with self._lock:
            self.ledger.consecutive_no_progress_alerts += 1

        self._persist_metric("anomaly", "consecutive_no_progress", streak, {"merchant_id": merchant_id})

    # =========================================================================
    # Timing Metrics
    # =========================================================================

    def record_processing_time(self, stage: str, duration_ms: float):
        """Record a processing time sample."""
        with self._lock:
            self.timings.add_sample(duration_ms, stage)

    def get_timing_stats(self, stage: str = None) -> Dict[str, float]:
        """Get timing statistics for a stage."""
        with self._lock:
            return {
                "average_ms": self.timings.get_average(stage),
                "p95_ms": self.timings.get_p95(stage),
                "sample_count": len(self.timings.by_stage.get(stage, []) if stage else self.timings.samples),
            }

    # =========================================================================
    # Summary
    # =========================================================================

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        with self._lock:
            return {
                "passes": {
                    "started": self.passes.started,
                    "completed": self.passes.completed,
                    "skipped": self.passes.skipped,
                    "failed": self.passes.failed,
                    "in_progress": self.passes.in_progress,
                    "by_merchant": {k: dict(v) for k, v in self.passes.by_merchant.items()},
                },
                "ledger": {
                    "rows_deleted": self.ledger.rows_deleted,
                    "line_items_upserted": self.ledger.line_items_upserted,
                    "invoices_fetched": self.ledger.invoices_fetched,
                    "no_progress_warnings": self.ledger.no_progress_warnings,
                    "consecutive_no_progress_alerts": self.ledger.consecutive_no_progress_alerts,
                },
                "timings": {
                    "overall": {
                        "average_ms": self.timings.get_average(),
                        "p95_ms": self.timings.get_p95(),
                    },
                    "by_stage": {
                        stage: {
                            "average_ms": self.timings.get_average(stage),
                            "p95_ms": self.timings.get_p95(stage),
                        }
                        for stage in self.timings.by_stage.keys()
                    },
                },
            }

    # =========================================================================
    # Persistence
    # =========================================================================

    def _persist_metric(self, metric_type: str, metric_name: str, value: float, labels: Dict = None):
        """Persist a metric event when persistence is enabled.

        Metrics are best-effort: a failed write is logged, never raised.
        """
        if self._db_path is None:
            return
        try:
            conn = sqlite3.connect(str(self._db_path))
            try:
                conn.execute("""
                    INSERT INTO metrics_snapshots (timestamp, metric_type, metric_name, metric_value, labels)
                    VALUES (?, ?, ?, ?, ?)
                """, (
                    datetime.utcnow().isoformat(),
                    metric_type,
                    metric_name,
                    value,
                    json.dumps(labels, default=str) if labels else None,
                ))
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.warning(f"Failed to persist metric {metric_type}.{metric_name}: {e}")


# =============================================================================
# Module-level convenience functions
# =============================================================================

def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return MetricsCollector.instance()


def record_pass_started(merchant_id: str):
    get_metrics().record_pass_started(merchant_id)


def record_pass_completed(merchant_id: str, **kwargs):
    get_metrics().record_pass_completed(merchant_id, **kwargs)


def record_pass_skipped(merchant_id: str, reason: str = None):
    get_metrics().record_pass_skipped(merchant_id, reason)


def record_pass_failed(merchant_id: str, error: str = None):
    get_metrics().record_pass_failed(merchant_id, error)


def record_processing_time(stage: str, duration_ms: float):
    """Record a processing time sample."""
    get_metrics().record_processing_time(stage, duration_ms)
