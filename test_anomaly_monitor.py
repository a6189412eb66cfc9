"""
Anomaly Monitor Tests

Consecutive no-progress passes (rows exist, none deleted) raise a distinct
warning once the threshold is reached.
"""

import asyncio
import logging

import pytest

from conftest import MERCHANT, FakeInvoiceSource, invoice
from core.observability.metrics import MetricsCollector
from ledger.models import LedgerLine
from reconciliation.anomaly import AnomalyMonitor
from reconciliation.models import ReconciliationResult

CONSECUTIVE_WARNING = "consecutive no-progress reconciliation runs"


def stuck(merchant_id=MERCHANT):
    return ReconciliationResult(merchant_id=merchant_id, rows_before=4, rows_deleted=0)


def progressed(merchant_id=MERCHANT):
    return ReconciliationResult(merchant_id=merchant_id, rows_before=4, rows_deleted=2)


def warnings_in(caplog):
    return [r for r in caplog.records if CONSECUTIVE_WARNING in r.getMessage()]


class TestAnomalyMonitor:

    def test_streak_increments_and_warns_at_threshold(self, caplog):
        monitor = AnomalyMonitor(threshold=3)

        with caplog.at_level(logging.WARNING):
            assert monitor.observe(stuck()) == 1
            assert monitor.observe(stuck()) == 2
            assert warnings_in(caplog) == []
            assert monitor.observe(stuck()) == 3

        emitted = warnings_in(caplog)
        assert len(emitted) == 1
        assert emitted[0].extra_fields["consecutive_no_progress"] == 3
        assert emitted[0].extra_fields["merchant_id"] == MERCHANT

    def test_keeps_warning_past_threshold(self, caplog):
        monitor = AnomalyMonitor(threshold=2)
        with caplog.at_level(logging.WARNING):
            for _ in range(4):
                monitor.observe(stuck())
        assert len(warnings_in(caplog)) == 3

    def test_progress_resets(self):
        monitor = AnomalyMonitor()
        monitor.observe(stuck())
        monitor.observe(stuck())

        assert monitor.observe(progressed()) == 0
        assert monitor.consecutive_no_progress(MERCHANT) == 0

    def test_empty_ledger_is_not_stuck(self):
        monitor = AnomalyMonitor()
        monitor.observe(stuck())
        assert monitor.observe(ReconciliationResult(merchant_id=MERCHANT)) == 0

    def test_skipped_results_ignored(self):
        monitor = AnomalyMonitor()
        monitor.observe(stuck())
        monitor.observe(stuck())

        assert monitor.observe(ReconciliationResult.skipped_result(MERCHANT, "denied")) == 2

    def test_counters_per_merchant(self):
        monitor = AnomalyMonitor()
        monitor.observe(stuck("M-1"))
        monitor.observe(stuck("M-1"))
        monitor.observe(stuck("M-2"))

        assert monitor.consecutive_no_progress("M-1") == 2
        assert monitor.consecutive_no_progress("M-2") == 1

        monitor.reset("M-1")
        assert monitor.consecutive_no_progress("M-1") == 0
        monitor.reset()
        assert monitor.consecutive_no_progress("M-2") == 0

    def test_alert_recorded_in_metrics(self):
        metrics = MetricsCollector()
        monitor = AnomalyMonitor(threshold=1, metrics=metrics)
        monitor.observe(stuck())
        assert metrics.get_summary()["ledger"]["consecutive_no_progress_alerts"] == 1

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            AnomalyMonitor(threshold=0)


def test_reconciler_feeds_monitor(store, metrics, caplog):
    """Three passes over an open invoice without order trip the consecutive warning."""
    from reconciliation.engine import CommittedInventoryReconciler

    store.seed(MERCHANT, "inv-1", [LedgerLine(catalog_object_id="var-1", location_id="L1", quantity=2)])
    source = FakeInvoiceSource(
        locations=["L1"],
        invoices={"L1": [invoice("inv-1", "UNPAID", with_order=False)]},
    )
    reconciler = CommittedInventoryReconciler(source, store, metrics=metrics)

    with caplog.at_level(logging.WARNING):
        for _ in range(3):
            asyncio.run(reconciler.reconcile(MERCHANT))

    assert reconciler.monitor.consecutive_no_progress(MERCHANT) == 3
    assert len(warnings_in(caplog)) == 1

    # Invoice paid: rows released, streak resets
    source.invoices = {"L1": [invoice("inv-1", "PAID")]}
    asyncio.run(reconciler.reconcile(MERCHANT))
    assert reconciler.monitor.consecutive_no_progress(MERCHANT) == 0
