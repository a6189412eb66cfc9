"""
Observability Validation Test

This test validates the observability stack:
1. Metrics collection works (pass/ledger/anomaly/timing metrics)
2. Structured logging with correlation IDs works
3. Metric persistence is opt-in and best-effort
"""

import json
import logging
import sqlite3
from datetime import datetime

import pytest


# Test imports - these should all import successfully
def test_observability_imports():
    """Verify all observability modules import correctly."""
    from core.observability import (
        MetricsCollector, get_metrics,
        record_pass_started, record_pass_completed, record_pass_skipped, record_pass_failed,
        record_processing_time,
        get_logger, configure_logging, CorrelationContext, with_correlation,
    )
    assert MetricsCollector is not None
    assert get_metrics is not None
    assert CorrelationContext is not None


class TestMetricsCollector:
    """Test the metrics collection system."""

    def test_singleton_instance(self):
        """MetricsCollector returns same instance."""
        from core.observability.metrics import MetricsCollector
        m1 = MetricsCollector.instance()
        m2 = MetricsCollector.instance()
        assert m1 is m2

    def test_reset_instance(self):
        from core.observability.metrics import MetricsCollector
        m1 = MetricsCollector.instance()
        MetricsCollector.reset_instance()
        assert MetricsCollector.instance() is not m1

    def test_pass_metrics_tracking(self):
        """Track pass started/completed/skipped/failed counts."""
        from core.observability.metrics import MetricsCollector
        mc = MetricsCollector()

        mc.record_pass_started("M-1")
        mc.record_pass_started("M-1")
        mc.record_pass_started("M-2")
        mc.record_pass_completed("M-1", rows_deleted=3, line_items_upserted=5, invoices_fetched=7, duration_ms=120)
        mc.record_pass_skipped("M-1", "denied")
        mc.record_pass_failed("M-2", "timeout")

        summary = mc.get_summary()
        assert summary["passes"]["started"] == 3
        assert summary["passes"]["completed"] == 1
        assert summary["passes"]["skipped"] == 1
        assert summary["passes"]["failed"] == 1
        assert summary["passes"]["in_progress"] == 0
        assert summary["passes"]["by_merchant"]["M-1"] == {"started": 2, "completed": 1, "skipped": 1, "failed": 0}
        assert summary["ledger"]["rows_deleted"] == 3
        assert summary["ledger"]["line_items_upserted"] == 5
        assert summary["ledger"]["invoices_fetched"] == 7
        assert summary["timings"]["by_stage"]["pass"]["average_ms"] == 120

    def test_anomaly_counters(self):
        from core.observability.metrics import MetricsCollector
        mc = MetricsCollector()

        mc.record_no_progress("M-1")
        mc.record_consecutive_no_progress("M-1", 3)

        ledger = mc.get_summary()["ledger"]
        assert ledger["no_progress_warnings"] == 1
        assert ledger["consecutive_no_progress_alerts"] == 1

    def test_timing_percentile_calculation(self):
        """Calculate p95 timing correctly."""
        from core.observability.metrics import MetricsCollector
        mc = MetricsCollector()

        # Add 100 samples: 1-100ms to a unique stage
        test_stage = f"test_stage_{datetime.now().timestamp()}"
        for i in range(1, 101):
            mc.record_processing_time(test_stage, i)

        stats = mc.get_timing_stats(test_stage)

        # Average should be ~50.5
        assert 49 <= stats["average_ms"] <= 52
        # P95 should be ~95
        assert 93 <= stats["p95_ms"] <= 97
        assert stats["sample_count"] == 100

    def test_persistence_opt_in(self, tmp_path):
        """Metric events land in metrics_snapshots only when enabled."""
        from core.observability.metrics import MetricsCollector
        db_path = tmp_path / "metrics.db"
        mc = MetricsCollector(db_path=db_path)

        mc.record_pass_completed("M-1", rows_deleted=2)
        mc.record_pass_skipped("M-2", "denied")

        conn = sqlite3.connect(str(db_path))
        rows = conn.execute(
            "SELECT metric_type, metric_name, labels FROM metrics_snapshots ORDER BY id"
        ).fetchall()
        conn.close()

        assert [(r[0], r[1]) for r in rows] == [("pass", "completed"), ("pass", "skipped")]
        assert json.loads(rows[0][2])["merchant_id"] == "M-1"

    def test_persistence_failure_not_raised(self, tmp_path):
        """A broken metrics database never breaks a pass."""
        from core.observability.metrics import MetricsCollector
        db_path = tmp_path / "metrics.db"
        mc = MetricsCollector(db_path=db_path)

        conn = sqlite3.connect(str(db_path))
        conn.execute("DROP TABLE metrics_snapshots")
        conn.commit()
        conn.close()

        mc.record_pass_completed("M-1")
        assert mc.get_summary()["passes"]["completed"] == 1


class TestCorrelatedLogging:
    """Test structured logging with correlation IDs."""

    def test_correlation_context_creation(self):
        """Create correlation context with all fields."""
        from core.observability.logging import CorrelationContext

        ctx = CorrelationContext(
            merchant_id="M-001",
            invoice_id="inv-123",
            workflow_id="committed-inventory-M-001",
            workflow_run_id="run-123",
            activity_name="reconcile_committed_inventory",
        )

        assert ctx.merchant_id == "M-001"
        assert ctx.invoice_id == "inv-123"
        assert ctx.to_dict()["workflow_id"] == "committed-inventory-M-001"
        assert "stage" not in ctx.to_dict()

    def test_context_var_isolation(self):
        """Nested with_correlation merges and restores."""
        from core.observability.logging import get_correlation_context, with_correlation

        ctx = get_correlation_context()
        assert ctx.merchant_id is None

        with with_correlation(merchant_id="M-TEST"):
            with with_correlation(stage="fetch"):
                inner_ctx = get_correlation_context()
                assert inner_ctx.merchant_id == "M-TEST"
                assert inner_ctx.stage == "fetch"
            assert get_correlation_context().stage is None

        assert get_correlation_context().merchant_id is None

    def test_structured_formatter_json_output(self):
        """StructuredFormatter outputs valid JSON with context and extra fields."""
        from core.observability.logging import StructuredFormatter, with_correlation

        formatter = StructuredFormatter()

        with with_correlation(merchant_id="M-001", stage="write"):
            record = logging.LogRecord(
                name="reconciliation.engine",
                level=logging.WARNING,
                pathname="engine.py",
                lineno=10,
                msg="No changes despite existing committed records",
                args=(),
                exc_info=None,
            )
            record.extra_fields = {"rows_before": 4}

            data = json.loads(formatter.format(record))

        assert data["message"] == "No changes despite existing committed records"
        assert data["level"] == "WARNING"
        assert data["merchant_id"] == "M-001"
        assert data["stage"] == "write"
        assert data["rows_before"] == 4

    def test_human_readable_formatter(self):
        from core.observability.logging import HumanReadableFormatter, with_correlation

        record = logging.LogRecord("reconciliation.engine", logging.INFO, "engine.py", 1, "Fetched", (), None)
        record.extra_fields = {"open": 3}

        with with_correlation(merchant_id="M-001", stage="fetch"):
            line = HumanReadableFormatter().format(record)

        assert "[M-001/fetch]" in line
        assert line.endswith('{"open": 3}')

    def test_correlated_logger_attaches_extra_fields(self, caplog):
        from core.observability.logging import get_logger

        logger = get_logger("reconciliation.test")
        with caplog.at_level(logging.INFO):
            logger.info("hello", extra_fields={"merchant_id": "M-9"})

        record = next(r for r in caplog.records if r.getMessage() == "hello")
        assert record.extra_fields == {"merchant_id": "M-9"}
        assert record.funcName == "test_correlated_logger_attaches_extra_fields"
        assert get_logger("reconciliation.test") is logger

    def test_unknown_correlation_field_rejected(self):
        from core.observability.logging import with_correlation
        with pytest.raises(TypeError):
            with with_correlation(ap_package_id="PKG-1"):
                pass

    def test_filter_captures_context_at_emit_time(self):
        """Records formatted after the block still carry the block's IDs."""
        from core.observability.logging import CorrelationFilter, StructuredFormatter, with_correlation

        record = logging.LogRecord("reconciliation.engine", logging.INFO, "engine.py", 1, "late", (), None)
        with with_correlation(merchant_id="M-LATE", stage="write"):
            CorrelationFilter().filter(record)

        data = json.loads(StructuredFormatter().format(record))
        assert data["merchant_id"] == "M-LATE"
        assert data["stage"] == "write"

    def test_activity_correlation(self):
        from types import SimpleNamespace
        from core.observability.logging import activity_correlation, get_correlation_context

        info = SimpleNamespace(
            workflow_id="committed-inventory-M-001",
            workflow_run_id="run-1",
            activity_id="1",
            activity_type="reconcile_committed_inventory",
            task_queue="inventory-reconciliation",
        )
        with activity_correlation(info, merchant_id="M-001"):
            ctx = get_correlation_context()
            assert ctx.workflow_id == "committed-inventory-M-001"
            assert ctx.activity_name == "reconcile_committed_inventory"
            assert ctx.merchant_id == "M-001"
            # Workflow ids are cut to 24 characters in text logs
            assert ctx.label() == "M-001/committed-inventory-M-00"

        assert get_correlation_context().workflow_id is None


class TestConfiguration:
    """Environment-driven configuration."""

    def test_defaults(self):
        from core.config import ReconciliationConfig
        config = ReconciliationConfig()
        assert config.location_concurrency == 1
        assert config.search_page_limit == 200
        assert config.scope_denial_ttl_seconds is None
        assert config.anomaly_threshold == 3

    def test_from_env(self, monkeypatch, tmp_path):
        from core.config import ReconciliationConfig
        monkeypatch.setenv("RECONCILE_LOCATION_CONCURRENCY", "4")
        monkeypatch.setenv("RECONCILE_SCOPE_DENIAL_TTL_SECONDS", "3600")
        monkeypatch.setenv("LEDGER_DB_PATH", str(tmp_path / "l.db"))

        config = ReconciliationConfig.from_env()

        assert config.location_concurrency == 4
        assert config.scope_denial_ttl_seconds == 3600.0
        assert config.ledger_db_path == tmp_path / "l.db"

    def test_invalid_values_rejected(self, monkeypatch):
        from core.config import ReconciliationConfig
        with pytest.raises(ValueError):
            ReconciliationConfig(location_concurrency=0)

        monkeypatch.setenv("RECONCILE_MAX_PAGES_PER_LOCATION", "lots")
        with pytest.raises(ValueError):
            ReconciliationConfig.from_env()

    def test_square_config_from_env(self, monkeypatch):
        from core.config import square_api_config_from_env
        monkeypatch.setenv("SQUARE_BASE_URL", "https://connect.squareupsandbox.com")
        monkeypatch.setenv("SQUARE_MAX_RETRIES", "5")

        config = square_api_config_from_env()

        assert config.build_url("/v2/locations") == "https://connect.squareupsandbox.com/v2/locations"
        assert config.retry_config.max_retries == 5


class TestCredentials:

    def test_env_provider_prefers_merchant_token(self, monkeypatch):
        import asyncio
        from core.security.credentials import EnvCredentialProvider
        monkeypatch.setenv("SQUARE_ACCESS_TOKEN", "shared")
        monkeypatch.setenv("SQUARE_ACCESS_TOKEN_M_001", "own")

        provider = EnvCredentialProvider()

        assert asyncio.run(provider.get_access_token("m-001")) == "own"
        assert asyncio.run(provider.get_access_token("M-002")) == "shared"

    def test_env_provider_missing(self, monkeypatch):
        import asyncio
        from core.security.credentials import EnvCredentialProvider, MissingCredentialError
        monkeypatch.delenv("SQUARE_ACCESS_TOKEN", raising=False)
        monkeypatch.delenv("SQUARE_ACCESS_TOKEN_M_404", raising=False)

        with pytest.raises(MissingCredentialError):
            asyncio.run(EnvCredentialProvider().get_access_token("M-404"))

    def test_in_memory_store(self):
        import asyncio
        from core.security.credentials import InMemoryCredentialStore, MerchantCredential
        store = InMemoryCredentialStore({"M-1": "a"})
        store.store(MerchantCredential(merchant_id="M-2", access_token="b"))

        assert store.list_merchants() == ["M-1", "M-2"]
        assert asyncio.run(store.get_access_token("M-2")) == "b"
        assert store.delete("M-1") is True
        assert store.list_merchants() == ["M-2"]
