"""Committed inventory reconciliation engine.

Exposes:
- CommittedInventoryReconciler.reconcile(merchant_id) -> ReconciliationResult
- CommittedInventoryReconciler.apply_invoice_change(...) -> InvoiceChangeResult

A pass observes every open invoice across the merchant's active locations,
then rewrites the ledger to match: upsert open invoices' lines, delete rows
of invoices no longer open, rebuild the aggregate. All remote reads finish
before the first store write, so a remote failure or permission denial
leaves the ledger untouched.
"""

import asyncio
import time
import weakref
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from connectors.invoice_base import (
    InvoiceSource,
    InvoiceStatusClass,
    OPEN_INVOICE_STATUSES,
    TERMINAL_INVOICE_STATUSES,
    InvoiceSummary,
    OrderLine,
    PaginationLimitExceeded,
    PermissionDenied,
    classify_invoice_status,
)
from core.config import ReconciliationConfig
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import MetricsCollector
from ledger.models import LedgerLine
from ledger.store import LedgerStore
from reconciliation.anomaly import AnomalyMonitor
from reconciliation.models import (
    InvoiceChangeAction,
    InvoiceChangeResult,
    ReconciliationResult,
    ReconciliationValidationError,
)
from reconciliation.scope_denial import ScopeDenialCache

logger = get_logger(__name__)


# =============================================================================
# Remote Observation
# =============================================================================

@dataclass
class PlannedInvoice:
    """An open invoice with its resolved ledger lines, ready to write."""
    invoice: InvoiceSummary
    order_id: str
    lines: List[LedgerLine]
    lines_without_location: int = 0


@dataclass
class RemoteObservation:
    """Everything read from the invoice source during one pass."""
    locations: List[str] = field(default_factory=list)
    invoices_fetched: int = 0
    status_counts: Dict[str, int] = field(default_factory=dict)
    open_invoice_ids: Set[str] = field(default_factory=set)
    planned: List[PlannedInvoice] = field(default_factory=list)
    invoices_without_order: int = 0


def _elapsed_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000


def _validate_id(value: Optional[str], name: str) -> str:
    if value is None or not str(value).strip():
        raise ReconciliationValidationError(f"{name} is required")
    return str(value).strip()


class CommittedInventoryReconciler:
    """Rebuilds a merchant's committed inventory from its open invoices.

    Args:
        source: Remote invoice system
        store: Ledger backend
        config: Pass tuning; defaults to ReconciliationConfig()
        scope_denials: Permission denial cache; one is created if omitted
        monitor: Consecutive no-progress detector; one is created if omitted
        metrics: Metrics collector; defaults to the process-wide instance
    """

    def __init__(
        self,
        source: InvoiceSource,
        store: LedgerStore,
        config: Optional[ReconciliationConfig] = None,
        scope_denials: Optional[ScopeDenialCache] = None,
        monitor: Optional[AnomalyMonitor] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.source = source
        self.store = store
        self.config = config if config is not None else ReconciliationConfig()
        self.metrics = metrics if metrics is not None else MetricsCollector.instance()
        if scope_denials is None:
            scope_denials = ScopeDenialCache(ttl_seconds=self.config.scope_denial_ttl_seconds)
        self.scope_denials = scope_denials
        if monitor is None:
            monitor = AnomalyMonitor(threshold=self.config.anomaly_threshold, metrics=self.metrics)
        self.monitor = monitor
        # event loop -> merchant_id -> lock; passes and invoice changes never overlap per merchant
        self._merchant_locks = weakref.WeakKeyDictionary()

    def _merchant_lock(self, merchant_id: str) -> asyncio.Lock:
        locks = self._merchant_locks.setdefault(asyncio.get_running_loop(), {})
        if merchant_id not in locks:
            locks[merchant_id] = asyncio.Lock()
        return locks[merchant_id]

    # =========================================================================
    # Full Pass
    # =========================================================================

    async def reconcile(self, merchant_id: str) -> ReconciliationResult:
        """Run one reconciliation pass for a merchant.

        Raises:
            ReconciliationValidationError: merchant_id is empty
            RemoteFailure: Any remote read failed (ledger untouched)
            StoreFailure: A ledger write failed (that write rolled back)
        """
        merchant_id = _validate_id(merchant_id, "merchant_id")
        started = time.monotonic()

        with with_correlation(merchant_id=merchant_id):
            self.metrics.record_pass_started(merchant_id)

            denial = self.scope_denials.get(merchant_id)
            if denial is not None:
                logger.info(
                    "Skipping committed inventory reconciliation - invoice access previously denied",
                    extra_fields={"merchant_id": merchant_id, "reason": denial.reason},
                )
                self.metrics.record_pass_skipped(merchant_id, denial.reason)
                return ReconciliationResult.skipped_result(merchant_id, denial.reason)

            try:
                async with self._merchant_lock(merchant_id):
                    result = await self._run_pass(merchant_id, started)
            except PermissionDenied as e:
                reason = f"Permission denied reading invoices: {e}"
                self.scope_denials.record(merchant_id, reason)
                logger.warning(
                    "Invoice access denied - skipping merchant until re-authorized",
                    extra_fields={"merchant_id": merchant_id, "status_code": e.status_code},
                )
                self.metrics.record_pass_skipped(merchant_id, reason)
                return ReconciliationResult(
                    merchant_id=merchant_id,
                    skipped=True,
                    reason=reason,
                    duration_ms=_elapsed_ms(started),
                )
            except Exception as e:
                self.metrics.record_pass_failed(merchant_id, str(e))
                logger.error(
                    f"Committed inventory reconciliation failed: {e}",
                    extra_fields={"merchant_id": merchant_id, "error_type": type(e).__name__},
                )
                raise

        return result

    async def _run_pass(self, merchant_id: str, started: float) -> ReconciliationResult:
        with with_correlation(stage="snapshot"):
            rows_before = self.store.count_rows(merchant_id)
            known_invoice_ids = set(self.store.list_distinct_invoice_ids(merchant_id))

        observation = await self._observe(merchant_id)

        if not observation.locations:
            logger.warning(
                "No active locations - nothing to reconcile",
                extra_fields={"merchant_id": merchant_id, "rows_before": rows_before},
            )
            result = ReconciliationResult(
                merchant_id=merchant_id,
                rows_before=rows_before,
                rows_remaining=rows_before,
                reason="No active locations",
                duration_ms=_elapsed_ms(started),
            )
            self._finish(result)
            return result

        with with_correlation(stage="write"):
            write_started = time.monotonic()
            line_items_upserted = 0
            for planned in observation.planned:
                line_items_upserted += self.store.upsert_lines(
                    merchant_id,
                    planned.invoice.id,
                    planned.lines,
                    order_id=planned.order_id,
                    invoice_status=planned.invoice.status,
                )

            stale_ids = known_invoice_ids - observation.open_invoice_ids
            deleted = self.store.delete_rows_for_invoices(merchant_id, stale_ids)
            if deleted.rows_deleted:
                logger.info(
                    f"Released {deleted.rows_deleted} committed rows for "
                    f"{len(deleted.deleted_invoice_ids)} closed invoices",
                    extra_fields={
                        "merchant_id": merchant_id,
                        "deleted_invoice_ids": deleted.deleted_invoice_ids,
                    },
                )

            aggregate_rows = self.store.rebuild_aggregate(merchant_id)
            self.metrics.record_processing_time("write", _elapsed_ms(write_started))

        result = ReconciliationResult(
            merchant_id=merchant_id,
            invoices_fetched=observation.invoices_fetched,
            status_counts=observation.status_counts,
            open_invoices=len(observation.open_invoice_ids),
            invoices_processed=len(observation.planned),
            invoices_without_order=observation.invoices_without_order,
            line_items_upserted=line_items_upserted,
            rows_before=rows_before,
            rows_deleted=deleted.rows_deleted,
            rows_remaining=rows_before - deleted.rows_deleted,
            deleted_invoice_ids=deleted.deleted_invoice_ids,
            duration_ms=_elapsed_ms(started),
        )

        if result.made_no_progress and line_items_upserted == 0:
            logger.warning(
                "No changes despite existing committed records",
                extra_fields={
                    "merchant_id": merchant_id,
                    "rows_before": rows_before,
                    "open_invoices": result.open_invoices,
                    "status_counts": result.status_counts,
                },
            )
            self.metrics.record_no_progress(merchant_id)

        logger.info(
            "Committed inventory reconciled",
            extra_fields={
                **result.to_dict(),
                "aggregate_rows": aggregate_rows,
            },
        )
        self._finish(result)
        return result

    def _finish(self, result: ReconciliationResult) -> None:
        self.monitor.observe(result)
        self.metrics.record_pass_completed(
            result.merchant_id,
            rows_deleted=result.rows_deleted,
            line_items_upserted=result.line_items_upserted,
            invoices_fetched=result.invoices_fetched,
            duration_ms=result.duration_ms,
        )

    # =========================================================================
    # Remote Reads
    # =========================================================================

    async def _observe(self, merchant_id: str) -> RemoteObservation:
        observation = RemoteObservation()

        with with_correlation(stage="locations"):
            observation.locations = list(await self.source.list_active_locations(merchant_id))
        if not observation.locations:
            return observation

        with with_correlation(stage="fetch"):
            fetch_started = time.monotonic()
            invoices = await self._fetch_all_locations(merchant_id, observation.locations)
            self.metrics.record_processing_time("fetch", _elapsed_ms(fetch_started))

        observation.invoices_fetched = len(invoices)
        observation.status_counts = dict(Counter(inv.status or "UNKNOWN" for inv in invoices))

        # The same invoice may show up under more than one location; open wins
        open_invoices: Dict[str, InvoiceSummary] = {}
        for invoice in invoices:
            if invoice.is_open and invoice.id not in open_invoices:
                open_invoices[invoice.id] = invoice
        observation.open_invoice_ids = set(open_invoices)

        unrecognized = sorted(
            status for status in observation.status_counts
            if status.upper() not in OPEN_INVOICE_STATUSES and status.upper() not in TERMINAL_INVOICE_STATUSES
        )
        if unrecognized:
            logger.warning(
                f"Unrecognized invoice statuses treated as open: {', '.join(unrecognized)}",
                extra_fields={"merchant_id": merchant_id, "statuses": unrecognized},
            )

        logger.info(
            f"Fetched {len(invoices)} invoices across {len(observation.locations)} locations, "
            f"{len(open_invoices)} open",
            extra_fields={
                "merchant_id": merchant_id,
                "status_counts": observation.status_counts,
                "open_statuses": sorted(OPEN_INVOICE_STATUSES),
            },
        )

        with with_correlation(stage="lines"):
            lines_started = time.monotonic()
            for invoice in open_invoices.values():
                planned = await self._plan_invoice(merchant_id, invoice)
                if planned is None:
                    observation.invoices_without_order += 1
                else:
                    observation.planned.append(planned)
            self.metrics.record_processing_time("lines", _elapsed_ms(lines_started))

        return observation

    async def _fetch_all_locations(self, merchant_id: str, locations: List[str]) -> List[InvoiceSummary]:
        semaphore = asyncio.Semaphore(self.config.location_concurrency)

        async def bounded(location_id: str) -> List[InvoiceSummary]:
            async with semaphore:
                return await self._fetch_location(merchant_id, location_id)

        outcomes = await asyncio.gather(
            *(bounded(location_id) for location_id in locations),
            return_exceptions=True,
        )

        failures = [o for o in outcomes if isinstance(o, BaseException)]
        if failures:
            remote = [f for f in failures if not isinstance(f, PermissionDenied)]
            raise (remote[0] if remote else failures[0])

        invoices: List[InvoiceSummary] = []
        for location_invoices in outcomes:
            invoices.extend(location_invoices)
        return invoices

    async def _fetch_location(self, merchant_id: str, location_id: str) -> List[InvoiceSummary]:
        """Page through one location's invoices until the cursor is exhausted."""
        invoices: List[InvoiceSummary] = []
        seen_cursors: Set[str] = set()
        cursor: Optional[str] = None
        pages = 0

        while True:
            if pages >= self.config.max_pages_per_location:
                raise PaginationLimitExceeded(
                    f"Invoice search for location {location_id} exceeded "
                    f"{self.config.max_pages_per_location} pages"
                )

            page = await self.source.search_invoices(merchant_id, location_id, cursor=cursor)
            pages += 1

            for invoice in page.invoices:
                if not invoice.location_id:
                    invoice = invoice.model_copy(update={"location_id": location_id})
                invoices.append(invoice)

            cursor = page.next_cursor
            if not cursor:
                break
            if cursor in seen_cursors:
                raise PaginationLimitExceeded(
                    f"Invoice search for location {location_id} returned a repeated cursor"
                )
            seen_cursors.add(cursor)

        logger.debug(
            f"Location {location_id}: {len(invoices)} invoices in {pages} pages",
            extra_fields={"merchant_id": merchant_id, "location_id": location_id},
        )
        return invoices

    async def _plan_invoice(self, merchant_id: str, invoice: InvoiceSummary) -> Optional[PlannedInvoice]:
        """Resolve an open invoice's order lines. Returns None if it has no order.

        The invoice detail is read when the order id is missing, or when an
        order line needs the invoice's location and the invoice has none.
        """
        detail_read = False
        order_id = invoice.order_id
        if not order_id:
            invoice = await self._with_detail(merchant_id, invoice)
            detail_read = True
            order_id = invoice.order_id

        if not order_id:
            logger.warning(
                "Open invoice has no linked order - nothing to reserve",
                extra_fields={"merchant_id": merchant_id, "invoice_id": invoice.id},
            )
            return None

        order_lines = await self.source.get_order_lines(merchant_id, order_id)

        needs_location = any(line.catalog_object_id and not line.location_id for line in order_lines)
        if needs_location and not invoice.location_id and not detail_read:
            invoice = await self._with_detail(merchant_id, invoice)

        unlocated = sum(
            1 for line in order_lines
            if line.catalog_object_id and not (line.location_id or invoice.location_id)
        )
        return PlannedInvoice(
            invoice=invoice,
            order_id=order_id,
            lines=self._resolve_lines(merchant_id, invoice, order_lines),
            lines_without_location=unlocated,
        )

    async def _with_detail(self, merchant_id: str, invoice: InvoiceSummary) -> InvoiceSummary:
        """Fill the invoice's missing order id and location from its detail."""
        detail = await self.source.get_invoice_detail(merchant_id, invoice.id)
        update = {}
        if not invoice.order_id and detail.order_id:
            update["order_id"] = detail.order_id
        if not invoice.location_id and detail.location_id:
            update["location_id"] = detail.location_id
        return invoice.model_copy(update=update) if update else invoice

    def _resolve_lines(
        self,
        merchant_id: str,
        invoice: InvoiceSummary,
        order_lines: List[OrderLine],
    ) -> List[LedgerLine]:
        """Map order lines to ledger lines. The line's own location beats the invoice's."""
        resolved: List[LedgerLine] = []
        for line in order_lines:
            if not line.catalog_object_id:
                logger.warning(
                    "Skipping order line without catalog object",
                    extra_fields={"merchant_id": merchant_id, "invoice_id": invoice.id, "line_name": line.name},
                )
                continue

            location_id = line.location_id or invoice.location_id
            if not location_id:
                logger.warning(
                    "Skipping order line without resolvable location",
                    extra_fields={
                        "merchant_id": merchant_id,
                        "invoice_id": invoice.id,
                        "catalog_object_id": line.catalog_object_id,
                    },
                )
                continue

            if line.quantity < 0:
                logger.warning(
                    f"Skipping order line with negative quantity {line.quantity}",
                    extra_fields={
                        "merchant_id": merchant_id,
                        "invoice_id": invoice.id,
                        "catalog_object_id": line.catalog_object_id,
                    },
                )
                continue

            resolved.append(LedgerLine(
                catalog_object_id=line.catalog_object_id,
                location_id=location_id,
                quantity=line.quantity,
            ))
        return resolved

    # =========================================================================
    # Single Invoice Changes
    # =========================================================================

    async def apply_invoice_change(
        self,
        merchant_id: str,
        invoice_id: str,
        status: Optional[str],
        order_id: Optional[str] = None,
    ) -> InvoiceChangeResult:
        """Apply one invoice's status change without a full pass.

        Terminal statuses release the invoice's rows; anything else refreshes
        them from the linked order. The aggregate is rebuilt either way. Runs under
        the merchant lock, so it never interleaves with a pass.
        """
        merchant_id = _validate_id(merchant_id, "merchant_id")
        invoice_id = _validate_id(invoice_id, "invoice_id")

        with with_correlation(merchant_id=merchant_id, invoice_id=invoice_id, stage="invoice_change"):
            denial = self.scope_denials.get(merchant_id)
            if denial is not None:
                return InvoiceChangeResult(
                    merchant_id=merchant_id,
                    invoice_id=invoice_id,
                    action=InvoiceChangeAction.SKIPPED,
                    status=status,
                    reason=denial.reason,
                )

            async with self._merchant_lock(merchant_id):
                return await self._apply_change(merchant_id, invoice_id, status, order_id)

    async def _apply_change(
        self,
        merchant_id: str,
        invoice_id: str,
        status: Optional[str],
        order_id: Optional[str],
    ) -> InvoiceChangeResult:
        if classify_invoice_status(status) == InvoiceStatusClass.TERMINAL:
            deleted = self.store.delete_rows_for_invoices(merchant_id, [invoice_id])
            self.store.rebuild_aggregate(merchant_id)
            logger.info(
                f"Invoice {status} - released {deleted.rows_deleted} committed rows",
                extra_fields={"merchant_id": merchant_id, "invoice_id": invoice_id},
            )
            return InvoiceChangeResult(
                merchant_id=merchant_id,
                invoice_id=invoice_id,
                action=InvoiceChangeAction.REMOVED,
                status=status,
                order_id=order_id,
                rows_removed=deleted.rows_deleted,
            )

        invoice = InvoiceSummary(id=invoice_id, status=status, order_id=order_id)
        try:
            planned = await self._plan_invoice(merchant_id, invoice)
        except PermissionDenied as e:
            reason = f"Permission denied reading invoices: {e}"
            self.scope_denials.record(merchant_id, reason)
            logger.warning(
                "Invoice access denied - skipping merchant until re-authorized",
                extra_fields={"merchant_id": merchant_id, "invoice_id": invoice_id},
            )
            return InvoiceChangeResult(
                merchant_id=merchant_id,
                invoice_id=invoice_id,
                action=InvoiceChangeAction.SKIPPED,
                status=status,
                order_id=order_id,
                reason=reason,
            )

        if planned is None:
            return InvoiceChangeResult(
                merchant_id=merchant_id,
                invoice_id=invoice_id,
                action=InvoiceChangeAction.SKIPPED,
                status=status,
                reason="Invoice has no linked order",
            )

        # Writing an empty line set would release a still-open reservation
        if planned.lines_without_location and not planned.lines:
            logger.warning(
                "No order line has a resolvable location - leaving committed rows unchanged",
                extra_fields={
                    "merchant_id": merchant_id,
                    "invoice_id": invoice_id,
                    "lines_without_location": planned.lines_without_location,
                },
            )
            return InvoiceChangeResult(
                merchant_id=merchant_id,
                invoice_id=invoice_id,
                action=InvoiceChangeAction.SKIPPED,
                status=status,
                order_id=planned.order_id,
                reason="No order line has a resolvable location",
            )

        written = self.store.upsert_lines(
            merchant_id,
            invoice_id,
            planned.lines,
            order_id=planned.order_id,
            invoice_status=status,
        )
        self.store.rebuild_aggregate(merchant_id)
        logger.info(
            f"Invoice {status or 'UNKNOWN'} - wrote {written} committed lines",
            extra_fields={"merchant_id": merchant_id, "invoice_id": invoice_id, "order_id": planned.order_id},
        )
        return InvoiceChangeResult(
            merchant_id=merchant_id,
            invoice_id=invoice_id,
            action=InvoiceChangeAction.UPSERTED,
            status=status,
            order_id=planned.order_id,
            rows_written=written,
        )

    # =========================================================================
    # Scope Denial Management
    # =========================================================================

    def invalidate_scope_denial(self, merchant_id: str) -> bool:
        """Forget a cached permission denial (e.g. after re-authorization)."""
        removed = self.scope_denials.invalidate(merchant_id)
        if removed:
            logger.info(
                "Scope denial invalidated",
                extra_fields={"merchant_id": merchant_id},
            )
        return removed

    async def close(self) -> None:
        await self.source.close()


__all__ = [
    "CommittedInventoryReconciler",
    "PlannedInvoice",
    "RemoteObservation",
]
