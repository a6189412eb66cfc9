"""Square Invoice Source.

Implements the InvoiceSource interface on top of the Square REST API.
"""

from typing import Any, Dict, List, Optional

from connectors.invoice_base import (
    InvoicePage,
    InvoiceSource,
    InvoiceSummary,
    OrderLine,
)
from connectors.square.square_client import SquareApiClient, SquareApiError
from connectors.square.square_models import (
    SquareInvoice,
    SquareInvoiceSearchResponse,
    SquareLocation,
    SquareOrder,
)
from core.observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SEARCH_LIMIT = 200


class SquareInvoiceSource(InvoiceSource):
    """Square implementation of the invoice source.

    Normalizes Square payloads:
    - locations are filtered to status ACTIVE
    - invoice search is scoped to one location, newest first
    - order lines carry the order's location
    """

    source_name = "square"

    def __init__(self, client: SquareApiClient, search_limit: int = DEFAULT_SEARCH_LIMIT):
        self.client = client
        self.search_limit = search_limit

    async def list_active_locations(self, merchant_id: str) -> List[str]:
        data = await self.client.get("/v2/locations", merchant_id)
        locations = [SquareLocation.model_validate(loc) for loc in data.get("locations", [])]
        return [loc.id for loc in locations if loc.is_active]

    async def search_invoices(
        self,
        merchant_id: str,
        location_id: str,
        cursor: Optional[str] = None,
    ) -> InvoicePage:
        body: Dict[str, Any] = {
            "query": {
                "filter": {"location_ids": [location_id]},
                "sort": {"field": "INVOICE_SORT_DATE", "order": "DESC"},
            },
            "limit": self.search_limit,
        }
        if cursor:
            body["cursor"] = cursor

        data = await self.client.post("/v2/invoices/search", merchant_id, data=body)
        response = SquareInvoiceSearchResponse.model_validate(data)

        return InvoicePage(
            invoices=[self._to_summary(inv, default_location=location_id) for inv in response.invoices],
            next_cursor=response.cursor or None,
        )

    async def get_invoice_detail(self, merchant_id: str, invoice_id: str) -> InvoiceSummary:
        data = await self.client.get(f"/v2/invoices/{invoice_id}", merchant_id)
        payload = data.get("invoice")
        if not payload:
            raise SquareApiError(f"Invoice {invoice_id} response had no invoice body")

        invoice = SquareInvoice.model_validate(payload)
        logger.debug(
            "Fetched invoice detail",
            extra_fields={
                "merchant_id": merchant_id,
                "invoice_id": invoice.id,
                "order_id": invoice.order_id,
                "status": invoice.status,
                "customer_id": invoice.customer_id,
                "due_date": invoice.due_date,
            },
        )
        return self._to_summary(invoice)

    async def get_order_lines(self, merchant_id: str, order_id: str) -> List[OrderLine]:
        data = await self.client.get(f"/v2/orders/{order_id}", merchant_id)
        payload = data.get("order")
        if not payload:
            return []

        order = SquareOrder.model_validate(payload)
        lines = []
        for item in order.line_items:
            quantity = item.quantity_as_int()
            if item.has_fractional_quantity():
                logger.warning(
                    "Fractional line quantity truncated to whole units",
                    extra_fields={
                        "merchant_id": merchant_id,
                        "order_id": order_id,
                        "catalog_object_id": item.catalog_object_id,
                        "quantity": item.quantity,
                        "reserved": quantity,
                    },
                )
            lines.append(OrderLine(
                catalog_object_id=item.catalog_object_id,
                quantity=quantity,
                location_id=order.location_id,
                name=item.name,
            ))
        return lines

    async def close(self) -> None:
        await self.client.disconnect()

    @staticmethod
    def _to_summary(invoice: SquareInvoice, default_location: Optional[str] = None) -> InvoiceSummary:
        return InvoiceSummary(
            id=invoice.id,
            status=invoice.status,
            location_id=invoice.location_id or default_location,
            order_id=invoice.order_id,
        )
