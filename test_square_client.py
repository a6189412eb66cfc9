"""
Square Connector Tests

Exercises SquareApiClient error mapping/retries and SquareInvoiceSource payload
normalization against a scripted aiohttp session (no network).
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp
import pytest

from connectors.invoice_base import PermissionDenied, RemoteFailure
from connectors.square import (
    RetryConfig,
    SquareApiClient,
    SquareApiConfig,
    SquareApiError,
    SquareAuthenticationError,
    SquareInvoiceSource,
    SquareNotFoundError,
    SquarePermissionError,
    SquareRateLimitError,
    SquareValidationError,
)
from connectors.square.square_models import SquareLineItem
from core.security.credentials import InMemoryCredentialStore, MissingCredentialError


MERCHANT = "M-001"


class FakeResponse:
    def __init__(self, status: int, body: Any = None, headers: Optional[Dict[str, str]] = None):
        self.status = status
        self.headers = headers or {}
        if body is None:
            self._text = ""
        elif isinstance(body, str):
            self._text = body
        else:
            self._text = json.dumps(body)

    async def text(self) -> str:
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Returns scripted responses (or raises scripted errors) in order."""

    def __init__(self, responses: List[Any]):
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True


def make_client(responses, max_retries=2, tokens=None):
    session = FakeSession(responses)
    config = SquareApiConfig(
        base_url="https://square.test",
        retry_config=RetryConfig(max_retries=max_retries, base_delay=0.0),
    )
    credentials = InMemoryCredentialStore(tokens if tokens is not None else {MERCHANT: "tok-1"})
    return SquareApiClient(credentials, config, session=session), session


class TestSquareApiClient:
    """HTTP error mapping and retries."""

    def test_success_sends_auth_and_version_headers(self):
        client, session = make_client([FakeResponse(200, {"locations": []})])

        data = asyncio.run(client.get("/v2/locations", MERCHANT))

        assert data == {"locations": []}
        call = session.calls[0]
        assert call["method"] == "GET"
        assert call["url"] == "https://square.test/v2/locations"
        assert call["headers"]["Authorization"] == "Bearer tok-1"
        assert call["headers"]["Square-Version"] == client.api_config.api_version

    def test_403_maps_to_permission_error(self):
        body = {"errors": [{"category": "AUTHENTICATION_ERROR", "code": "INSUFFICIENT_SCOPES"}]}
        client, _ = make_client([FakeResponse(403, body)])

        with pytest.raises(SquarePermissionError) as exc_info:
            asyncio.run(client.post("/v2/invoices/search", MERCHANT, data={}))

        assert isinstance(exc_info.value, PermissionDenied)
        assert not isinstance(exc_info.value, RemoteFailure)
        assert exc_info.value.status_code == 403

    def test_insufficient_scopes_code_maps_to_permission_error(self):
        body = {"errors": [{"code": "INSUFFICIENT_SCOPES"}]}
        client, _ = make_client([FakeResponse(401, body)])

        with pytest.raises(SquarePermissionError):
            asyncio.run(client.get("/v2/locations", MERCHANT))

    def test_401_maps_to_authentication_error(self):
        client, session = make_client([FakeResponse(401, {"errors": [{"code": "UNAUTHORIZED"}]})])

        with pytest.raises(SquareAuthenticationError) as exc_info:
            asyncio.run(client.get("/v2/locations", MERCHANT))

        assert isinstance(exc_info.value, RemoteFailure)
        assert exc_info.value.error_codes == ["UNAUTHORIZED"]
        assert len(session.calls) == 1

    def test_404_maps_to_not_found(self):
        client, _ = make_client([FakeResponse(404, {"errors": [{"code": "NOT_FOUND"}]})])
        with pytest.raises(SquareNotFoundError):
            asyncio.run(client.get("/v2/orders/missing", MERCHANT))

    def test_400_not_retried(self):
        client, session = make_client([FakeResponse(400, {"errors": [{"code": "BAD_REQUEST"}]})])

        with pytest.raises(SquareValidationError):
            asyncio.run(client.post("/v2/invoices/search", MERCHANT, data={}))
        assert len(session.calls) == 1

    def test_5xx_retried_then_succeeds(self):
        client, session = make_client([
            FakeResponse(503, "unavailable"),
            FakeResponse(502, "bad gateway"),
            FakeResponse(200, {"ok": True}),
        ])

        assert asyncio.run(client.get("/v2/locations", MERCHANT)) == {"ok": True}
        assert len(session.calls) == 3

    def test_5xx_exhausts_retries(self):
        client, session = make_client([FakeResponse(500, "boom")] * 3, max_retries=2)

        with pytest.raises(SquareApiError) as exc_info:
            asyncio.run(client.get("/v2/locations", MERCHANT))

        assert exc_info.value.status_code == 500
        assert len(session.calls) == 3

    def test_429_waits_then_raises_rate_limit(self):
        client, session = make_client(
            [FakeResponse(429, "", headers={"Retry-After": "0"})] * 2,
            max_retries=1,
        )

        with pytest.raises(SquareRateLimitError) as exc_info:
            asyncio.run(client.get("/v2/locations", MERCHANT))

        assert exc_info.value.retry_after == 0
        assert len(session.calls) == 2

    def test_connection_error_retried_then_raised_as_remote_failure(self):
        client, session = make_client(
            [aiohttp.ClientConnectionError("reset"), asyncio.TimeoutError()],
            max_retries=1,
        )

        with pytest.raises(SquareApiError):
            asyncio.run(client.get("/v2/locations", MERCHANT))
        assert len(session.calls) == 2

    def test_missing_credential_raises_before_request(self):
        client, session = make_client([], tokens={})

        with pytest.raises(MissingCredentialError):
            asyncio.run(client.get("/v2/locations", MERCHANT))
        assert session.calls == []

    def test_not_connected_raises(self):
        client = SquareApiClient(InMemoryCredentialStore({MERCHANT: "tok"}))
        with pytest.raises(SquareApiError):
            asyncio.run(client.get("/v2/locations", MERCHANT))

    def test_disconnect_leaves_injected_session_open(self):
        client, session = make_client([])
        asyncio.run(client.disconnect())
        assert session.closed is False


class TestSquareInvoiceSource:
    """Payload normalization."""

    def test_only_active_locations_returned(self):
        client, _ = make_client([FakeResponse(200, {"locations": [
            {"id": "L1", "status": "ACTIVE"},
            {"id": "L2", "status": "INACTIVE"},
            {"id": "L3", "status": "active"},
        ]})])

        locations = asyncio.run(SquareInvoiceSource(client).list_active_locations(MERCHANT))

        assert locations == ["L1", "L3"]

    def test_search_request_shape_and_cursor(self):
        client, session = make_client([FakeResponse(200, {
            "invoices": [
                {"id": "inv-1", "status": "UNPAID", "order_id": "ord-1", "location_id": "L1"},
                {"id": "inv-2", "status": "PAID"},
            ],
            "cursor": "next-page",
        })])
        source = SquareInvoiceSource(client, search_limit=50)

        page = asyncio.run(source.search_invoices(MERCHANT, "L1", cursor="this-page"))

        body = session.calls[0]["json"]
        assert session.calls[0]["url"] == "https://square.test/v2/invoices/search"
        assert body["query"]["filter"] == {"location_ids": ["L1"]}
        assert body["query"]["sort"] == {"field": "INVOICE_SORT_DATE", "order": "DESC"}
        assert body["limit"] == 50
        assert body["cursor"] == "this-page"

        assert page.next_cursor == "next-page"
        assert [inv.id for inv in page.invoices] == ["inv-1", "inv-2"]
        assert page.invoices[0].order_id == "ord-1"
        # Missing invoice location falls back to the searched location
        assert page.invoices[1].location_id == "L1"

    def test_search_last_page_has_no_cursor(self):
        client, session = make_client([FakeResponse(200, {})])

        page = asyncio.run(SquareInvoiceSource(client).search_invoices(MERCHANT, "L1"))

        assert page.invoices == []
        assert page.next_cursor is None
        assert "cursor" not in session.calls[0]["json"]

    def test_invoice_detail(self):
        client, _ = make_client([FakeResponse(200, {"invoice": {
            "id": "inv-1", "status": "SCHEDULED", "order_id": "ord-9", "location_id": "L2",
        }})])

        detail = asyncio.run(SquareInvoiceSource(client).get_invoice_detail(MERCHANT, "inv-1"))

        assert detail.order_id == "ord-9"
        assert detail.location_id == "L2"
        assert detail.is_open is True

    def test_invoice_detail_without_body_is_remote_failure(self):
        client, _ = make_client([FakeResponse(200, {})])
        with pytest.raises(RemoteFailure):
            asyncio.run(SquareInvoiceSource(client).get_invoice_detail(MERCHANT, "inv-1"))

    def test_order_lines_carry_order_location(self):
        client, _ = make_client([FakeResponse(200, {"order": {
            "id": "ord-1",
            "location_id": "L4",
            "state": "OPEN",
            "line_items": [
                {"uid": "a", "catalog_object_id": "var-1", "quantity": "2", "name": "Widget"},
                {"uid": "b", "quantity": "1", "name": "Custom amount"},
            ],
        }})])

        lines = asyncio.run(SquareInvoiceSource(client).get_order_lines(MERCHANT, "ord-1"))

        assert [(l.catalog_object_id, l.quantity, l.location_id) for l in lines] == [
            ("var-1", 2, "L4"),
            (None, 1, "L4"),
        ]

    def test_fractional_quantity_truncated_with_warning(self, caplog):
        client, _ = make_client([FakeResponse(200, {"order": {
            "id": "ord-1",
            "location_id": "L4",
            "line_items": [
                {"uid": "a", "catalog_object_id": "var-1", "quantity": "1.5"},
                {"uid": "b", "catalog_object_id": "var-2", "quantity": "2"},
            ],
        }})])

        with caplog.at_level(logging.WARNING):
            lines = asyncio.run(SquareInvoiceSource(client).get_order_lines(MERCHANT, "ord-1"))

        assert [(l.catalog_object_id, l.quantity) for l in lines] == [("var-1", 1), ("var-2", 2)]
        warned = [r for r in caplog.records if "Fractional line quantity" in r.getMessage()]
        assert len(warned) == 1
        assert warned[0].extra_fields["catalog_object_id"] == "var-1"
        assert warned[0].extra_fields["quantity"] == "1.5"
        assert warned[0].extra_fields["reserved"] == 1

    def test_order_without_body_has_no_lines(self):
        client, _ = make_client([FakeResponse(200, {})])
        assert asyncio.run(SquareInvoiceSource(client).get_order_lines(MERCHANT, "ord-1")) == []

    def test_close_disconnects_client(self):
        client, _ = make_client([])
        source = SquareInvoiceSource(client)
        asyncio.run(source.close())
        assert client._session is None


@pytest.mark.parametrize("raw,expected", [
    ("3", 3),
    ("2.0", 2),
    ("1.5", 1),
    ("0", 0),
    ("abc", 0),
    (None, 0),
])
def test_line_item_quantity_parsing(raw, expected):
    assert SquareLineItem(quantity=raw).quantity_as_int() == expected


@pytest.mark.parametrize("raw,expected", [
    ("1.5", True),
    ("2.0", False),
    ("3", False),
    ("abc", False),
    (None, False),
])
def test_line_item_fractional_quantity(raw, expected):
    assert SquareLineItem(quantity=raw).has_fractional_quantity() is expected
