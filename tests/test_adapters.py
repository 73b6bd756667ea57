"""Tests for the marketplace HTTP adapters against a stubbed requests session."""

import json
from datetime import datetime

import pytest
import requests

from orchestrator.adapters.http import parse_timestamp
from orchestrator.adapters.shopify import ShopifyAdapter
from orchestrator.adapters.vtex import VtexAdapter
from orchestrator.adapters.woocommerce import WooCommerceAdapter
from orchestrator.errors import CredentialError, TransientAdapterError, ValidationError
from orchestrator.models import EPOCH
from orchestrator.schemas import ProductSyncFilters

SHOPIFY = {"shop_url": "https://demo.myshopify.com/", "access_token": "shpat"}
VTEX = {"account_name": "demo", "app_key": "key", "app_token": "token"}
WOO = {"site_url": "https://shop.example.com/", "consumer_key": "ck", "consumer_secret": "cs"}


def make_response(status=200, body=None, headers=None):
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(body if body is not None else {}).encode()
    response.headers.update(headers or {})
    return response


class StubSession:
    """Replays canned responses and records what was asked."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestErrorMapping:
    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_failures(self, status):
        adapter = WooCommerceAdapter(session=StubSession(make_response(status)))
        with pytest.raises(CredentialError):
            adapter.fetch_complete(WOO, "1")

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_retryable_statuses(self, status):
        adapter = WooCommerceAdapter(session=StubSession(make_response(status)))
        with pytest.raises(TransientAdapterError):
            adapter.fetch_complete(WOO, "1")

    def test_not_found_is_not_retryable(self):
        adapter = WooCommerceAdapter(session=StubSession(make_response(404)))
        with pytest.raises(ValidationError):
            adapter.fetch_complete(WOO, "1")

    def test_connection_errors_are_transient(self):
        adapter = WooCommerceAdapter(session=StubSession(requests.ConnectionError("reset")))
        with pytest.raises(TransientAdapterError):
            adapter.fetch_complete(WOO, "1")

    def test_missing_credentials(self):
        adapter = ShopifyAdapter(session=StubSession())
        with pytest.raises(CredentialError, match="access_token"):
            adapter.fetch_complete({"shop_url": "demo"}, "gid://shopify/Product/1")


class TestTimestamps:
    def test_offsets_become_naive_utc(self):
        assert parse_timestamp("2024-05-01T12:00:00-03:00") == datetime(2024, 5, 1, 15, 0)
        assert parse_timestamp("2024-05-01T12:00:00Z") == datetime(2024, 5, 1, 12, 0)
        assert parse_timestamp(None) is None


class TestShopify:
    def listing(self, has_next=False):
        return make_response(body={"data": {"products": {
            "edges": [{"node": {"id": "gid://shopify/Product/1", "status": "ACTIVE", "vendor": "Acme",
                                "productType": "Shoes", "updatedAt": "2024-05-01T00:00:00Z"}}],
            "pageInfo": {"hasNextPage": has_next, "endCursor": "cursor-1"},
        }}})

    def test_listing_sends_search_query(self):
        session = StubSession(self.listing(has_next=True))
        adapter = ShopifyAdapter(session=session, page_size=25)
        page = adapter.fetch_identifiers(SHOPIFY, ProductSyncFilters(brand_ids=["Acme"]), None,
                                         datetime(2024, 1, 1))

        call = session.calls[0]
        assert call["url"] == "https://demo.myshopify.com/admin/api/2023-10/graphql.json"
        assert call["headers"]["X-Shopify-Access-Token"] == "shpat"
        variables = call["json"]["variables"]
        assert variables["first"] == 25
        assert variables["query"] == "status:active vendor:\"Acme\" updated_at:>'2024-01-01T00:00:00Z'"
        assert page.has_more and page.next_page == "cursor-1"
        (entry,) = page.items
        assert entry.active and entry.brand == "Acme" and entry.categories == ["Shoes"]

    def test_throttling_is_transient(self):
        session = StubSession(make_response(body={"errors": [{"message": "Throttled"}]}))
        with pytest.raises(TransientAdapterError):
            ShopifyAdapter(session=session).fetch_identifiers(SHOPIFY, ProductSyncFilters(), None, EPOCH)

    def test_query_errors_are_not_retryable(self):
        session = StubSession(make_response(body={"errors": [{"message": "Field 'x' doesn't exist"}]}))
        with pytest.raises(ValidationError):
            ShopifyAdapter(session=session).fetch_identifiers(SHOPIFY, ProductSyncFilters(), None, EPOCH)

    def test_fetch_complete(self):
        session = StubSession(make_response(body={"data": {"product": {
            "id": "gid://shopify/Product/1", "title": "Runner", "status": "ARCHIVED",
            "updatedAt": "2024-05-01T00:00:00Z",
        }}}))
        record = ShopifyAdapter(session=session).fetch_complete(SHOPIFY, "gid://shopify/Product/1")
        assert record.title == "Runner"
        assert record.status == "archived"
        assert record.source_updated_at == datetime(2024, 5, 1)


class TestVtex:
    def test_listing_loads_filter_attributes(self):
        session = StubSession(
            make_response(body={"data": {"10": [100], "11": []}, "range": {"total": 3}}),
            make_response(body={"Id": 10, "IsActive": True, "BrandId": 5, "CategoryId": 7}),
            make_response(body={"Id": 11, "IsActive": True, "BrandId": 6, "CategoryId": 7}),
        )
        page = VtexAdapter(session=session, page_size=2).fetch_identifiers(VTEX, ProductSyncFilters(), None, EPOCH)
        assert session.calls[0]["params"] == {"_from": 1, "_to": 2}
        assert [e.external_id for e in page.items] == ["10", "11"]
        assert page.items[0].active and page.items[0].brand == "5" and page.items[0].categories == ["7"]
        # A product without SKUs cannot be sold.
        assert not page.items[1].active
        assert page.has_more and page.next_page == 2


class TestWooCommerce:
    def test_listing_pages_by_header(self):
        session = StubSession(make_response(
            body=[{"id": 1, "status": "publish", "categories": [{"id": 3}], "brands": [{"id": 9}],
                   "date_modified_gmt": "2024-05-01T10:00:00"}],
            headers={"X-WP-TotalPages": "2", "X-WP-Total": "11"},
        ))
        page = WooCommerceAdapter(session=session, page_size=10).fetch_identifiers(
            WOO, ProductSyncFilters(), None, datetime(2024, 4, 1))

        call = session.calls[0]
        assert call["url"] == "https://shop.example.com/wp-json/wc/v3/products"
        assert call["auth"] == ("ck", "cs")
        assert call["params"]["modified_after"] == "2024-04-01T00:00:00"
        assert call["params"]["dates_are_gmt"] == "true"
        (entry,) = page.items
        assert entry.external_id == "1" and entry.brand == "9" and entry.categories == ["3"]
        assert page.has_more and page.next_page == 2 and page.total_count == 11

    def test_epoch_watermark_lists_everything(self):
        session = StubSession(make_response(body=[], headers={"X-WP-TotalPages": "1"}))
        page = WooCommerceAdapter(session=session).fetch_identifiers(WOO, ProductSyncFilters(), None, EPOCH)
        assert "modified_after" not in session.calls[0]["params"]
        assert "dates_are_gmt" not in session.calls[0]["params"]
        assert not page.has_more
