"""WooCommerce REST adapter (wc/v3). The watermark is sent as ``modified_after``."""

from datetime import datetime
from typing import Any, Dict, Optional

from orchestrator.adapters.http import HttpMarketplaceAdapter, parse_timestamp
from orchestrator.models import EPOCH
from orchestrator.schemas import ProductSyncFilters
from orchestrator.sync.adapters import CatalogEntry, CatalogRecord, IdentifierPage, PageToken


class WooCommerceAdapter(HttpMarketplaceAdapter):
    marketplace = "woocommerce"
    supports_query_filters = False

    def _get(self, credentials: Dict[str, Any], path: str, **params: Any):
        self._require(credentials, "site_url", "consumer_key", "consumer_secret")
        site = credentials["site_url"].rstrip("/")
        return self._request(
            "GET",
            f"{site}/wp-json/wc/v3{path}",
            params=params or None,
            auth=(credentials["consumer_key"], credentials["consumer_secret"]),
        )

    def fetch_identifiers(self, credentials: Dict[str, Any], filters: ProductSyncFilters,
                          page: PageToken, updated_after: Optional[datetime]) -> IdentifierPage:
        number = int(page or 1)
        params: Dict[str, Any] = {"page": number, "per_page": self.page_size}
        if updated_after is not None and updated_after > EPOCH:
            params["modified_after"] = updated_after.strftime("%Y-%m-%dT%H:%M:%S")
            # The watermark is naive UTC; without this WooCommerce reads it in site time.
            params["dates_are_gmt"] = "true"
        response = self._get(credentials, "/products", **params)
        total_pages = int(response.headers.get("X-WP-TotalPages", number))
        total = response.headers.get("X-WP-Total")
        items = [
            CatalogEntry(
                external_id=str(product["id"]),
                active=product.get("status") == "publish",
                brand=next((str(b["id"]) for b in product.get("brands", [])), None),
                categories=[str(c["id"]) for c in product.get("categories", [])],
                updated_at=parse_timestamp(product.get("date_modified_gmt")),
            )
            for product in response.json()
        ]
        return IdentifierPage(
            items=items,
            has_more=number < total_pages,
            next_page=number + 1,
            total_count=int(total) if total is not None else None,
        )

    def fetch_complete(self, credentials: Dict[str, Any], external_id: str) -> CatalogRecord:
        product = self._get(credentials, f"/products/{external_id}").json()
        return CatalogRecord(
            external_id=str(product["id"]),
            title=product.get("name"),
            status="active" if product.get("status") == "publish" else product.get("status"),
            source_updated_at=parse_timestamp(product.get("date_modified_gmt")),
            data=product,
        )
