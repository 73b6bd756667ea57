"""VTEX catalog adapter. The listing API cannot filter, so filtering happens after fetch."""

from datetime import datetime
from typing import Any, Dict, Optional

from orchestrator.adapters.http import HttpMarketplaceAdapter, clean_host, parse_timestamp
from orchestrator.schemas import ProductSyncFilters
from orchestrator.sync.adapters import CatalogEntry, CatalogRecord, IdentifierPage, PageToken


class VtexAdapter(HttpMarketplaceAdapter):
    marketplace = "vtex"
    supports_query_filters = False

    def _base_url(self, credentials: Dict[str, Any]) -> str:
        self._require(credentials, "account_name", "app_key", "app_token")
        account = clean_host(credentials["account_name"], ".vtexcommercestable.com.br")
        return f"https://{account}.vtexcommercestable.com.br/api/catalog_system/pvt"

    def _get(self, credentials: Dict[str, Any], path: str, **params: Any) -> Any:
        response = self._request(
            "GET",
            f"{self._base_url(credentials)}{path}",
            params=params or None,
            headers={
                "X-VTEX-API-AppKey": credentials["app_key"],
                "X-VTEX-API-AppToken": credentials["app_token"],
                "Accept": "application/json",
            },
        )
        return response.json()

    def fetch_identifiers(self, credentials: Dict[str, Any], filters: ProductSyncFilters,
                          page: PageToken, updated_after: Optional[datetime]) -> IdentifierPage:
        """List one page of product ids and load the attributes the filters need."""
        offset = int(page or 0)
        body = self._get(credentials, "/products/GetProductAndSkuIds",
                         _from=offset + 1, _to=offset + self.page_size)
        total = int((body.get("range") or {}).get("total", 0))
        items = []
        for product_id, sku_ids in (body.get("data") or {}).items():
            product = self._get(credentials, f"/product/{product_id}")
            categories = [str(product["CategoryId"])] if product.get("CategoryId") is not None else []
            items.append(CatalogEntry(
                external_id=str(product_id),
                active=bool(product.get("IsActive")) and bool(sku_ids),
                brand=str(product["BrandId"]) if product.get("BrandId") is not None else None,
                categories=categories,
                updated_at=parse_timestamp(product.get("ReleaseDate")),
            ))
        next_offset = offset + self.page_size
        return IdentifierPage(items=items, has_more=next_offset < total, next_page=next_offset, total_count=total)

    def fetch_complete(self, credentials: Dict[str, Any], external_id: str) -> CatalogRecord:
        product = self._get(credentials, f"/product/{external_id}")
        return CatalogRecord(
            external_id=str(product.get("Id", external_id)),
            title=product.get("Name"),
            status="active" if product.get("IsActive") else "inactive",
            source_updated_at=parse_timestamp(product.get("ReleaseDate")),
            data=product,
        )
