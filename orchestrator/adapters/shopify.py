"""Shopify Admin GraphQL adapter. Filters run server-side through the search query."""

from datetime import datetime
from typing import Any, Dict, Optional

from orchestrator.adapters.http import HttpMarketplaceAdapter, clean_host, parse_timestamp
from orchestrator.errors import TransientAdapterError, ValidationError
from orchestrator.schemas import ProductSyncFilters
from orchestrator.sync.adapters import CatalogEntry, CatalogRecord, IdentifierPage, PageToken
from orchestrator.sync.filters import build_shopify_query

API_VERSION = "2023-10"

LIST_QUERY = """
query GetProducts($first: Int!, $after: String, $query: String) {
  products(first: $first, after: $after, query: $query) {
    edges { node { id status vendor productType updatedAt } }
    pageInfo { hasNextPage endCursor }
  }
}
"""

PRODUCT_QUERY = """
query GetProduct($id: ID!) {
  product(id: $id) {
    id title handle description productType vendor tags status createdAt updatedAt
    images(first: 10) { edges { node { id url altText } } }
    variants(first: 100) { edges { node { id title price compareAtPrice sku inventoryQuantity } } }
  }
}
"""


class ShopifyAdapter(HttpMarketplaceAdapter):
    marketplace = "shopify"
    supports_query_filters = True

    def _graphql(self, credentials: Dict[str, Any], query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        self._require(credentials, "shop_url", "access_token")
        store = clean_host(credentials["shop_url"], ".myshopify.com")
        response = self._request(
            "POST",
            f"https://{store}.myshopify.com/admin/api/{API_VERSION}/graphql.json",
            json={"query": query, "variables": variables},
            headers={"X-Shopify-Access-Token": credentials["access_token"]},
        )
        body = response.json()
        if body.get("errors"):
            message = "; ".join(str(e.get("message", e)) for e in body["errors"])
            if "THROTTLED" in message.upper():
                raise TransientAdapterError(f"Shopify throttled the request: {message}")
            raise ValidationError(f"Shopify query failed: {message}")
        return body["data"]

    def fetch_identifiers(self, credentials: Dict[str, Any], filters: ProductSyncFilters,
                          page: PageToken, updated_after: Optional[datetime]) -> IdentifierPage:
        query = build_shopify_query(filters, updated_after)
        data = self._graphql(credentials, LIST_QUERY, {
            "first": self.page_size,
            "after": page,
            "query": query or None,
        })
        products = data["products"]
        items = [
            CatalogEntry(
                external_id=edge["node"]["id"],
                active=edge["node"].get("status") == "ACTIVE",
                brand=edge["node"].get("vendor"),
                categories=[edge["node"]["productType"]] if edge["node"].get("productType") else [],
                updated_at=parse_timestamp(edge["node"].get("updatedAt")),
            )
            for edge in products["edges"]
        ]
        info = products["pageInfo"]
        return IdentifierPage(items=items, has_more=info["hasNextPage"], next_page=info.get("endCursor"))

    def fetch_complete(self, credentials: Dict[str, Any], external_id: str) -> CatalogRecord:
        product = self._graphql(credentials, PRODUCT_QUERY, {"id": external_id})["product"]
        if product is None:
            raise ValidationError(f"Shopify product {external_id} not found")
        return CatalogRecord(
            external_id=product["id"],
            title=product.get("title"),
            status=(product.get("status") or "").lower() or None,
            source_updated_at=parse_timestamp(product.get("updatedAt")),
            data=product,
        )
