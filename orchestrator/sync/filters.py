"""Product sync filters: normalization, query-side and post-fetch application."""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from orchestrator.models import EPOCH
from orchestrator.schemas import ProductSyncFilters
from orchestrator.sync.adapters import CatalogEntry

DEFAULT_FILTERS = ProductSyncFilters()


def normalize_filters(filters: Union[ProductSyncFilters, Dict[str, Any], None]) -> ProductSyncFilters:
    """Fill in defaults: active products only, every brand and category."""
    if filters is None:
        return DEFAULT_FILTERS.model_copy()
    if isinstance(filters, dict):
        filters = ProductSyncFilters.model_validate(filters)
    return filters.model_copy()


def filters_exclude_all(filters: ProductSyncFilters) -> bool:
    """True when no product could possibly match."""
    if not filters.include_active and not filters.include_inactive:
        return True
    if filters.category_ids is not None and len(filters.category_ids) == 0:
        return True
    if filters.brand_ids is not None and len(filters.brand_ids) == 0:
        return True
    return False


def _or_group(field_name: str, values: List[str]) -> str:
    terms = " OR ".join(f'{field_name}:"{value}"' for value in values)
    return f"({terms})" if len(values) > 1 else terms


def build_shopify_query(filters: Optional[ProductSyncFilters], updated_after: Optional[datetime] = None) -> str:
    """Shopify product search syntax for the filters; terms are ANDed by spaces.

    Shopify has no brand or category ids, so brand ids are vendor names and
    category ids are product type names.
    """
    parts = []
    if filters is not None:
        if filters.include_active and not filters.include_inactive:
            parts.append("status:active")
        elif filters.include_inactive and not filters.include_active:
            parts.append("(status:archived OR status:draft)")
        if filters.brand_ids:
            parts.append(_or_group("vendor", filters.brand_ids))
        if filters.category_ids:
            parts.append(_or_group("product_type", filters.category_ids))
    if updated_after is not None and updated_after > EPOCH:
        parts.append(f"updated_at:>'{updated_after.strftime('%Y-%m-%dT%H:%M:%SZ')}'")
    return " ".join(parts)


def matches_filters(entry: CatalogEntry, filters: ProductSyncFilters) -> bool:
    if entry.active and not filters.include_active:
        return False
    if not entry.active and not filters.include_inactive:
        return False
    if filters.category_ids:
        wanted = {str(c) for c in filters.category_ids}
        if not wanted.intersection(str(c) for c in entry.categories):
            return False
    if filters.brand_ids:
        if entry.brand is None or str(entry.brand) not in {str(b) for b in filters.brand_ids}:
            return False
    return True


def apply_post_fetch_filters(
    entries: Iterable[CatalogEntry],
    filters: ProductSyncFilters,
    updated_after: Optional[datetime] = None,
) -> List[CatalogEntry]:
    """Filter fetched entries in memory, for marketplaces without server-side search.

    Entries with no known update time are kept, since there is nothing to
    compare against the watermark.
    """
    kept = []
    for entry in entries:
        if not matches_filters(entry, filters):
            continue
        if updated_after is not None and entry.updated_at is not None and entry.updated_at <= updated_after:
            continue
        kept.append(entry)
    return kept
