"""The contract between the sync coordinator and a marketplace client."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Union

from orchestrator.schemas import ProductSyncFilters

PageToken = Union[str, int, None]


@dataclass
class CatalogEntry:
    """One listed product: its id plus the attributes filters look at."""

    external_id: str
    active: bool = True
    brand: Optional[str] = None
    categories: List[str] = field(default_factory=list)
    updated_at: Optional[datetime] = None


@dataclass
class IdentifierPage:
    """A page of listed products and where to continue from."""

    items: List[CatalogEntry]
    has_more: bool = False
    next_page: PageToken = None
    total_count: Optional[int] = None


@dataclass
class CatalogRecord:
    """Full product as fetched for upsert."""

    external_id: str
    title: Optional[str] = None
    status: Optional[str] = None
    source_updated_at: Optional[datetime] = None
    data: Dict[str, Any] = field(default_factory=dict)


class MarketplaceAdapter(Protocol):
    """Client for one marketplace's catalog API.

    Implementations are synchronous and raise ``CredentialError`` for rejected
    credentials and ``TransientAdapterError`` for network or rate-limit failures.
    """

    marketplace: str
    supports_query_filters: bool

    def fetch_identifiers(
        self,
        credentials: Dict[str, Any],
        filters: ProductSyncFilters,
        page: PageToken,
        updated_after: Optional[datetime],
    ) -> IdentifierPage:
        ...

    def fetch_complete(self, credentials: Dict[str, Any], external_id: str) -> CatalogRecord:
        ...
