"""Shared HTTP plumbing for the marketplace adapters."""

from datetime import datetime, timezone
from typing import Any, Optional

import requests
import structlog

from orchestrator.errors import CredentialError, TransientAdapterError, ValidationError

logger = structlog.get_logger()

RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """ISO-8601 timestamp from a marketplace API, as naive UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def clean_host(value: str, suffix: str = "") -> str:
    host = value.strip().replace("https://", "").replace("http://", "").rstrip("/")
    if suffix and host.endswith(suffix):
        host = host[: -len(suffix)]
    return host


class HttpMarketplaceAdapter:
    """Base class: one ``requests.Session`` and error mapping onto the orchestrator errors."""

    marketplace = "unknown"
    supports_query_filters = False

    def __init__(self, timeout: float = 30.0, page_size: int = 50, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.page_size = page_size
        self.session = session or requests.Session()

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            logger.warning("Marketplace request failed", marketplace=self.marketplace, url=url, error=str(e))
            raise TransientAdapterError(f"{self.marketplace} request failed: {e}") from e

        if response.status_code in (401, 403):
            raise CredentialError(f"{self.marketplace} authentication failed ({response.status_code})")
        if response.status_code in RETRYABLE_STATUS:
            raise TransientAdapterError(f"{self.marketplace} API returned {response.status_code}")
        if response.status_code == 404:
            raise ValidationError(f"{self.marketplace} resource not found: {url}")
        if response.status_code >= 400:
            raise TransientAdapterError(f"{self.marketplace} API returned {response.status_code}")
        return response

    @staticmethod
    def _require(credentials: dict, *keys: str) -> None:
        missing = [key for key in keys if not credentials.get(key)]
        if missing:
            raise CredentialError(f"Missing credentials: {', '.join(missing)}")
