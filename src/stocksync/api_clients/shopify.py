"""Commerce platform REST client for inventory operations."""

import asyncio
import json
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import parse_qs, urlparse

import aiohttp

from .base import (
    APIConnectionError,
    AuthenticationError,
    CommerceAPIError,
    CommerceNotConfiguredError,
    RateLimitError,
    RetryExhaustedError
)
from .rate_limiter import RequestPacer, compute_backoff, parse_retry_after
from ..config.settings import CommerceSettings, RateLimitSettings
from ..utils.logging import get_logger

LEVELS_PAGE_SIZE = 250


def extract_next_page_info(link_header: Optional[str]) -> Optional[str]:
    """Pull the ``page_info`` cursor out of a ``Link`` header's rel="next" entry."""
    if not link_header:
        return None
    for part in str(link_header).split(","):
        segments = [segment.strip() for segment in part.split(";")]
        if len(segments) < 2 or not any(s.lower() == 'rel="next"' for s in segments[1:]):
            continue
        url = segments[0]
        if not (url.startswith("<") and url.endswith(">")):
            continue
        values = parse_qs(urlparse(url[1:-1]).query).get("page_info")
        if values and values[0]:
            return values[0]
    return None


def _summarize_variant(variant: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": variant.get("id"),
        "sku": variant.get("sku"),
        "product_id": variant.get("product_id"),
        "inventory_item_id": variant.get("inventory_item_id"),
        "title": variant.get("title"),
    }


class ShopifyClient:
    """REST client with request pacing and bounded retry.

    429 and 5xx responses and network failures are retried, honouring a
    ``Retry-After`` hint when present and backing off exponentially
    otherwise. Other 4xx responses fail immediately.
    """

    def __init__(
        self,
        commerce: CommerceSettings,
        rate_limit: Optional[RateLimitSettings] = None,
        session: Optional[aiohttp.ClientSession] = None,
        pacer: Optional[RequestPacer] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.commerce = commerce
        self.rate_limit = rate_limit or RateLimitSettings()
        self.session = session
        self._owns_session = session is None
        self.pacer = pacer or RequestPacer(self.rate_limit.min_interval_ms / 1000.0)
        self._sleep = sleep
        self.logger = get_logger(self.__class__.__name__)

    async def __aenter__(self):
        await self._get_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.rate_limit.request_timeout_seconds)
            self.session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self.session

    async def close(self) -> None:
        if self.session is not None and self._owns_session and not self.session.closed:
            await self.session.close()

    def _url(self, path: str) -> str:
        if not self.commerce.is_configured:
            raise CommerceNotConfiguredError("Commerce store and token must be configured")
        return f"{self.commerce.base_url}{path}"

    def _headers(self) -> Dict[str, str]:
        return {
            "X-Shopify-Access-Token": self.commerce.token,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _backoff(self, attempt: int) -> float:
        return compute_backoff(
            attempt,
            base=self.rate_limit.base_backoff_ms / 1000.0,
            max_delay=self.rate_limit.max_backoff_ms / 1000.0,
        )

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None
    ) -> Tuple[Any, Mapping[str, str]]:
        """Make a paced request, retrying transient failures.

        Returns:
            (decoded JSON body, response headers)

        Raises:
            AuthenticationError: On 401/403
            CommerceAPIError: On other non-retryable 4xx responses
            RetryExhaustedError: When retryable failures outlast ``max_retries``
        """
        url = self._url(path)
        query = {key: str(value) for key, value in (params or {}).items() if value is not None}
        max_attempts = self.rate_limit.max_retries + 1
        session = await self._get_session()

        status: Optional[int] = None
        body: Any = None
        for attempt in range(1, max_attempts + 1):
            retry_hint: Optional[float] = None
            try:
                async with self.pacer.slot():
                    async with session.request(
                        method,
                        url,
                        params=query or None,
                        json=json_body,
                        headers=self._headers()
                    ) as response:
                        status = response.status
                        headers = response.headers
                        body = await response.text()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                status, body = None, str(e)
                error: CommerceAPIError = APIConnectionError(f"Network error: {e}")
            else:
                if status in (401, 403):
                    raise AuthenticationError(
                        f"{method} {path} rejected credentials", status=status, body=body
                    )
                if status == 429:
                    retry_hint = parse_retry_after(headers.get("Retry-After"))
                    error = RateLimitError("Rate limit exceeded", retry_after=retry_hint, body=body)
                elif status >= 500:
                    retry_hint = parse_retry_after(headers.get("Retry-After"))
                    error = CommerceAPIError(f"{method} {path} -> {status}", status=status, body=body)
                elif status >= 400:
                    self.logger.error("Commerce request failed", method=method, path=path, status=status)
                    raise CommerceAPIError(f"{method} {path} -> {status} {body}", status=status, body=body)
                else:
                    try:
                        data = json.loads(body) if body else {}
                    except ValueError as e:
                        raise CommerceAPIError(
                            f"{method} {path} returned invalid JSON: {e}", status=status, body=body
                        )
                    return data, headers

            if attempt >= max_attempts:
                break
            delay = retry_hint if retry_hint is not None else self._backoff(attempt)
            self.logger.warning(
                "Commerce request failed, retrying",
                method=method,
                path=path,
                attempt=attempt,
                max_retries=self.rate_limit.max_retries,
                status=status,
                delay=delay,
                error=str(error)
            )
            await self._sleep(delay)

        self.logger.error(
            "Commerce request failed after all retries",
            method=method,
            path=path,
            attempts=max_attempts,
            status=status
        )
        raise RetryExhaustedError(
            f"{method} {path} failed after {max_attempts} attempts (last status {status})",
            status=status,
            body=body,
            attempts=max_attempts
        )

    # Variant and inventory item lookups

    async def find_variant_by_sku(self, sku: str) -> Optional[Dict[str, Any]]:
        sku = str(sku or "").strip()
        if not sku:
            return None
        data, _ = await self._request("GET", "/variants.json", params={"sku": sku})
        variants = data.get("variants") or []
        return _summarize_variant(variants[0]) if variants else None

    async def find_variant_by_inventory_item_id(self, inventory_item_id: Any) -> Optional[Dict[str, Any]]:
        raw = str(inventory_item_id or "").strip()
        if not raw:
            return None
        data, _ = await self._request("GET", "/variants.json", params={"inventory_item_ids": raw})
        variants = data.get("variants") or []
        match = next(
            (v for v in variants if str(v.get("inventory_item_id") or "").strip() == raw),
            variants[0] if variants else None
        )
        if not match or not match.get("sku"):
            return None
        return _summarize_variant(match)

    async def get_inventory_item_sku(self, inventory_item_id: Any) -> Optional[str]:
        data, _ = await self._request("GET", f"/inventory_items/{inventory_item_id}.json")
        sku = str((data.get("inventory_item") or {}).get("sku") or "").strip()
        return sku or None

    # Inventory levels

    async def list_inventory_levels(
        self,
        updated_at_min: Optional[datetime] = None,
        page_info: Optional[str] = None,
        location_id: Optional[str] = None,
        limit: int = LEVELS_PAGE_SIZE
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Fetch one page of inventory levels.

        When ``page_info`` is given only ``limit`` accompanies it; the other
        filters are carried by the cursor.

        Returns:
            (levels, next page cursor or None)
        """
        params: Dict[str, Any] = {"limit": limit}
        if page_info:
            params["page_info"] = page_info
        else:
            if updated_at_min is not None:
                params["updated_at_min"] = updated_at_min.isoformat()
            location = location_id or self.commerce.location_id
            if location:
                params["location_ids"] = location

        data, headers = await self._request("GET", "/inventory_levels.json", params=params)
        levels = data.get("inventory_levels") or []
        return levels, extract_next_page_info(headers.get("Link"))

    async def list_inventory_levels_since(
        self,
        start: datetime,
        location_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Follow pagination from ``start`` until the last page.

        Raises:
            CommerceAPIError: If the page safety limit is exceeded
        """
        levels: List[Dict[str, Any]] = []
        page_info: Optional[str] = None
        pages = 0
        while True:
            batch, page_info = await self.list_inventory_levels(
                updated_at_min=None if page_info else start,
                page_info=page_info,
                location_id=location_id
            )
            levels.extend(batch)
            pages += 1
            if not page_info:
                break
            if pages >= self.rate_limit.max_pages:
                raise CommerceAPIError(
                    f"Inventory level pagination exceeded {self.rate_limit.max_pages} pages"
                )
        self.logger.info("Inventory levels fetched", levels=len(levels), pages=pages)
        return levels

    async def set_inventory_level(
        self,
        inventory_item_id: Any,
        available: float,
        location_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Set the absolute available quantity of an item at a location."""
        location = location_id or self.commerce.location_id
        if not location:
            raise CommerceNotConfiguredError("A commerce location id is required to set levels")
        payload = {
            "inventory_item_id": int(inventory_item_id),
            "location_id": int(location),
            "available": int(available) if float(available).is_integer() else available,
        }
        data, _ = await self._request("POST", "/inventory_levels/set.json", json_body=payload)
        return data.get("inventory_level") or data

    async def list_locations(self) -> List[Dict[str, Any]]:
        data, _ = await self._request("GET", "/locations.json")
        return data.get("locations") or []
