"""Shopify REST Admin API client (orders).

WHAT:
    Wrapper for the Shopify Admin REST orders endpoint with:
    - Authentication handling
    - Rate limiting (2 requests/second)
    - Cursor-based pagination via the Link header
    - Error handling and retries

WHY:
    Encapsulates all Shopify HTTP interaction for the order sync pipeline.
    The orchestrator only sees `OrdersPage` objects.

REFERENCES:
    - Orders API: https://shopify.dev/docs/api/admin-rest/2024-07/resources/order
    - Rate limits: https://shopify.dev/docs/api/usage/rate-limits
    - Pagination: https://shopify.dev/docs/api/usage/pagination-rest
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse, parse_qs

import httpx

from ordersync.exceptions import ConfigurationError, TransientSyncError

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "2024-07"

# Shopify allows 2 requests/second for regular apps (leaky bucket of 40)
RATE_LIMIT_DELAY = 0.5

# Shopify REST caps page size at 250
MAX_PAGE_LIMIT = 250

# Used when a 429 carries no usable Retry-After
DEFAULT_RETRY_AFTER = 2.0


class ShopifyAPIError(TransientSyncError):
    """Shopify request failed after all retries (timeouts, 429s, 5xx)."""

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[List] = None):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []


class ShopifyAuthError(ConfigurationError):
    """Token rejected (401/403). Retrying will not help until the shop reconnects."""

    def __init__(self, shop_domain: str, status_code: int):
        super().__init__(f"Shopify rejected credentials for {shop_domain} (HTTP {status_code})")
        self.shop_domain = shop_domain
        self.status_code = status_code


@dataclass
class OrdersPage:
    """One page of orders plus the cursor for the next page (if any)."""
    orders: List[Dict[str, Any]] = field(default_factory=list)
    next_page_info: Optional[str] = None


def extract_page_info(response: httpx.Response) -> Optional[str]:
    """Return the `page_info` cursor of the rel="next" Link, or None on the last page."""
    next_link = response.links.get("next")
    if not next_link or not next_link.get("url"):
        return None
    values = parse_qs(urlparse(next_link["url"]).query).get("page_info")
    return values[0] if values else None


def retry_after_seconds(response: httpx.Response) -> float:
    """Seconds to wait after a 429, from Retry-After or DEFAULT_RETRY_AFTER."""
    try:
        value = float(response.headers.get("Retry-After", DEFAULT_RETRY_AFTER))
    except ValueError:
        return DEFAULT_RETRY_AFTER
    return value if math.isfinite(value) and value >= 0 else DEFAULT_RETRY_AFTER


class ShopifyClient:
    """REST client for the Shopify Admin orders API.

    Usage:
        client = ShopifyClient(shop_domain="mystore.myshopify.com", access_token="shpat_xxx")
        page = await client.get_orders({"status": "any", "limit": 250})
        if page.next_page_info:
            page = await client.get_orders({"limit": 250, "page_info": page.next_page_info})
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        rate_limit_delay: float = RATE_LIMIT_DELAY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.shop_domain = shop_domain
        self.access_token = access_token
        self.api_version = api_version
        self.base_url = f"https://{shop_domain}/admin/api/{api_version}"
        self._rate_limit_delay = rate_limit_delay
        self._transport = transport

        self._last_request_time: float = 0

        logger.debug(f"[SHOPIFY_CLIENT] Initialized for {shop_domain} (API version: {api_version})")

    async def _rate_limit(self) -> None:
        """Wait if needed to respect the per-shop request rate."""
        elapsed = time.monotonic() - self._last_request_time

        if elapsed < self._rate_limit_delay:
            wait_time = self._rate_limit_delay - elapsed
            logger.debug(f"[SHOPIFY_CLIENT] Rate limiting: waiting {wait_time:.3f}s")
            await asyncio.sleep(wait_time)

        self._last_request_time = time.monotonic()

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        retries: int = 3,
    ) -> httpx.Response:
        """GET a REST resource with rate limiting and retry logic.

        Args:
            path: Resource path relative to the API root (e.g. "orders.json")
            params: Query parameters
            retries: Number of attempts for transient errors

        Returns:
            The successful httpx.Response

        Raises:
            ShopifyAuthError: On 401/403 (not retried)
            ShopifyAPIError: If the request fails after all retries
        """
        headers = {
            "X-Shopify-Access-Token": self.access_token,
            "Accept": "application/json",
        }
        url = f"{self.base_url}/{path}"
        last_error: Optional[Exception] = None
        last_status: Optional[int] = None

        for attempt in range(retries):
            await self._rate_limit()
            try:
                async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
                    response = await client.get(url, params=params, headers=headers)

                if response.status_code == 429:
                    retry_after = retry_after_seconds(response)
                    last_status = 429
                    logger.warning(
                        f"[SHOPIFY_CLIENT] Rate limited, waiting {retry_after}s (attempt {attempt + 1}/{retries})"
                    )
                    await asyncio.sleep(retry_after)
                    continue

                if response.status_code in (401, 403):
                    raise ShopifyAuthError(self.shop_domain, response.status_code)

                response.raise_for_status()
                return response

            except httpx.HTTPStatusError as e:
                last_error = e
                last_status = e.response.status_code
                logger.warning(
                    f"[SHOPIFY_CLIENT] HTTP error {e.response.status_code} (attempt {attempt + 1}/{retries})"
                )
                # 4xx other than 429 will not improve on retry
                if e.response.status_code < 500:
                    break
                if attempt < retries - 1:
                    await asyncio.sleep(1 * (attempt + 1))

            except httpx.RequestError as e:
                last_error = e
                logger.warning(f"[SHOPIFY_CLIENT] Request error: {e} (attempt {attempt + 1}/{retries})")
                if attempt < retries - 1:
                    await asyncio.sleep(1 * (attempt + 1))

        raise ShopifyAPIError(
            f"GET {path} failed after {retries} attempts: {last_error or 'rate limited'}",
            status_code=last_status,
        )

    # =========================================================================
    # ORDER QUERIES
    # =========================================================================

    async def get_orders(self, params: Dict[str, Any]) -> OrdersPage:
        """Fetch one page of orders.

        WHAT: GET orders.json with the given filters
        WHY: Entry point for the sync-orders job

        Args:
            params: Query parameters (status, created_at_min/max, limit, page_info)

        Returns:
            OrdersPage with raw order dicts and the next cursor
        """
        response = await self.get("orders.json", params=params)
        data = response.json()
        orders = data.get("orders") or []
        next_page_info = extract_page_info(response)

        logger.info(
            "[SHOPIFY_CLIENT] Fetched %d orders from %s (has_next=%s)",
            len(orders),
            self.shop_domain,
            bool(next_page_info),
        )
        return OrdersPage(orders=orders, next_page_info=next_page_info)
