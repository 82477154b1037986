"""Storefront order source contract.

WHAT:
    - OrderFilters: query filters shared by jobs and the storefront client
    - StorefrontClient: the protocol the orchestrator depends on
    - ShopifyStorefront: the Shopify REST implementation

WHY:
    The orchestrator fetches pages through this seam, so tests can swap in
    a fake without touching HTTP.

REFERENCES:
    - ordersync/services/shopify_client.py
    - ordersync/workers/order_sync_worker.py (consumer)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

from pydantic import BaseModel, Field

from ordersync.services.connection_service import ChannelConnection
from ordersync.services.shopify_client import MAX_PAGE_LIMIT, OrdersPage, ShopifyClient

logger = logging.getLogger(__name__)


class OrderFilters(BaseModel):
    """Order query filters (Shopify REST parameter names).

    Dates are ISO-8601 strings, passed through to Shopify unchanged.
    """

    status: str = "any"
    created_at_min: Optional[str] = None
    created_at_max: Optional[str] = None
    limit: int = Field(default=MAX_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT)
    page_info: Optional[str] = None

    def has_date_bounds(self) -> bool:
        return bool(self.created_at_min or self.created_at_max)

    def to_query_params(self) -> Dict[str, Any]:
        """Build Shopify query params.

        Shopify rejects any filter other than `limit` alongside `page_info`;
        the cursor already encodes the original filters.
        """
        if self.page_info:
            return {"limit": self.limit, "page_info": self.page_info}

        params: Dict[str, Any] = {"status": self.status, "limit": self.limit}
        if self.created_at_min:
            params["created_at_min"] = self.created_at_min
        if self.created_at_max:
            params["created_at_max"] = self.created_at_max
        return params


class StorefrontClient(Protocol):
    async def fetch_orders(self, connection: ChannelConnection, filters: OrderFilters) -> OrdersPage:
        ...


class ShopifyStorefront:
    """StorefrontClient backed by the Shopify REST Admin API.

    One ShopifyClient per shop is kept so per-shop request spacing holds
    across pages of the same sync job.
    """

    def __init__(self, api_version: str = "2024-07", transport=None):
        self.api_version = api_version
        self._transport = transport
        self._clients: Dict[str, ShopifyClient] = {}

    def _client_for(self, connection: ChannelConnection) -> ShopifyClient:
        client = self._clients.get(connection.shop_domain)
        if client is None or client.access_token != connection.access_token:
            client = ShopifyClient(
                shop_domain=connection.shop_domain,
                access_token=connection.access_token,
                api_version=self.api_version,
                transport=self._transport,
            )
            self._clients[connection.shop_domain] = client
        return client

    async def fetch_orders(self, connection: ChannelConnection, filters: OrderFilters) -> OrdersPage:
        return await self._client_for(connection).get_orders(filters.to_query_params())
