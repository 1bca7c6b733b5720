import logging
from typing import List, Optional, Sequence

import httpx

from storefront.errors import CatalogUnavailable, ValidationError
from storefront.schemas import OrderItem, to_cents

logger = logging.getLogger("storefront.catalog")


class CatalogClient:
    """
    Reads product name, price and image from the catalog service so order
    lines are priced by the server rather than by the client.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def _fetch(self, client: httpx.AsyncClient, product_ref: str) -> dict:
        try:
            resp = await client.get(f"/products/{product_ref}")
        except httpx.HTTPError as e:
            logger.error("[Catalog] Lookup of product %s failed: %s", product_ref, e)
            raise CatalogUnavailable() from e
        if resp.status_code == 404:
            raise ValidationError(f"Product {product_ref} not found")
        if resp.status_code >= 400:
            logger.error("[Catalog] Product %s lookup returned %d", product_ref, resp.status_code)
            raise CatalogUnavailable()
        return resp.json()

    async def reprice(self, items: Sequence[OrderItem]) -> List[OrderItem]:
        repriced = []
        async with self._client() as client:
            for item in items:
                product = await self._fetch(client, item.product_ref)
                price = product.get("price")
                if price is None:
                    raise ValidationError(f"Product {item.product_ref} has no price")
                repriced.append(item.model_copy(update={
                    "name": product.get("name") or item.name,
                    "unit_price": to_cents(str(price)),
                    "image_ref": product.get("image") or item.image_ref,
                }))
        return repriced
