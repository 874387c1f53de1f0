"""
USD spot price oracle over HTTP (CoinGecko simple-price shape).

Caches the last good price per coin for `cache_ttl` seconds so a burst of
quote jobs costs one request.
"""

from __future__ import annotations

import time
from typing import Dict, Optional, Tuple

import httpx

BITCOIN = "bitcoin"
SOLANA = "solana"


class PriceUnavailableError(Exception):
    """Raised when no usable price can be obtained."""
    pass


class PriceOracle:
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        cache_ttl: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._cache_ttl = cache_ttl
        self._cache: Dict[str, Tuple[float, float]] = {}
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def get_btc_price(self) -> float:
        return await self.get_price(BITCOIN)

    async def get_price(self, coin_id: str) -> float:
        now = time.monotonic()
        cached = self._cache.get(coin_id)
        if cached is not None and now - cached[1] < self._cache_ttl:
            return cached[0]

        try:
            resp = await self.client.get("/simple/price", params={"ids": coin_id, "vs_currencies": "usd"})
            resp.raise_for_status()
            price = float(resp.json()[coin_id]["usd"])
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
            raise PriceUnavailableError(f"{coin_id} price lookup failed: {exc}") from exc
        if price <= 0:
            raise PriceUnavailableError(f"{coin_id} price is not positive: {price}")

        self._cache[coin_id] = (price, now)
        return price
