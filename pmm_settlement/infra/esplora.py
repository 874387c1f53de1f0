"""
Async Esplora client for Bitcoin transaction and balance lookups.

Queries every configured Esplora endpoint (mempool.space, blockstream.info, ...)
concurrently and takes the first successful answer. A transaction that no
provider knows yet, or a lookup where every provider fails, yields None: the
caller treats both as "not visible yet" and retries on its next tick.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

log = logging.getLogger("pmm_settlement")


class EsploraClient:
    def __init__(
        self,
        base_urls: List[str],
        timeout: float = 10.0,
        clients: Optional[List[httpx.AsyncClient]] = None,
    ) -> None:
        if not base_urls and not clients:
            raise ValueError("At least one Esplora URL is required")
        # If clients are passed in (tests, shared pools) we do not close them.
        if clients is not None:
            self._clients = clients
            self._owns_clients = False
        else:
            self._clients = [
                httpx.AsyncClient(base_url=url.rstrip("/"), timeout=timeout) for url in base_urls
            ]
            self._owns_clients = True

    async def close(self) -> None:
        if self._owns_clients:
            await asyncio.gather(*(c.aclose() for c in self._clients), return_exceptions=True)

    async def get_transaction(self, tx_id: str) -> Optional[Dict[str, Any]]:
        """
        Return the Esplora transaction document
        `{txid, status: {confirmed, block_height?}, vout: [{scriptpubkey_address?, value}]}`
        or None if no provider returned it.
        """
        return await self._race(f"/tx/{tx_id}", tx_id=tx_id)

    async def get_balance(self, address: str) -> int:
        """Confirmed plus mempool balance in satoshis."""
        data = await self._race(f"/address/{address}", address=address)
        if data is None:
            raise LookupError(f"Balance unavailable for {address}")
        chain = data.get("chain_stats", {})
        mempool = data.get("mempool_stats", {})
        funded = int(chain.get("funded_txo_sum", 0)) + int(mempool.get("funded_txo_sum", 0))
        spent = int(chain.get("spent_txo_sum", 0)) + int(mempool.get("spent_txo_sum", 0))
        return funded - spent

    async def _fetch(self, client: httpx.AsyncClient, path: str) -> Optional[Dict[str, Any]]:
        resp = await client.get(path)
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()

    async def _race(self, path: str, **ctx: Any) -> Optional[Dict[str, Any]]:
        tasks = [asyncio.create_task(self._fetch(c, path)) for c in self._clients]
        try:
            pending = set(tasks)
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    exc = task.exception()
                    if exc is not None:
                        log.debug(json.dumps({"event": "esplora_provider_error", "path": path, "error": str(exc), **ctx}))
                        continue
                    result = task.result()
                    if result is not None:
                        return result
            return None
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
