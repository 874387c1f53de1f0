"""
PMM Bitcoin wallet access.

Signing happens in a separate wallet/signer service that holds the PMM BTC
key; this client asks it to build, sign and broadcast a payment. Balances are
read from Esplora so the check does not depend on the signer being healthy.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from pmm_settlement.infra.esplora import EsploraClient


@dataclass(frozen=True)
class BtcSendResult:
    tx_id: str
    fee_sats: int


class BitcoinWallet(Protocol):
    address: str

    async def get_balance(self) -> int: ...

    async def send_btc(self, to_address: str, amount: int, op_return_data: Optional[str] = None) -> BtcSendResult: ...


class HttpBitcoinWallet:
    def __init__(
        self,
        base_url: str,
        address: str,
        esplora: EsploraClient,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.address = address
        self._esplora = esplora
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def get_balance(self) -> int:
        return await self._esplora.get_balance(self.address)

    async def send_btc(self, to_address: str, amount: int, op_return_data: Optional[str] = None) -> BtcSendResult:
        payload = {"toAddress": to_address, "amount": str(amount)}
        if op_return_data:
            payload["opReturnData"] = op_return_data
        resp = await self.client.post("/v1/btc/send", json=payload)
        resp.raise_for_status()
        data = resp.json()
        return BtcSendResult(tx_id=data["txId"], fee_sats=int(data.get("feeSats", 0)))
