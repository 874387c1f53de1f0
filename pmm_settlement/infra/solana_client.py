"""
Solana access for payouts.

Balances come straight from the cluster's JSON-RPC. Payments are built,
signed and broadcast by the PMM signer service, which holds the Solana key
and knows the protocol program's accounts; this client hands it the payment
arguments and gets back the transaction signature. The trade id doubles as
the signer's idempotency key, so resubmitting the same payment is safe.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx


class SolanaRpcError(Exception):
    """JSON-RPC error response from the Solana cluster."""
    pass


@dataclass(frozen=True)
class SolanaPayment:
    trade_id: str
    to_address: str
    token: Optional[str]  # None for native SOL
    amount: int
    total_fee: int
    deadline: int

    def to_payload(self) -> Dict[str, Any]:
        return {
            "tradeId": self.trade_id,
            "toUser": self.to_address,
            "token": self.token,
            "amount": str(self.amount),
            "totalFee": str(self.total_fee),
            "deadline": self.deadline,
            "idempotencyKey": self.trade_id,
        }


class SolanaPaymentClient(Protocol):
    address: str

    async def get_sol_balance(self) -> int: ...

    async def get_token_balance(self, mint: str) -> int: ...

    async def send_payment(self, payment: SolanaPayment) -> str: ...


class HttpSolanaClient:
    def __init__(
        self,
        rpc_url: str,
        signer_url: str,
        address: str,
        timeout: float = 15.0,
        rpc_client: Optional[httpx.AsyncClient] = None,
        signer_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.address = address
        self._ids = itertools.count(1)
        self._owned = []
        if rpc_client is None:
            rpc_client = httpx.AsyncClient(base_url=rpc_url, timeout=timeout)
            self._owned.append(rpc_client)
        if signer_client is None:
            signer_client = httpx.AsyncClient(base_url=signer_url.rstrip("/"), timeout=timeout)
            self._owned.append(signer_client)
        self._rpc = rpc_client
        self._signer = signer_client

    async def close(self) -> None:
        for client in self._owned:
            await client.aclose()

    async def _rpc_call(self, method: str, params: list) -> Any:
        resp = await self._rpc.post("", json={"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params})
        resp.raise_for_status()
        body = resp.json()
        if body.get("error"):
            raise SolanaRpcError(f"{method}: {body['error']}")
        return body.get("result")

    async def get_sol_balance(self) -> int:
        result = await self._rpc_call("getBalance", [self.address, {"commitment": "confirmed"}])
        return int(result["value"])

    async def get_token_balance(self, mint: str) -> int:
        result = await self._rpc_call(
            "getTokenAccountsByOwner",
            [self.address, {"mint": mint}, {"encoding": "jsonParsed", "commitment": "confirmed"}],
        )
        total = 0
        for account in result.get("value", []):
            info = account["account"]["data"]["parsed"]["info"]
            total += int(info["tokenAmount"]["amount"])
        return total

    async def send_payment(self, payment: SolanaPayment) -> str:
        resp = await self._signer.post("/v1/solana/payment", json=payment.to_payload())
        resp.raise_for_status()
        return resp.json()["signature"]
