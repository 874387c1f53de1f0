"""
Async client for the NEAR Intents 1Click swap API.

Endpoints used:
    POST /v0/quote            request a BTC -> USDC quote and deposit address
    GET  /v0/status           poll swap status by deposit address
    POST /v0/deposit/submit   tell the venue which BTC tx funded the deposit

Only the fields the engine consumes are parsed into typed objects; the raw
response is kept on each object for metadata snapshots.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx


class SwapQuoteError(Exception):
    """Raised when the swap venue rejects a request or returns an unusable body."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class SwapStatus(str, Enum):
    KNOWN_DEPOSIT_TX = "KNOWN_DEPOSIT_TX"
    PENDING_DEPOSIT = "PENDING_DEPOSIT"
    INCOMPLETE_DEPOSIT = "INCOMPLETE_DEPOSIT"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class SwapQuote:
    deposit_address: str
    amount_in: str
    amount_out: str
    amount_in_usd: str
    amount_out_usd: str
    min_amount_out: Optional[str]
    deadline: Optional[str]
    time_estimate: Optional[int]
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "SwapQuote":
        quote = data.get("quote")
        if not isinstance(quote, dict) or not quote.get("depositAddress"):
            raise SwapQuoteError("Quote response missing quote.depositAddress", body=data)
        return cls(
            deposit_address=quote["depositAddress"],
            amount_in=str(quote.get("amountIn", "0")),
            amount_out=str(quote.get("amountOut", "0")),
            amount_in_usd=str(quote.get("amountInUsd", "0")),
            amount_out_usd=str(quote.get("amountOutUsd", "0")),
            min_amount_out=quote.get("minAmountOut"),
            deadline=quote.get("deadline"),
            time_estimate=quote.get("timeEstimate"),
            raw=data,
        )


@dataclass(frozen=True)
class SwapStatusResponse:
    status: Optional[SwapStatus]
    raw_status: str
    amount_out: Optional[str]
    near_tx_hashes: List[str]
    destination_tx_hashes: List[str]
    refunded_amount_formatted: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def settlement_tx_hash(self) -> Optional[str]:
        """First NEAR tx hash, else first destination-chain tx hash."""
        if self.near_tx_hashes:
            return self.near_tx_hashes[0]
        if self.destination_tx_hashes:
            return self.destination_tx_hashes[0]
        return None

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "SwapStatusResponse":
        raw_status = str(data.get("status", ""))
        try:
            status: Optional[SwapStatus] = SwapStatus(raw_status)
        except ValueError:
            status = None
        details = data.get("swapDetails") or {}
        return cls(
            status=status,
            raw_status=raw_status,
            amount_out=details.get("amountOut"),
            near_tx_hashes=list(details.get("nearTxHashes") or []),
            destination_tx_hashes=[
                item["hash"] for item in details.get("destinationChainTxHashes") or [] if item.get("hash")
            ],
            refunded_amount_formatted=details.get("refundedAmountFormatted"),
            raw=data,
        )


@dataclass(frozen=True)
class QuoteRequest:
    amount: int
    recipient: str
    refund_to: str
    origin_asset: str
    destination_asset: str
    slippage_tolerance_bps: int
    referral: Optional[str] = None
    deadline_hours: int = 24
    dry: bool = False

    def to_payload(self, session_id: Optional[str] = None) -> Dict[str, Any]:
        deadline = datetime.now(timezone.utc) + timedelta(hours=self.deadline_hours)
        payload: Dict[str, Any] = {
            "dry": self.dry,
            "swapType": "FLEX_INPUT",
            "slippageTolerance": self.slippage_tolerance_bps,
            "originAsset": self.origin_asset,
            "depositType": "ORIGIN_CHAIN",
            "destinationAsset": self.destination_asset,
            "amount": str(self.amount),
            "refundTo": self.refund_to,
            "refundType": "ORIGIN_CHAIN",
            "recipient": self.recipient,
            "recipientType": "DESTINATION_CHAIN",
            "deadline": deadline.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "sessionId": session_id or str(uuid.uuid4()),
        }
        if self.referral:
            payload["referral"] = self.referral
        return payload


class SwapQuoteClient:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        # If a shared client is passed in, we won't close it in close(); otherwise we own the client.
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, headers=headers)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def request_quote(self, request: QuoteRequest, session_id: Optional[str] = None) -> SwapQuote:
        data = await self._request("POST", "/v0/quote", json=request.to_payload(session_id))
        return SwapQuote.from_response(data)

    async def get_status(self, deposit_address: str, deposit_memo: Optional[str] = None) -> SwapStatusResponse:
        params = {"depositAddress": deposit_address}
        if deposit_memo:
            params["depositMemo"] = deposit_memo
        data = await self._request("GET", "/v0/status", params=params)
        return SwapStatusResponse.from_response(data)

    async def submit_deposit(self, tx_hash: str, deposit_address: str) -> SwapStatusResponse:
        data = await self._request(
            "POST", "/v0/deposit/submit", json={"txHash": tx_hash, "depositAddress": deposit_address}
        )
        return SwapStatusResponse.from_response(data)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        resp = await self.client.request(method, path, **kwargs)
        if resp.status_code >= 400:
            raise SwapQuoteError(
                f"{method} {path} failed: HTTP {resp.status_code}",
                status_code=resp.status_code,
                body=resp.text,
            )
        data = resp.json()
        if not isinstance(data, dict):
            raise SwapQuoteError(f"{method} {path} returned non-object body", body=data)
        return data
