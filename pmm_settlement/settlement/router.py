"""
Protocol lookups needed to build a payout: the PMM selection and payout
target for a trade, token metadata, the per-trade fee, the settlement
signer's EIP-712 domain, and the payment contract address for each EVM
network.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from pmm_settlement.settlement.models import Token
from pmm_settlement.settlement.multisig import Eip712Domain


@dataclass(frozen=True)
class FeeDetails:
    total_amount: int
    pmm_fee: int = 0
    protocol_fee: int = 0


@dataclass(frozen=True)
class PmmSelection:
    """Which PMM won the trade, and what it owes the user where."""
    selected_pmm_id: str
    amount_out: int
    to_address: str
    to_network_id: str
    to_token_address: str

    def is_selected(self, pmm_id: str) -> bool:
        return self.selected_pmm_id.lower() == pmm_id.lower()


class RouterClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def get_fee_details(self, trade_id: str) -> FeeDetails:
        resp = await self.client.get(f"/v1/trades/{trade_id}/fee-details")
        resp.raise_for_status()
        body = resp.json()
        data = body.get("data", body) if isinstance(body, dict) else {}
        return FeeDetails(
            total_amount=int(data["totalAmount"]),
            pmm_fee=int(data.get("pmmFeeAmount", 0)),
            protocol_fee=int(data.get("protocolFeeAmount", 0)),
        )

    async def get_pmm_selection(self, trade_id: str) -> PmmSelection:
        data = await self._get(f"/v1/trades/{trade_id}/pmm-selection")
        return PmmSelection(
            selected_pmm_id=str(data["selectedPmmId"]),
            amount_out=int(data["amountOut"]),
            to_address=str(data["toAddress"]),
            to_network_id=str(data["toNetworkId"]),
            to_token_address=str(data["toTokenAddress"]),
        )

    async def get_token(self, network_id: str, token_address: str) -> Token:
        data = await self._get(f"/v1/tokens/{network_id}/{token_address}")
        return Token(
            network_id=str(data.get("networkId", network_id)),
            network_type=str(data["networkType"]).upper(),
            token_address=str(data.get("tokenAddress", token_address)),
            token_symbol=str(data.get("tokenSymbol", "")),
            token_decimals=int(data.get("tokenDecimals", 0)),
        )

    async def get_signer_domain(self) -> Eip712Domain:
        data = await self._get("/v1/signer/domain")
        return Eip712Domain(
            name=str(data["name"]),
            version=str(data["version"]),
            chain_id=int(data["chainId"]),
            verifying_contract=str(data["verifyingContract"]),
        )

    async def _get(self, path: str) -> Dict[str, Any]:
        resp = await self.client.get(path)
        resp.raise_for_status()
        body = resp.json()
        return body.get("data", body) if isinstance(body, dict) else {}


class PaymentAddressBook:
    """network_id -> payment contract address, from PAYMENT_ADDRESSES."""

    def __init__(self, addresses: Dict[str, str]) -> None:
        self._addresses = dict(addresses)

    def get_payment_address(self, network_id: str) -> Optional[str]:
        return self._addresses.get(network_id)
