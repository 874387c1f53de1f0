"""
Settlement submission to the solver.

After a payout lands, the PMM proves it to the solver by signing

    infoHash = keccak256(abi.encode(
        bytes32 tradeIdsHash, uint64 signedAt, uint64 startIdx, bytes paymentTxId))

as the EIP-712 message MakePayment(bytes32 infoHash) under the settlement
signer's domain, and posting it with the payment tx id.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

import httpx
from eth_abi import encode
from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import keccak

from pmm_settlement.settlement.multisig import Eip712Domain, hex_to_bytes


def encode_payment_tx_id(payment_tx_id: str) -> bytes:
    """EVM/Solana hex hashes keep their bytes; anything else (BTC txid, base58) is sent as UTF-8."""
    if payment_tx_id.startswith("0x"):
        return hex_to_bytes(payment_tx_id)
    return payment_tx_id.encode("utf-8")


def make_payment_hash(trade_ids: Sequence[str], signed_at: int, start_idx: int, payment_tx_id: bytes) -> bytes:
    trade_ids_hash = keccak(encode(["bytes32[]"], [[hex_to_bytes(t) for t in trade_ids]]))
    return keccak(encode(
        ["bytes32", "uint64", "uint64", "bytes"],
        [trade_ids_hash, signed_at, start_idx, payment_tx_id],
    ))


def sign_make_payment(private_key: str, domain: Eip712Domain, info_hash: bytes) -> bytes:
    message = encode_typed_data(full_message={
        "types": {
            "EIP712Domain": [
                {"name": "name", "type": "string"},
                {"name": "version", "type": "string"},
                {"name": "chainId", "type": "uint256"},
                {"name": "verifyingContract", "type": "address"},
            ],
            "MakePayment": [{"name": "infoHash", "type": "bytes32"}],
        },
        "primaryType": "MakePayment",
        "domain": {
            "name": domain.name,
            "version": domain.version,
            "chainId": domain.chain_id,
            "verifyingContract": domain.verifying_contract,
        },
        "message": {"infoHash": info_hash},
    })
    return bytes(Account.sign_message(message, private_key=private_key).signature)


def build_settlement_request(
    trade_id: str,
    pmm_id: str,
    payment_tx_id: str,
    signed_at: int,
    private_key: str,
    domain: Eip712Domain,
) -> Dict[str, Any]:
    trade_ids: List[str] = [trade_id]
    settlement_tx = encode_payment_tx_id(payment_tx_id)
    info_hash = make_payment_hash(trade_ids, signed_at, 0, settlement_tx)
    signature = sign_make_payment(private_key, domain, info_hash)
    return {
        "tradeIds": trade_ids,
        "pmmId": pmm_id,
        "settlementTx": "0x" + settlement_tx.hex(),
        "signature": "0x" + signature.hex(),
        "startIndex": 0,
        "signedAt": signed_at,
    }


class SolverClient:
    """POST /v1/settlements/submit on the solver API."""

    def __init__(self, base_url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None) -> None:
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def submit_settlement(self, request: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self.client.post("/v1/settlements/submit", json=request)
        resp.raise_for_status()
        body = resp.json()
        return body if isinstance(body, dict) else {"result": body}
