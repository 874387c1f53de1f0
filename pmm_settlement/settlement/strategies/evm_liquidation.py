"""
Liquidation payout through the multisig-gated liquidator contract.

A failed call does not raise: the 4-byte error selector is padded into a
32-byte pseudo tx hash (0x + selector + zeros) so the trade records which
error stopped the payment. Only a failure carrying no error data at all
raises.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, List, Optional, Protocol

from web3 import Web3

from pmm_settlement.infra.trade_client import Trade
from pmm_settlement.settlement.abi import LIQUIDATOR_ABI
from pmm_settlement.settlement.errors import RevertDecoder
from pmm_settlement.settlement.evm_tx import EvmTransactionService, TxOptions
from pmm_settlement.settlement.models import TransferParams, TransferResult
from pmm_settlement.settlement.multisig import Eip712Domain, PaymentRequest, build_multisig_auth, hex_to_bytes

log = logging.getLogger("pmm_settlement")

LIQUIDATION_GAS_BUFFER_PCT = 40
MIN_APPROVERS = 2


class TradeLookup(Protocol):
    async def find_trade_by_id(self, trade_id: str) -> Optional[Trade]: ...


def error_hash(selector_data: str) -> str:
    """'0x1234abcd...' -> '0x1234abcd' + zero padding to 32 bytes."""
    return "0x" + selector_data[:10].replace("0x", "").ljust(64, "0")


class EvmLiquidationTransferStrategy:
    def __init__(
        self,
        trades: TradeLookup,
        tx_service: EvmTransactionService,
        enabled: bool,
        contract_address: Optional[str],
        approver_keys: List[str],
        deadline_seconds: int = 300,
        decoder: Optional[RevertDecoder] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._trades = trades
        self._tx = tx_service
        self._enabled = enabled
        self._contract = contract_address
        self._approver_keys = list(approver_keys)
        self._deadline_seconds = deadline_seconds
        self._decoder = decoder or RevertDecoder()
        self._log = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.WARNING if kwargs.get("error") or kwargs.get("error_code") else logging.INFO
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    async def transfer(self, params: TransferParams) -> TransferResult:
        token = params.token
        trade = await self._trades.find_trade_by_id(params.trade_id)
        if trade is None:
            raise ValueError(f"Trade not found: {params.trade_id}")
        if not self._enabled:
            raise ValueError("Liquidation is not enabled")
        if not self._contract:
            raise ValueError("Liquidation contract address not configured")
        if len(self._approver_keys) < MIN_APPROVERS:
            raise ValueError("At least 2 approvers required for multisig")
        payment_metadata = (trade.metadata or {}).get("paymentMetadata")
        if not payment_metadata:
            raise ValueError(f"Missing paymentMetadata for trade {params.trade_id}")

        request = PaymentRequest(
            token=Web3.to_checksum_address(token.token_address),
            amount=params.amount,
            external_call=hex_to_bytes(payment_metadata),
        )
        executor = await self._tx.signer_address(token.network_id)
        domain = Eip712Domain.from_call(
            await self._tx.call(token.network_id, self._contract, LIQUIDATOR_ABI, "eip712Domain")
        )
        auth = build_multisig_auth(executor, request, self._approver_keys, domain, self._deadline_seconds)
        self._log(
            "liquidation_multisig_built",
            trade_id=params.trade_id,
            threshold=auth.threshold,
            deadline=auth.deadline,
            signatures=len(auth.signatures),
        )

        try:
            result = await self._tx.execute_contract_method(
                token.network_id,
                self._contract,
                LIQUIDATOR_ABI,
                "payment",
                [request.as_tuple(), auth.as_tuple()],
                TxOptions(
                    gas_buffer_pct=LIQUIDATION_GAS_BUFFER_PCT,
                    description=f"Liquidation payment for trade {params.trade_id}",
                ),
            )
        except Exception as exc:
            return self._handle_failure(params, exc)

        self._log("liquidation_transfer_sent", trade_id=params.trade_id, network_id=token.network_id, tx_hash=result.hash)
        return result

    def _handle_failure(self, params: TransferParams, exc: Exception) -> TransferResult:
        decoded = self._decoder.decode(exc)
        data = decoded.data
        self._log(
            "liquidation_transfer_error",
            trade_id=params.trade_id,
            network_id=params.token.network_id,
            decoded_reason=decoded.reason,
            error=str(exc),
        )
        if not data:
            raise ValueError("No error data available") from exc

        padded = error_hash(data)
        self._log(
            "liquidation_error_code_as_hash",
            trade_id=params.trade_id,
            error_code=data[:10],
            tx_hash=padded,
        )
        return TransferResult(hash=padded)

